"""
Apply / Plan / Destroy Command Implementation

Materializes the workspace for an exported zip, wires up state (carried
forward, explicit or remote backend) and runs terraform against the export
root. Successful apply and destroy runs persist the environment latest state
and generate release metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from rich.console import Console

from fctl.core.archive import parse_artifact_name, read_archive_environment_id
from fctl.core.workspace import WorkspaceManager, fix_permissions
from fctl.domain.errors import FctlDomainError, TransferError
from fctl.domain.results import CommandResult
from fctl.executor.backend import (
    BackendConfig,
    backend_config_args,
    load_backend_config,
    write_backend_tf_json,
)
from fctl.executor.release import collect_release_metadata, write_release_metadata
from fctl.executor.terraform import ProvisioningExecutor
from fctl.sanitize.lifecycle import relax_prevent_destroy

console = Console()


class TerraformRunError(Exception):
    """Raised when apply, plan or destroy fails"""


class TerraformAction(StrEnum):
    APPLY = "apply"
    PLAN = "plan"
    DESTROY = "destroy"

    @property
    def changes_state(self) -> bool:
        return self in (TerraformAction.APPLY, TerraformAction.DESTROY)


@dataclass(slots=True)
class TerraformRunRequest:
    """Parameters of one apply, plan or destroy run."""

    action: TerraformAction
    zip_path: Path
    target: str | None = None
    state_file: Path | None = None
    backend_type: str | None = None
    allow_destroy: bool = False
    upload_release_metadata: bool = False
    profile: str | None = None


class _MetadataUploaderPort(Protocol):
    def upload_release_metadata(
        self, environment_id: str, deployment_id: str, metadata_file: Path
    ) -> None: ...


@dataclass
class _RunRuntime:
    """Mutable state built during the run."""

    environment_id: str = ""
    deployment_id: str = ""
    workspace: Path | None = None
    export_root: Path | None = None
    backend: BackendConfig | None = None
    metadata_file: Path | None = None
    warnings: list[str] = field(default_factory=list)


def run_terraform(
    request: TerraformRunRequest,
    *,
    workspace: WorkspaceManager,
    executor: ProvisioningExecutor,
    uploader: _MetadataUploaderPort | None = None,
) -> CommandResult:
    """Run ``request.action`` against the export contained in ``request.zip_path``.

    Args:
        request: What to run and against which zip
        workspace: Manager owning the deployment workspaces
        executor: Provisioning tool wrapper
        uploader: Control plane client, required for ``upload_release_metadata``

    Returns:
        CommandResult describing the workspace and state location

    Raises:
        TerraformRunError: If any step fails
    """
    try:
        return _TerraformRunCommand(request, workspace, executor, uploader).execute()
    except (FctlDomainError, OSError) as err:
        console.print(f"\n[red]✗ {request.action.capitalize()} failed: {err}[/red]")
        raise TerraformRunError(str(err)) from err


class _TerraformRunCommand:
    def __init__(
        self,
        request: TerraformRunRequest,
        workspace: WorkspaceManager,
        executor: ProvisioningExecutor,
        uploader: _MetadataUploaderPort | None,
    ) -> None:
        self._request = request
        self._workspace = workspace
        self._executor = executor
        self._uploader = uploader
        self._runtime = _RunRuntime()

    def execute(self) -> CommandResult:
        self._resolve_identifiers()
        self._prune()
        self._materialize()
        self._prepare_tree()
        options = self._configure_backend()
        self._install_state()
        self._run_terraform(options)
        if self._request.action.changes_state:
            self._after_state_change()
        return self._result()

    def _resolve_identifiers(self) -> None:
        zip_path = self._request.zip_path
        if not zip_path.is_file():
            raise TransferError(message=f"Zip file not found: {zip_path}", code="archive_missing")
        artifact = parse_artifact_name(zip_path)
        self._runtime.deployment_id = artifact.deployment_id
        try:
            self._runtime.environment_id = read_archive_environment_id(zip_path)
        except TransferError:
            if artifact.environment_id is None:
                raise
            self._runtime.environment_id = artifact.environment_id
        console.print(
            f"[blue]Environment:[/blue] {self._runtime.environment_id}  "
            f"[blue]Deployment:[/blue] {self._runtime.deployment_id}"
        )

    def _prune(self) -> None:
        runtime = self._runtime
        self._workspace.ensure_base()
        current = self._workspace.workspace_dir(runtime.environment_id, runtime.deployment_id)
        result = self._workspace.prune(
            runtime.environment_id, keep=(current, self._request.zip_path)
        )
        if result.removed:
            console.print(f"[dim]Pruned {len(result.removed)} old workspaces and artifacts[/dim]")

    def _materialize(self) -> None:
        runtime = self._runtime
        runtime.backend = load_backend_config(self._request.backend_type)
        carry_forward = runtime.backend is None and self._request.state_file is None
        result = self._workspace.materialize(
            runtime.environment_id,
            runtime.deployment_id,
            self._request.zip_path,
            carry_forward=carry_forward,
        )
        runtime.workspace = result.workspace
        if result.carried_from is not None:
            console.print(f"[green]✓[/green] Copied state from {result.carried_from.label}")
        if result.extracted:
            console.print(f"[green]✓[/green] Extracted to {result.workspace}")
        else:
            console.print("[dim]Workspace is up to date, skipping extraction[/dim]")

    def _prepare_tree(self) -> None:
        runtime = self._runtime
        export_root = self._workspace.export_root(runtime.environment_id, runtime.deployment_id)
        if not export_root.is_dir():
            raise TransferError(
                message=f"Export root not found in zip: {export_root.name}",
                code="export_root_missing",
            )
        runtime.export_root = export_root
        assert runtime.workspace is not None
        fix_permissions(runtime.workspace)
        if self._request.allow_destroy:
            relaxed = relax_prevent_destroy(export_root)
            console.print(f"[yellow]prevent_destroy disabled in {len(relaxed)} files[/yellow]")

    def _configure_backend(self) -> list[str]:
        runtime = self._runtime
        if runtime.backend is None:
            return []
        assert runtime.export_root is not None
        write_backend_tf_json(runtime.export_root, runtime.backend)
        console.print(f"[green]✓[/green] Using {runtime.backend.type} backend")
        if self._request.action == TerraformAction.APPLY:
            return backend_config_args(runtime.backend)
        return []

    def _install_state(self) -> None:
        runtime = self._runtime
        request = self._request
        if request.state_file is not None:
            self._workspace.install_state(
                runtime.environment_id, runtime.deployment_id, request.state_file
            )
            console.print(f"[green]✓[/green] Using state file {request.state_file}")
            return
        if request.action != TerraformAction.PLAN or runtime.backend is not None:
            return
        state_path = self._workspace.state_path(runtime.environment_id, runtime.deployment_id)
        latest = self._workspace.latest_state(runtime.environment_id)
        if not state_path.is_file() and latest is not None:
            self._workspace.install_state(runtime.environment_id, runtime.deployment_id, latest)
            console.print(f"[green]✓[/green] Using latest state {latest}")

    def _run_terraform(self, backend_options: list[str]) -> None:
        runtime = self._runtime
        assert runtime.export_root is not None
        action = self._request.action
        console.print("[blue]Running terraform init...[/blue]")
        self._executor.init(runtime.export_root, backend_options)
        self._executor.select_workspace(runtime.export_root, runtime.environment_id)
        if self._request.target:
            console.print(f"[blue]Targeting:[/blue] {self._request.target}")
        console.print(f"[blue]Running terraform {action}...[/blue]")
        run = getattr(self._executor, action.value)
        run(runtime.export_root, target=self._request.target)
        console.print(f"[green]✓[/green] Terraform {action} completed")

    def _after_state_change(self) -> None:
        runtime = self._runtime
        assert runtime.workspace is not None and runtime.export_root is not None
        if runtime.backend is None:
            state_path = self._workspace.state_path(runtime.environment_id, runtime.deployment_id)
            if state_path.is_file():
                latest = self._workspace.persist_latest_state(
                    runtime.environment_id, runtime.deployment_id
                )
                console.print(f"[green]✓[/green] Latest state saved to {latest}")
        try:
            metadata = collect_release_metadata(self._executor.show_state(runtime.export_root))
        except FctlDomainError as err:
            self._warn(f"Failed to generate release metadata: {err}")
            return
        if not metadata:
            console.print("[dim]No release metadata found in state[/dim]")
            return
        runtime.metadata_file = write_release_metadata(runtime.workspace, metadata)
        console.print(f"[green]✓[/green] Release metadata saved to {runtime.metadata_file}")
        if self._request.upload_release_metadata:
            self._upload_metadata()

    def _upload_metadata(self) -> None:
        runtime = self._runtime
        assert runtime.metadata_file is not None
        if self._uploader is None:
            self._warn("No control plane client configured; release metadata not uploaded")
            return
        try:
            self._uploader.upload_release_metadata(
                runtime.environment_id, runtime.deployment_id, runtime.metadata_file
            )
        except FctlDomainError as err:
            self._warn(f"Failed to upload release metadata: {err}")
            return
        console.print("[green]✓[/green] Release metadata uploaded to control plane")

    def _warn(self, message: str) -> None:
        self._runtime.warnings.append(message)
        console.print(f"[yellow]⚠ {message}[/yellow]")

    def _result(self) -> CommandResult:
        runtime = self._runtime
        data: dict[str, object] = {
            "environmentId": runtime.environment_id,
            "deploymentId": runtime.deployment_id,
            "workspace": str(runtime.workspace),
            "warnings": list(runtime.warnings),
        }
        if runtime.backend is None:
            data["statePath"] = str(
                self._workspace.state_path(runtime.environment_id, runtime.deployment_id)
            )
        return CommandResult(
            success=True,
            message=f"Terraform {self._request.action} completed for {runtime.environment_id}",
            data=data,
        )
