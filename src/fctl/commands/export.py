"""
Export Command Implementation

Exports a single environment to ``<output>/<deploymentID>.zip``: triggers a
terraform export (or joins one that is already running), waits for it,
downloads the archive, sanitizes its content and optionally bundles providers
and extra files into it.
"""

from __future__ import annotations

import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from rich.console import Console

from fctl.commands.repackage import RepackageError, copy_into_tree
from fctl.core.archive import extract_archive, zip_directory
from fctl.core.workspace import EXPORT_ROOT
from fctl.domain.errors import FctlDomainError, RemoteJobError
from fctl.domain.models import EnvironmentRef, ExportJob, RemoteJobStatus
from fctl.domain.results import CommandResult
from fctl.executor.terraform import ProvisioningExecutor
from fctl.export.progress import format_duration
from fctl.remote.client import RemoteJobAPI
from fctl.sanitize.engine import sanitize_tree

console = Console()


class ExportError(Exception):
    """Raised when export command fails"""


class _ExportClientPort(RemoteJobAPI, Protocol):
    def list_projects(self) -> list[str]: ...

    def list_environments(self, project: str) -> list[EnvironmentRef]: ...

    def estimate_export_duration(self, environment_id: str) -> float | None: ...


def resolve_environment(
    api: _ExportClientPort,
    *,
    environment_id: str | None = None,
    project: str | None = None,
    environment_name: str | None = None,
) -> str:
    """Return the environment id, looking it up by project and name when needed."""
    if environment_id:
        return environment_id
    if not project or not environment_name:
        raise ExportError("Provide --environment-id, or both --project and --env-name")
    if project not in api.list_projects():
        raise ExportError(f"Project '{project}' not found")
    for environment in api.list_environments(project):
        if environment.name == environment_name:
            return environment.id
    raise ExportError(f"Environment '{environment_name}' not found in project '{project}'")


def export_environment(
    api: _ExportClientPort,
    output_dir: Path,
    *,
    environment_id: str | None = None,
    project: str | None = None,
    environment_name: str | None = None,
    include_providers: bool = False,
    copies: Sequence[tuple[Path, str]] = (),
    executor: ProvisioningExecutor | None = None,
    poll_interval: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> CommandResult:
    """Export one environment and return the path of the produced zip.

    Args:
        api: Control plane client
        output_dir: Directory receiving ``<deploymentID>.zip``
        environment_id: Environment to export; resolved from project and
            environment name when omitted
        project: Project (stack) name
        environment_name: Environment (cluster) name within the project
        include_providers: Run ``terraform init`` in the export root before zipping
        copies: Extra ``(source, destination)`` pairs copied into the zip
        executor: Provisioning tool wrapper, required for ``include_providers``
        poll_interval: Seconds between export status polls
        sleep: Sleep function, replaced in tests

    Returns:
        CommandResult with ``zipPath``, ``environmentId`` and ``deploymentId``

    Raises:
        ExportError: If any step fails
    """
    try:
        resolved = resolve_environment(
            api,
            environment_id=environment_id,
            project=project,
            environment_name=environment_name,
        )
        return _ExportCommand(
            _ExportConfig(
                environment_id=resolved,
                output_dir=output_dir,
                include_providers=include_providers,
                copies=list(copies),
                poll_interval=poll_interval,
            ),
            api,
            executor,
            sleep,
        ).execute()
    except ExportError as err:
        console.print(f"\n[red]✗ Export failed: {err}[/red]")
        raise
    except (FctlDomainError, RepackageError, OSError) as err:
        console.print(f"\n[red]✗ Export failed: {err}[/red]")
        raise ExportError(str(err)) from err


@dataclass
class _ExportConfig:
    """Immutable export command parameters."""

    environment_id: str
    output_dir: Path
    include_providers: bool
    copies: list[tuple[Path, str]] = field(default_factory=list)
    poll_interval: float = 5.0


class _ExportCommand:
    def __init__(
        self,
        config: _ExportConfig,
        api: _ExportClientPort,
        executor: ProvisioningExecutor | None,
        sleep: Callable[[float], None],
    ) -> None:
        self._config = config
        self._api = api
        self._executor = executor
        self._sleep = sleep

    def execute(self) -> CommandResult:
        config = self._config
        if config.include_providers and self._executor is None:
            raise ExportError("--include-providers requires a terraform executor")
        self._show_estimate()
        job, started = self._start()
        self._wait(job, started)
        zip_path = self._download(job)
        self._process(zip_path)
        console.print(f"[green]✓[/green] Export completed successfully, saved to {zip_path}")
        return CommandResult(
            success=True,
            message=f"Exported {config.environment_id}",
            data={
                "zipPath": str(zip_path),
                "environmentId": config.environment_id,
                "deploymentId": job.job_id,
            },
        )

    def _show_estimate(self) -> None:
        estimate = self._api.estimate_export_duration(self._config.environment_id)
        if estimate is not None:
            console.print(
                f"[dim]Estimated export time: {format_duration(estimate)} "
                "based on recent exports[/dim]"
            )

    def _start(self) -> tuple[ExportJob, datetime]:
        environment_id = self._config.environment_id
        running = self._api.find_running_export(environment_id)
        if running is not None:
            console.print(
                f"[yellow]Found running export {running.job_id} ({running.status}), "
                "waiting for it[/yellow]"
            )
            started = running.created_on or datetime.now(UTC)
            return running, started if started.tzinfo else started.replace(tzinfo=UTC)
        job = self._api.trigger_export(environment_id)
        console.print(f"[green]✓[/green] Terraform export triggered with id: {job.job_id}")
        return job, datetime.now(UTC)

    def _wait(self, job: ExportJob, started: datetime) -> None:
        environment_id = self._config.environment_id
        with console.status("Export in progress...") as status:
            while True:
                self._sleep(self._config.poll_interval)
                current = self._api.get_export(environment_id, job.job_id)
                if current.status == RemoteJobStatus.SUCCEEDED:
                    break
                if current.status == RemoteJobStatus.FAILED:
                    raise RemoteJobError(
                        message=current.error_detail or "export failed", code="export_failed"
                    )
                elapsed = (datetime.now(UTC) - started).total_seconds()
                status.update(f"Export in progress ({format_duration(elapsed)})...")
        console.print("[green]✓[/green] Export finished on the control plane")

    def _download(self, job: ExportJob) -> Path:
        destination = self._config.output_dir / f"{job.job_id}.zip"
        with console.status("Downloading export...") as status:

            def report(written: int, total: int | None) -> None:
                megabytes = written / 1024 / 1024
                if total:
                    status.update(
                        f"Downloading: {written * 100 / total:.1f}% "
                        f"({megabytes:.2f} MB / {total / 1024 / 1024:.2f} MB)"
                    )
                else:
                    status.update(f"Downloading: {megabytes:.2f} MB")

            self._api.download_export(
                self._config.environment_id, job.job_id, destination, on_progress=report
            )
        return destination

    def _process(self, zip_path: Path) -> None:
        config = self._config
        with tempfile.TemporaryDirectory(prefix="fctl-export-") as scratch:
            tree = Path(scratch)
            with console.status("Processing exported files..."):
                extract_archive(zip_path, tree)
                report = sanitize_tree(tree)
            for warning in report.warnings:
                console.print(f"[yellow]⚠ {warning}[/yellow]")
            console.print(
                f"[green]✓[/green] Cleaned exported files "
                f"({len(report.rewritten)} rewritten, {len(report.deleted)} removed)"
            )
            if config.include_providers:
                assert self._executor is not None
                with console.status("Including Terraform providers..."):
                    self._executor.init(tree / EXPORT_ROOT, [])
            for source, destination in config.copies:
                copy_into_tree(tree, source, destination)
                console.print(f"[green]✓[/green] Copied {source} to {destination}")
            zip_directory(tree, zip_path)
