"""
Deployment Workspace Manager

Maps an (environment, deployment) pair to its on-disk workspace, decides when
an artifact needs extracting, carries state snapshots forward between
deployments and prunes old workspaces and artifacts.

Layout (shared with other tools on the same machine, do not change):

    <base>/<environmentID>/
        tf.tfstate
        <deploymentID>/
            tfexport/
                terraform.tfstate.d/<environmentID>/terraform.tfstate
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from rich.console import Console
from rich.prompt import Prompt

from fctl.core.archive import RETAINED_ARCHIVE, extract_archive
from fctl.core.differ import archive_differs
from fctl.domain.errors import ContentDiffError, StateCarryForwardError, WorkspaceIOError

logger = logging.getLogger(__name__)
console = Console()

EXPORT_ROOT = "tfexport"
STATE_DIR = "terraform.tfstate.d"
STATE_FILE = "terraform.tfstate"
LATEST_STATE = "tf.tfstate"
LEGACY_LATEST_STATE = "latest.tfstate"
CREATION_MARKER = ".fctl-created"
DEFAULT_RETENTION = 10


@dataclass(frozen=True, slots=True)
class SnapshotSource:
    """A state snapshot offered for carry-forward.

    ``deployment_id`` is None for the environment-scoped latest snapshot.
    """

    path: Path
    deployment_id: str | None = None

    @property
    def label(self) -> str:
        return self.deployment_id or self.path.name


class SnapshotChooser(Protocol):
    def choose(
        self,
        *,
        environment_id: str,
        deployments: list[str],
        latest: Path | None,
    ) -> SnapshotSource | None: ...


class LatestSnapshotChooser:
    """Non-interactive chooser: use the environment latest snapshot when present."""

    def choose(
        self,
        *,
        environment_id: str,
        deployments: list[str],
        latest: Path | None,
    ) -> SnapshotSource | None:
        return SnapshotSource(path=latest) if latest is not None else None


class PromptSnapshotChooser:
    """Interactive chooser backed by rich prompts.

    An empty answer uses the latest snapshot if there is one, ``y``/``yes``
    lists prior deployments to pick from, and anything else starts fresh.
    """

    def __init__(self, workspace_dir: Callable[[str, str], Path]) -> None:
        self._workspace_dir = workspace_dir

    def choose(
        self,
        *,
        environment_id: str,
        deployments: list[str],
        latest: Path | None,
    ) -> SnapshotSource | None:
        if not deployments and latest is None:
            return None
        console.print()
        if latest is not None:
            console.print(f"[blue]Latest state found:[/blue] {latest}")
        answer = Prompt.ask(
            "[bold]Copy state from a previous deployment?[/bold] "
            "(Enter to use latest state, 'y' to choose a deployment, 'n' to start fresh)",
            default="",
            show_default=False,
        )
        answer = answer.strip().lower()
        if not answer:
            return SnapshotSource(path=latest) if latest is not None else None
        if answer not in ("y", "yes") or not deployments:
            console.print("[yellow]Starting with fresh state[/yellow]")
            return None
        for index, deployment in enumerate(deployments, start=1):
            console.print(f"  {index}. {deployment}")
        selection = Prompt.ask(
            "[bold]Deployment number[/bold]",
            choices=[str(number) for number in range(1, len(deployments) + 1)],
            default=str(len(deployments)),
        )
        deployment_id = deployments[int(selection) - 1]
        return SnapshotSource(
            path=self._workspace_dir(environment_id, deployment_id),
            deployment_id=deployment_id,
        )


@dataclass(slots=True)
class MaterializeResult:
    """Outcome of materializing one deployment workspace."""

    workspace: Path
    created: bool
    extracted: bool
    carried_from: SnapshotSource | None = None


@dataclass(slots=True)
class PruneResult:
    removed: list[Path] = field(default_factory=list)
    failed: list[Path] = field(default_factory=list)


class WorkspaceManager:
    """Owns every workspace below ``base_dir``."""

    def __init__(
        self,
        base_dir: Path,
        *,
        retention: int = DEFAULT_RETENTION,
        chooser: SnapshotChooser | None = None,
    ) -> None:
        self.base_dir = base_dir
        self.retention = retention
        self._chooser: SnapshotChooser = chooser or LatestSnapshotChooser()

    # Paths

    def environment_dir(self, environment_id: str) -> Path:
        return self.base_dir / environment_id

    def workspace_dir(self, environment_id: str, deployment_id: str) -> Path:
        return self.environment_dir(environment_id) / deployment_id

    def export_root(self, environment_id: str, deployment_id: str) -> Path:
        """Directory handed to the provisioning tool."""
        return self.workspace_dir(environment_id, deployment_id) / EXPORT_ROOT

    def state_path(self, environment_id: str, deployment_id: str) -> Path:
        return (
            self.export_root(environment_id, deployment_id)
            / STATE_DIR
            / environment_id
            / STATE_FILE
        )

    def latest_state_path(self, environment_id: str) -> Path:
        return self.environment_dir(environment_id) / LATEST_STATE

    def latest_state(self, environment_id: str) -> Path | None:
        """Return the environment latest snapshot, if one was persisted."""
        for name in (LATEST_STATE, LEGACY_LATEST_STATE):
            candidate = self.environment_dir(environment_id) / name
            if candidate.is_file():
                return candidate
        return None

    def ensure_base(self) -> None:
        """Create the base directory; failure is fatal to the calling command."""
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise WorkspaceIOError(
                message=f"Could not create base directory {self.base_dir}: {err}",
                code="base_dir_unavailable",
            ) from err

    # Deployments

    def list_deployments(self, environment_id: str, *, exclude: str | None = None) -> list[str]:
        """Deployment workspaces for an environment, oldest to newest by modification time."""
        env_dir = self.environment_dir(environment_id)
        if not env_dir.is_dir():
            return []
        entries = [
            entry for entry in env_dir.iterdir() if entry.is_dir() and entry.name != exclude
        ]
        entries.sort(key=lambda entry: (entry.stat().st_mtime_ns, entry.name))
        return [entry.name for entry in entries]

    def materialize(
        self,
        environment_id: str,
        deployment_id: str,
        archive: Path,
        *,
        carry_forward: bool = True,
    ) -> MaterializeResult:
        """Ensure the workspace for a deployment holds the artifact's content.

        A new workspace is created, optionally seeded with a prior state snapshot,
        and the artifact extracted. An existing workspace is re-extracted only if
        the artifact content differs from what is on disk.

        Raises:
            WorkspaceIOError: If the workspace directory cannot be created.
            StateCarryForwardError: If the chosen snapshot cannot be copied.
            TransferError: If extraction fails.
        """
        workspace = self.workspace_dir(environment_id, deployment_id)
        if workspace.exists():
            try:
                different = archive_differs(archive, workspace)
            except ContentDiffError as err:
                logger.warning("%s; re-extracting", err)
                different = err.different
            if different:
                extract_archive(archive, workspace)
            return MaterializeResult(workspace=workspace, created=False, extracted=different)

        self.ensure_base()
        try:
            workspace.mkdir(parents=True)
            (workspace / CREATION_MARKER).write_text(str(time.time_ns()), encoding="utf-8")
        except OSError as err:
            raise WorkspaceIOError(
                message=f"Could not create workspace {workspace}: {err}",
                code="workspace_create_failed",
            ) from err

        source = None
        if carry_forward:
            candidates = [
                candidate
                for candidate in self.list_deployments(environment_id, exclude=deployment_id)
                if self.state_path(environment_id, candidate).is_file()
            ]
            source = self._chooser.choose(
                environment_id=environment_id,
                deployments=candidates,
                latest=self.latest_state(environment_id),
            )
            if source is not None:
                self.copy_state(environment_id, deployment_id, source)
        extract_archive(archive, workspace)
        return MaterializeResult(
            workspace=workspace, created=True, extracted=True, carried_from=source
        )

    def copy_state(self, environment_id: str, deployment_id: str, source: SnapshotSource) -> Path:
        """Copy a snapshot into a deployment's expected state path."""
        if source.deployment_id is not None:
            origin = self.state_path(environment_id, source.deployment_id)
        else:
            origin = source.path
        if not origin.is_file():
            raise StateCarryForwardError(
                message=f"No state file found in deployment {source.label}",
                code="state_missing",
            )
        target = self.state_path(environment_id, deployment_id)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(origin, target)
        except OSError as err:
            raise StateCarryForwardError(
                message=f"Failed to copy state from deployment {source.label}: {err}",
                code="state_copy_failed",
            ) from err
        logger.info("Copied state from %s to %s", origin, target)
        return target

    def install_state(self, environment_id: str, deployment_id: str, state_file: Path) -> Path:
        """Copy an explicitly supplied state file into a deployment's state path."""
        return self.copy_state(environment_id, deployment_id, SnapshotSource(path=state_file))

    def persist_latest_state(self, environment_id: str, deployment_id: str) -> Path:
        """Overwrite the environment latest snapshot with a deployment's state."""
        origin = self.state_path(environment_id, deployment_id)
        target = self.latest_state_path(environment_id)
        try:
            shutil.copyfile(origin, target)
        except OSError as err:
            raise WorkspaceIOError(
                message=f"Failed to persist latest state to {target}: {err}",
                code="state_persist_failed",
            ) from err
        return target

    # Retention

    def prune(self, environment_id: str, *, keep: Iterable[Path] = ()) -> PruneResult:
        """Keep the newest workspaces and zip artifacts, never deleting ``keep``.

        Workspaces are ordered by recorded creation time. Workspaces without a
        creation marker predate it, count as older, and are ordered by name.
        Zip artifacts in the base directory are ordered by name.
        """
        protected = {path.resolve() for path in keep}
        result = PruneResult()
        env_dir = self.environment_dir(environment_id)
        if env_dir.is_dir():
            workspaces = sorted(
                (entry for entry in env_dir.iterdir() if entry.is_dir()),
                key=self._creation_key,
            )
            self._evict(workspaces, protected, shutil.rmtree, result)
        if self.base_dir.is_dir():
            archives = sorted(
                entry
                for entry in self.base_dir.iterdir()
                if entry.is_file() and RETAINED_ARCHIVE.search(entry.name)
            )
            self._evict(archives, protected, os.remove, result)
        return result

    def _evict(
        self,
        entries: list[Path],
        protected: set[Path],
        remove: Callable[[Path], None],
        result: PruneResult,
    ) -> None:
        if len(entries) <= self.retention:
            return
        for entry in entries[: len(entries) - self.retention]:
            if entry.resolve() in protected:
                continue
            try:
                remove(entry)
            except OSError as err:
                logger.warning("Failed to remove %s: %s", entry, err)
                result.failed.append(entry)
            else:
                result.removed.append(entry)

    @staticmethod
    def _creation_key(workspace: Path) -> tuple[int, int, str]:
        marker = workspace / CREATION_MARKER
        try:
            return (1, int(marker.read_text(encoding="utf-8").strip()), workspace.name)
        except (OSError, ValueError):
            return (0, 0, workspace.name)


def fix_permissions(root: Path) -> None:
    """Normalize modes: directories 0755, files 0644, provider binaries 0755."""
    for dirpath, _dirnames, filenames in os.walk(root):
        os.chmod(dirpath, 0o755)
        for filename in filenames:
            path = Path(dirpath) / filename
            if path.is_symlink():
                continue
            executable = "terraform-provider-" in str(path) or filename.endswith(".provider")
            os.chmod(path, 0o755 if executable else 0o644)
