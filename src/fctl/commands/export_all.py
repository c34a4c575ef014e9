"""
Export-All Command Implementation

Exports every environment of a project into ``<output>/<project>/<envName>/``
concurrently, then consolidates the project's modules and prints a summary
table.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from rich.console import Console
from rich.table import Table

from fctl.domain.errors import FctlDomainError
from fctl.domain.models import EnvironmentRef
from fctl.domain.results import CommandResult, ExportSummary
from fctl.executor.terraform import ProvisioningExecutor
from fctl.export.orchestrator import ExportOrchestrator
from fctl.remote.client import RemoteJobAPI

console = Console()


class ExportAllError(Exception):
    """Raised when export-all command fails"""


class _ProjectClientPort(RemoteJobAPI, Protocol):
    def list_projects(self) -> list[str]: ...

    def list_environments(self, project: str) -> list[EnvironmentRef]: ...


def export_all(
    api: _ProjectClientPort,
    output_dir: Path,
    project: str,
    *,
    skip_failed: bool = False,
    include_providers: bool = False,
    executor: ProvisioningExecutor | None = None,
    poll_interval: float = 5.0,
    refresh_seconds: float = 0.5,
    grace_seconds: float = 0.1,
    show_progress: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> CommandResult:
    """Export all environments of ``project``.

    The result is successful when every environment exported, or when
    ``skip_failed`` is set and at least one did.

    Raises:
        ExportAllError: If the project cannot be resolved or the project
            directory cannot be created
    """
    try:
        console.print(f"[blue]Looking up project:[/blue] {project}")
        if project not in api.list_projects():
            raise ExportAllError(f"Project (stack) not found: {project}")
        environments = api.list_environments(project)
        if not environments:
            console.print(f"[yellow]No environments found for project: {project}[/yellow]")
            return CommandResult(success=True, code="empty", message="No environments found")
        console.print(f"Found {len(environments)} environments to export\n")
        project_dir = output_dir / project
        project_dir.mkdir(parents=True, exist_ok=True)
    except ExportAllError as err:
        console.print(f"[red]✗ Export-all failed: {err}[/red]")
        raise
    except (FctlDomainError, OSError) as err:
        console.print(f"[red]✗ Export-all failed: {err}[/red]")
        raise ExportAllError(str(err)) from err

    orchestrator = ExportOrchestrator(
        api,
        project_dir,
        skip_failed=skip_failed,
        executor=executor,
        include_providers=include_providers,
        poll_interval=poll_interval,
        show_progress=show_progress,
        refresh_seconds=refresh_seconds,
        grace_seconds=grace_seconds,
        console=console,
        sleep=sleep,
    )
    summary = orchestrator.run(environments)
    print_summary(project, project_dir, summary)
    success = not summary.failed or (skip_failed and bool(summary.succeeded))
    return CommandResult(
        success=success,
        code="ok" if not summary.failed else "partial_failure",
        message=f"{len(summary.succeeded)}/{len(summary.outcomes)} environments exported",
        data={"projectDir": str(project_dir), **summary.as_json_dict()},
    )


def print_summary(project: str, project_dir: Path, summary: ExportSummary) -> None:
    table = Table(title=f"Export summary for project: {project}")
    table.add_column("Environment", style="cyan")
    table.add_column("Status")
    table.add_column("Output / Error")
    for outcome in summary.outcomes:
        if outcome.succeeded:
            table.add_row(outcome.name, "[green]✓ complete[/green]", outcome.output_dir)
        else:
            table.add_row(outcome.name, "[red]✗ failed[/red]", outcome.error)
    console.print()
    console.print(table)
    console.print(
        f"Total: {len(summary.outcomes)}  "
        f"[green]Succeeded: {len(summary.succeeded)}[/green]  "
        f"[red]Failed: {len(summary.failed)}[/red]"
    )
    if summary.failed and not summary.post_processed:
        console.print(
            "[yellow]Post-processing skipped because of failures; "
            "rerun with --skip-failed to consolidate the successful exports[/yellow]"
        )
    elif summary.post_processed:
        console.print(f"[green]✓[/green] Exports written to {project_dir}")
