"""
Export Orchestrator

Exports every environment of a project concurrently. Each environment runs its
own state machine on a worker thread:

    PENDING -> TRIGGERING | WAITING -> DOWNLOADING -> EXTRACTING -> CLEANING -> COMPLETE

with FAILED reachable from any non-terminal state. Failures are contained to
the environment they happen in. Once all workers have joined, post-processing
(module consolidation, then optional state initialization) runs over the
succeeded environments, unless a failure occurred and ``skip_failed`` is off.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console

from fctl.core.archive import extract_archive
from fctl.core.consolidate import MODULES_DIR, ConsolidationReport, ModuleConsolidator
from fctl.domain.errors import FctlDomainError, RemoteJobError
from fctl.domain.models import EnvironmentRef, ExportJob, ExportStatus, RemoteJobStatus
from fctl.domain.results import EnvironmentOutcome, ExportSummary
from fctl.executor.terraform import ProvisioningExecutor
from fctl.export.progress import ExportProgress, ProgressDisplay, format_duration
from fctl.remote.client import RemoteJobAPI
from fctl.sanitize.engine import SanitizationReport, sanitize_tree

logger = logging.getLogger(__name__)

DOWNLOADED_STATE = "downloaded-terraform.tfstate"


def _format_bytes(count: int) -> str:
    if count < 1024:
        return f"{count} B"
    size = count / 1024
    for unit in ("KB", "MB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class EnvironmentExporter:
    """Drives one environment through the export state machine."""

    def __init__(
        self,
        api: RemoteJobAPI,
        progress: ExportProgress,
        *,
        poll_interval: float = 5.0,
        sanitizer: Callable[[Path], SanitizationReport] = sanitize_tree,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._api = api
        self._progress = progress
        self._poll_interval = poll_interval
        self._sanitizer = sanitizer
        self._sleep = sleep
        self._now = now

    def run(self, environment: EnvironmentRef, env_dir: Path) -> EnvironmentOutcome:
        try:
            job, start_time = self._start(environment)
            self._wait(environment, job, start_time)
            archive = self._download(environment, job, env_dir)
            self._progress.update(
                environment.id, ExportStatus.EXTRACTING, "Extracting archive..."
            )
            extract_archive(archive, env_dir)
            self._progress.update(
                environment.id, ExportStatus.CLEANING, "Cleaning exported files..."
            )
            report = self._sanitizer(env_dir)
            for warning in report.warnings:
                logger.warning("%s: %s", environment.name, warning)
            try:
                archive.unlink()
            except OSError as err:
                logger.warning("Could not remove %s: %s", archive.name, err)
            self._progress.update(
                environment.id, ExportStatus.COMPLETE, f"{env_dir.parent.name}/{env_dir.name}/"
            )
            return EnvironmentOutcome(
                environment_id=environment.id,
                name=environment.name or environment.id,
                succeeded=True,
                job_id=job.job_id,
                output_dir=f"{env_dir.parent.name}/{env_dir.name}/",
            )
        except Exception as err:
            # worker boundary: record the failure and let other environments continue
            logger.debug("Export of %s failed", environment.name, exc_info=True)
            if isinstance(err, FctlDomainError):
                message = str(err)
            else:
                message = f"{type(err).__name__}: {err}"
            self._progress.update(environment.id, ExportStatus.FAILED, error=message)
            return EnvironmentOutcome(
                environment_id=environment.id,
                name=environment.name or environment.id,
                succeeded=False,
                error=message,
            )

    def _start(self, environment: EnvironmentRef) -> tuple[ExportJob, datetime]:
        running = self._api.find_running_export(environment.id)
        if running is not None:
            self._progress.update(
                environment.id,
                ExportStatus.WAITING,
                f"Found existing export (status: {running.status})",
                job_id=running.job_id,
            )
            start_time = running.created_on or self._now()
            if start_time.tzinfo is None:
                start_time = start_time.replace(tzinfo=UTC)
            return running, start_time
        self._progress.update(environment.id, ExportStatus.TRIGGERING, "Triggering new export...")
        job = self._api.trigger_export(environment.id)
        self._progress.update(
            environment.id, ExportStatus.WAITING, "Export triggered", job_id=job.job_id
        )
        return job, self._now()

    def _wait(self, environment: EnvironmentRef, job: ExportJob, start_time: datetime) -> None:
        while True:
            self._sleep(self._poll_interval)
            current = self._api.get_export(environment.id, job.job_id)
            if current.status == RemoteJobStatus.SUCCEEDED:
                return
            if current.status == RemoteJobStatus.FAILED:
                raise RemoteJobError(
                    message=current.error_detail or "export failed", code="export_failed"
                )
            elapsed = (self._now() - start_time).total_seconds()
            self._progress.update(
                environment.id,
                ExportStatus.WAITING,
                f"Export in progress ({format_duration(elapsed)})...",
            )

    def _download(self, environment: EnvironmentRef, job: ExportJob, env_dir: Path) -> Path:
        self._progress.update(environment.id, ExportStatus.DOWNLOADING, "Downloading...")

        def report(written: int, total: int | None) -> None:
            if total:
                message = f"Downloading {written * 100 // total}% of {_format_bytes(total)}"
            else:
                message = f"Downloading {_format_bytes(written)}"
            self._progress.update(environment.id, ExportStatus.DOWNLOADING, message)

        return self._api.download_export(
            environment.id, job.job_id, env_dir / f"{job.job_id}.zip", on_progress=report
        )


class ExportOrchestrator:
    """Runs one exporter per environment and post-processes the project."""

    def __init__(
        self,
        api: RemoteJobAPI,
        project_dir: Path,
        *,
        skip_failed: bool = False,
        executor: ProvisioningExecutor | None = None,
        include_providers: bool = False,
        poll_interval: float = 5.0,
        show_progress: bool = True,
        refresh_seconds: float = 0.5,
        grace_seconds: float = 0.1,
        console: Console | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.project_dir = project_dir
        self.skip_failed = skip_failed
        self.executor = executor
        self.include_providers = include_providers
        self.poll_interval = poll_interval
        self.show_progress = show_progress
        self.refresh_seconds = refresh_seconds
        self.grace_seconds = grace_seconds
        self.console = console or Console()
        self._sleep = sleep
        self.consolidation: ConsolidationReport | None = None
        self._directories: dict[str, Path] = {}

    def assign_directories(self, environments: list[EnvironmentRef]) -> dict[str, Path]:
        """Give every environment its own directory below the project.

        The directory is named after the environment, or its id when the name
        is empty. Names shared by several environments, or clashing with the
        consolidated modules directory, get the id appended.
        """
        counts = Counter(environment.name or environment.id for environment in environments)
        self._directories = {}
        for environment in environments:
            base = environment.name or environment.id
            if counts[base] > 1 or base == MODULES_DIR:
                base = f"{base}-{environment.id}"
            self._directories[environment.id] = self.project_dir / base
        return dict(self._directories)

    def environment_dir(self, environment: EnvironmentRef) -> Path:
        directory = self._directories.get(environment.id)
        if directory is None:
            directory = self.project_dir / (environment.name or environment.id)
        return directory

    def run(self, environments: list[EnvironmentRef]) -> ExportSummary:
        if not environments:
            return ExportSummary()
        self.assign_directories(environments)
        progress = ExportProgress(environments)
        exporter = EnvironmentExporter(
            self.api, progress, poll_interval=self.poll_interval, sleep=self._sleep
        )
        display = (
            ProgressDisplay(
                progress,
                refresh_seconds=self.refresh_seconds,
                grace_seconds=self.grace_seconds,
                console=self.console,
            )
            if self.show_progress
            else None
        )
        for environment in environments:
            self.environment_dir(environment).mkdir(parents=True, exist_ok=True)

        if display is not None:
            display.start()
        try:
            with ThreadPoolExecutor(
                max_workers=len(environments), thread_name_prefix="fctl-export"
            ) as pool:
                futures = [
                    pool.submit(exporter.run, environment, self.environment_dir(environment))
                    for environment in environments
                ]
                outcomes = [future.result() for future in futures]
        finally:
            if display is not None:
                display.stop()

        summary = ExportSummary(outcomes=outcomes)
        if summary.failed and not self.skip_failed:
            logger.warning(
                "%d environment(s) failed; skipping post-processing", len(summary.failed)
            )
            return summary
        succeeded = {outcome.environment_id for outcome in summary.succeeded}
        if succeeded:
            self.post_process(
                [environment for environment in environments if environment.id in succeeded]
            )
            summary.post_processed = True
        return summary

    def post_process(self, environments: list[EnvironmentRef]) -> None:
        env_dirs = [self.environment_dir(environment) for environment in environments]
        self.console.print("[blue]Consolidating modules...[/blue]")
        self.consolidation = ModuleConsolidator(self.project_dir).run(env_dirs)
        report = self.consolidation
        self.console.print(
            f"[green]✓[/green] {len(report.unique_files)} module files, "
            f"{report.duplicates} duplicates, {len(report.conflicts)} conflicts"
        )
        if self.executor is None:
            return
        self.console.print("[blue]Initializing Terraform state for each environment...[/blue]")
        for environment, env_dir in zip(environments, env_dirs, strict=True):
            self._initialize_state(environment, env_dir)

    def _initialize_state(self, environment: EnvironmentRef, env_dir: Path) -> None:
        assert self.executor is not None
        state_file = env_dir / DOWNLOADED_STATE
        if not state_file.is_file() and not self.include_providers:
            self.console.print(
                f"  [dim]No state file found for {env_dir.name}, "
                "skipping state initialization[/dim]"
            )
            return
        try:
            self.executor.init(env_dir, None)
            if state_file.is_file():
                self.executor.state_push(env_dir, state_file.resolve())
                state_file.unlink()
        except (FctlDomainError, OSError) as err:
            logger.warning("State initialization failed for %s: %s", env_dir.name, err)
            self.console.print(f"  [red]✗[/red] {env_dir.name}: {err}")
            return
        self.console.print(
            f"  [green]✓[/green] Initialized Terraform state for {env_dir.name}"
        )
