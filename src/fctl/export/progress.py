"""
Export progress aggregation and display

``ExportProgress`` is the only state shared between export workers. Every
update and every snapshot takes its lock; nothing slow ever runs under it.
``ProgressDisplay`` renders snapshots on its own timer thread, so workers never
wait for the terminal.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from types import TracebackType

from rich.console import Console
from rich.live import Live
from rich.table import Table

from fctl.domain.models import EnvironmentRef, ExportStatus
from fctl.domain.results import EnvironmentOutcome

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ExportStatus, frozenset[ExportStatus]] = {
    ExportStatus.PENDING: frozenset({ExportStatus.TRIGGERING, ExportStatus.WAITING}),
    ExportStatus.TRIGGERING: frozenset({ExportStatus.WAITING}),
    ExportStatus.WAITING: frozenset({ExportStatus.WAITING, ExportStatus.DOWNLOADING}),
    ExportStatus.DOWNLOADING: frozenset({ExportStatus.DOWNLOADING, ExportStatus.EXTRACTING}),
    ExportStatus.EXTRACTING: frozenset({ExportStatus.CLEANING}),
    ExportStatus.CLEANING: frozenset({ExportStatus.COMPLETE}),
}

_ICONS = {
    ExportStatus.PENDING: "[dim]…[/dim]",
    ExportStatus.TRIGGERING: "🚀",
    ExportStatus.WAITING: "⏳",
    ExportStatus.DOWNLOADING: "📥",
    ExportStatus.EXTRACTING: "📦",
    ExportStatus.CLEANING: "🧹",
    ExportStatus.COMPLETE: "[green]✓[/green]",
    ExportStatus.FAILED: "[red]✗[/red]",
}


def format_duration(seconds: float) -> str:
    """Render a duration as ``1h2m3s``; anything under a second is ``0s``."""
    if seconds < 1:
        return "0s"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


@dataclass(slots=True)
class EnvironmentProgress:
    environment_id: str
    name: str
    status: ExportStatus = ExportStatus.PENDING
    message: str = ""
    error: str = ""
    job_id: str = ""
    started_at: float | None = None
    finished_at: float | None = None

    def elapsed(self, now: float) -> float:
        if self.started_at is None:
            return 0.0
        return (self.finished_at or now) - self.started_at


class ExportProgress:
    """Thread-safe per-environment status aggregator."""

    def __init__(self, environments: list[EnvironmentRef], *, clock=time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._entries = {
            environment.id: EnvironmentProgress(
                environment_id=environment.id, name=environment.name or environment.id
            )
            for environment in environments
        }

    def update(
        self,
        environment_id: str,
        status: ExportStatus,
        message: str = "",
        *,
        job_id: str | None = None,
        error: str = "",
    ) -> bool:
        """Record a state transition; returns False if the entry is already terminal.

        Raises:
            ValueError: If ``status`` does not follow the current state.
        """
        with self._lock:
            entry = self._entries[environment_id]
            current = entry.status
            if not current.terminal:
                if status != ExportStatus.FAILED and status not in _TRANSITIONS[current]:
                    raise ValueError(f"Invalid export transition {current} -> {status}")
                now = self._clock()
                if entry.started_at is None:
                    entry.started_at = now
                entry.status = status
                entry.message = message
                if job_id is not None:
                    entry.job_id = job_id
                if status.terminal:
                    entry.finished_at = now
                    entry.error = error
                return True
        logger.debug("Ignoring %s for %s: already %s", status, environment_id, current)
        return False

    def snapshot(self) -> list[EnvironmentProgress]:
        with self._lock:
            return [replace(entry) for entry in self._entries.values()]

    def outcomes(self) -> list[EnvironmentOutcome]:
        return [
            EnvironmentOutcome(
                environment_id=entry.environment_id,
                name=entry.name,
                succeeded=entry.status == ExportStatus.COMPLETE,
                error=entry.error,
                job_id=entry.job_id,
            )
            for entry in self.snapshot()
        ]


def render_progress(entries: list[EnvironmentProgress], now: float) -> Table:
    table = Table(title="Export progress", show_lines=False)
    table.add_column("", width=2)
    table.add_column("Environment", style="cyan")
    table.add_column("Status")
    table.add_column("Elapsed", justify="right")
    table.add_column("Details")
    for entry in entries:
        details = entry.error if entry.status == ExportStatus.FAILED else entry.message
        table.add_row(
            _ICONS[entry.status],
            entry.name,
            entry.status.value,
            format_duration(entry.elapsed(now)),
            details,
        )
    return table


class ProgressDisplay:
    """Renders an ``ExportProgress`` on a fixed cadence until stopped.

    Example:
        with ProgressDisplay(progress):
            run_workers()
    """

    def __init__(
        self,
        progress: ExportProgress,
        *,
        refresh_seconds: float = 0.5,
        grace_seconds: float = 0.1,
        console: Console | None = None,
        clock=time.monotonic,
    ) -> None:
        self._progress = progress
        self._refresh_seconds = refresh_seconds
        self._grace_seconds = grace_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._live = Live(
            self.render(), console=console or Console(), auto_refresh=False, transient=False
        )
        self._thread: threading.Thread | None = None

    def render(self) -> Table:
        return render_progress(self._progress.snapshot(), self._clock())

    def start(self) -> None:
        self._live.start(refresh=True)
        self._thread = threading.Thread(target=self._loop, name="fctl-progress", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self._refresh_seconds):
            self._live.update(self.render(), refresh=True)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        time.sleep(self._grace_seconds)
        self._live.update(self.render(), refresh=True)
        self._live.stop()

    def __enter__(self) -> ProgressDisplay:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
