"""Typed workflow result envelopes used by CLI and SDK entrypoints."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class CommandResult:
    """Common command/service response payload."""

    success: bool
    code: str = "ok"
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def as_json_dict(self) -> dict[str, Any]:
        """Return a stable machine-readable structure."""
        return {
            "success": self.success,
            "code": self.code,
            "message": self.message,
            "data": self.data,
        }


@dataclass(slots=True)
class EnvironmentOutcome:
    """Final result of exporting one environment."""

    environment_id: str
    name: str
    succeeded: bool
    error: str = ""
    job_id: str = ""
    output_dir: str = ""


@dataclass(slots=True)
class ExportSummary:
    """Per-environment outcome of a multi-environment export run."""

    outcomes: list[EnvironmentOutcome] = field(default_factory=list)
    post_processed: bool = False

    @property
    def succeeded(self) -> list[EnvironmentOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> list[EnvironmentOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    def as_json_dict(self) -> dict[str, Any]:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "postProcessed": self.post_processed,
            "failures": {outcome.name: outcome.error for outcome in self.failed},
        }
