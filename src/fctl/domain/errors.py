"""Unified domain error taxonomy for export, workspace and provisioning workflows."""

from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class FctlDomainError(Exception):
    """Base class for application/domain-level failures."""

    message: str
    code: str

    def __str__(self) -> str:
        return self.message


class RemoteJobError(FctlDomainError):
    """Raised for remote export trigger/poll failures."""


class ControlPlaneUnavailableError(RemoteJobError):
    """Raised when the control plane answers 503; callers should retry later."""


class TransferError(FctlDomainError):
    """Raised for download/extract failures and corrupt archives."""


@dataclass(slots=True)
class ContentDiffError(TransferError):
    """Raised when hashing fails; the archive must be treated as different."""

    different: bool = True


class WorkspaceIOError(FctlDomainError):
    """Raised for directory creation, permission and disk failures."""


class StateCarryForwardError(FctlDomainError):
    """Raised when a requested prior state snapshot is missing or unreadable."""


class ConfigurationError(FctlDomainError):
    """Raised for invalid backend, profile or credential configuration."""


class ProvisioningError(FctlDomainError):
    """Raised when the provisioning tool exits non-zero or cannot be started."""


@dataclass(frozen=True, slots=True)
class SanitizationWarning:
    """One file whose rewrite failed; the file was left untouched."""

    path: Path
    reason: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason}"


@dataclass(frozen=True, slots=True)
class ConsolidationConflict:
    """A module file whose content differs between environments."""

    relative_path: Path
    kept_from: str
    rejected_from: str

    def __str__(self) -> str:
        return (
            f"{self.relative_path}: content from '{self.rejected_from}' differs, "
            f"keeping version from '{self.kept_from}'"
        )
