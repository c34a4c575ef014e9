"""Domain types and contracts for fctl workflows."""

from .errors import (
    ConfigurationError,
    ConsolidationConflict,
    ContentDiffError,
    ControlPlaneUnavailableError,
    FctlDomainError,
    ProvisioningError,
    RemoteJobError,
    SanitizationWarning,
    StateCarryForwardError,
    TransferError,
    WorkspaceIOError,
)
from .models import EnvironmentRef, ExportJob, ExportStatus, Profile, RemoteJobStatus
from .results import CommandResult, EnvironmentOutcome, ExportSummary

__all__ = [
    "CommandResult",
    "EnvironmentOutcome",
    "ExportSummary",
    "FctlDomainError",
    "RemoteJobError",
    "ControlPlaneUnavailableError",
    "TransferError",
    "ContentDiffError",
    "WorkspaceIOError",
    "StateCarryForwardError",
    "ConfigurationError",
    "ProvisioningError",
    "SanitizationWarning",
    "ConsolidationConflict",
    "EnvironmentRef",
    "ExportJob",
    "ExportStatus",
    "Profile",
    "RemoteJobStatus",
]
