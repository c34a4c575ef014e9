"""Workspace, archive, credential and consolidation primitives."""

from .consolidate import ConsolidationReport, ModuleConsolidator
from .credentials import ProfileStore, normalize_host
from .differ import archive_differs
from .workspace import (
    LatestSnapshotChooser,
    PromptSnapshotChooser,
    SnapshotSource,
    WorkspaceManager,
    fix_permissions,
)

__all__ = [
    "ConsolidationReport",
    "LatestSnapshotChooser",
    "ModuleConsolidator",
    "ProfileStore",
    "PromptSnapshotChooser",
    "SnapshotSource",
    "WorkspaceManager",
    "archive_differs",
    "fix_permissions",
    "normalize_host",
]
