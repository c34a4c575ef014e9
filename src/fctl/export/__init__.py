"""Concurrent multi-environment export."""

from .orchestrator import EnvironmentExporter, ExportOrchestrator
from .progress import ExportProgress, ProgressDisplay, format_duration

__all__ = [
    "EnvironmentExporter",
    "ExportOrchestrator",
    "ExportProgress",
    "ProgressDisplay",
    "format_duration",
]
