"""
Export tree sanitization

Rule-driven rewrite of exported configuration trees into a portable form.
"""

from .engine import SanitizationEngine, SanitizationReport, sanitize_tree
from .hcl import Document, HCLSyntaxError
from .lifecycle import relax_prevent_destroy
from .rules import FileRole, classify

__all__ = [
    "Document",
    "FileRole",
    "HCLSyntaxError",
    "SanitizationEngine",
    "SanitizationReport",
    "classify",
    "relax_prevent_destroy",
    "sanitize_tree",
]
