"""
Sanitization Engine

Rewrites a freshly extracted export tree into a portable form: prunes
platform-only files, then walks every remaining file, classifies it by role and
applies that role's transformations from the rule table. Files are written only
when their content changes, so running the engine twice is a no-op the second
time. A file that fails to parse or rewrite is logged and left untouched.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from fctl.domain.errors import SanitizationWarning
from fctl.sanitize.hcl import Document, HCLSyntaxError
from fctl.sanitize.rules import (
    EXPORT_ROOT,
    HCL_RULES,
    JSON_ROLES,
    JSON_RULES,
    MODULES_DIR,
    PRUNED_EXPORT_PATHS,
    PRUNED_MODULE_FILES,
    FileRole,
    classify,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SanitizationReport:
    """Files touched by one sanitization run."""

    rewritten: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)
    warnings: list[SanitizationWarning] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.rewritten or self.deleted)


class SanitizationEngine:
    """Applies the rule table to every file below a tree root."""

    def __init__(
        self,
        hcl_rules: dict[FileRole, tuple[Any, ...]] | None = None,
        json_rules: dict[FileRole, tuple[Any, ...]] | None = None,
    ) -> None:
        self._hcl_rules = HCL_RULES if hcl_rules is None else hcl_rules
        self._json_rules = JSON_RULES if json_rules is None else json_rules

    def run(self, root: Path) -> SanitizationReport:
        """Sanitize the tree below ``root`` in place."""
        report = SanitizationReport()
        self._prune(root, report)
        for path in sorted(self._walk(root)):
            relative = PurePosixPath(path.relative_to(root).as_posix())
            role = classify(relative)
            if role is None:
                continue
            try:
                if role in JSON_ROLES:
                    self._apply_json(path, relative, role, report)
                else:
                    self._apply_hcl(path, relative, role, report)
            except (HCLSyntaxError, json.JSONDecodeError, OSError, UnicodeDecodeError) as err:
                warning = SanitizationWarning(path=path, reason=str(err))
                logger.warning("Skipping %s", warning)
                report.warnings.append(warning)
        return report

    @staticmethod
    def _walk(root: Path) -> list[Path]:
        found: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            # provider caches are not configuration
            dirnames[:] = [name for name in dirnames if name != ".terraform"]
            found.extend(Path(dirpath) / name for name in filenames)
        return found

    def _prune(self, root: Path, report: SanitizationReport) -> None:
        export_root = root / EXPORT_ROOT
        for modules in (root / MODULES_DIR, export_root / MODULES_DIR):
            if not modules.is_dir():
                continue
            for path in sorted(modules.rglob("*")):
                if path.is_file() and path.name in PRUNED_MODULE_FILES:
                    self._delete(path, report)
        for name in PRUNED_EXPORT_PATHS:
            path = export_root / name
            if path.exists():
                self._delete(path, report)

    @staticmethod
    def _delete(path: Path, report: SanitizationReport) -> None:
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as err:
            warning = SanitizationWarning(path=path, reason=f"could not remove: {err}")
            logger.warning("%s", warning)
            report.warnings.append(warning)
            return
        logger.debug("Removed %s", path)
        report.deleted.append(path)

    def _apply_hcl(
        self, path: Path, relative: PurePosixPath, role: FileRole, report: SanitizationReport
    ) -> None:
        original = path.read_text(encoding="utf-8")
        document = Document(original)
        changed = False
        for transform in self._hcl_rules.get(role, ()):
            changed |= transform(document, relative)
        if not changed or document.text == original:
            return
        if document.is_empty():
            path.unlink()
            logger.debug("Deleted emptied %s", path)
            report.deleted.append(path)
            return
        path.write_text(document.text, encoding="utf-8")
        report.rewritten.append(path)

    def _apply_json(
        self, path: Path, relative: PurePosixPath, role: FileRole, report: SanitizationReport
    ) -> None:
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            return
        changed = False
        for transform in self._json_rules.get(role, ()):
            changed |= transform(payload, relative)
        if not changed:
            return
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        report.rewritten.append(path)


def sanitize_tree(root: Path) -> SanitizationReport:
    """Run the default rule table over ``root``."""
    return SanitizationEngine().run(root)
