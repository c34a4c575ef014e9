"""
Module Consolidator

After every environment of a project has been exported and sanitized, flattens
each environment's ``tfexport/`` tree into the environment directory, merges all
per-environment ``modules/`` subtrees into one project-level ``modules/`` tree
and repoints export-context file references at their new locations.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from fctl.core.archive import EXPORT_CONTEXT_FILE
from fctl.core.workspace import EXPORT_ROOT
from fctl.domain.errors import ConsolidationConflict

logger = logging.getLogger(__name__)

MODULES_DIR = "modules"
LEVEL2_DIR = "level2"
_CONTEXT_REFERENCE = 'file("{}")'
_LOCAL_CONTEXT = f"./{EXPORT_CONTEXT_FILE}"
_UPWARD_CONTEXTS = (
    f"../{EXPORT_CONTEXT_FILE}",
    f"../../{EXPORT_CONTEXT_FILE}",
    f"../../../{EXPORT_CONTEXT_FILE}",
)


@dataclass(slots=True)
class ConsolidationReport:
    """Outcome of one consolidation run over a project directory."""

    unique_files: list[Path] = field(default_factory=list)
    duplicates: int = 0
    conflicts: list[ConsolidationConflict] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


def rewrite_context_reference(path: Path, candidates: Iterable[str]) -> bool:
    """Point ``file("<candidate>")`` calls at the local export-context file.

    Candidates are tried in order and the first one present wins.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    target = _CONTEXT_REFERENCE.format(_LOCAL_CONTEXT)
    for candidate in candidates:
        reference = _CONTEXT_REFERENCE.format(candidate)
        if reference in content:
            path.write_text(content.replace(reference, target), encoding="utf-8")
            return True
    return False


def _files_identical(first: Path, second: Path) -> bool:
    if first.stat().st_size != second.stat().st_size:
        return False
    return first.read_bytes() == second.read_bytes()


class ModuleConsolidator:
    """Merges per-environment module trees below one project directory."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir
        self.modules_dir = project_dir / MODULES_DIR

    def run(self, environment_dirs: list[Path]) -> ConsolidationReport:
        """Restructure, relocate, merge and rewrite, in that order.

        Environments are processed in the given order; on conflicting content
        the first environment's file is kept.
        """
        report = ConsolidationReport()
        for env_dir in environment_dirs:
            try:
                self.restructure(env_dir)
                self.relocate_contexts(env_dir)
            except OSError as err:
                logger.warning("Failed to restructure %s: %s", env_dir.name, err)
                report.skipped[env_dir.name] = str(err)
        self.merge(
            [env_dir for env_dir in environment_dirs if env_dir.name not in report.skipped],
            report,
        )
        self.rewrite_module_contexts()
        return report

    @staticmethod
    def restructure(env_dir: Path) -> None:
        """Move the content of ``<env>/tfexport/`` up into ``<env>/``."""
        export_dir = env_dir / EXPORT_ROOT
        if not export_dir.is_dir():
            return
        for dirpath, _dirnames, filenames in os.walk(export_dir):
            current = Path(dirpath)
            destination = env_dir / current.relative_to(export_dir)
            destination.mkdir(parents=True, exist_ok=True)
            for filename in filenames:
                shutil.move(str(current / filename), str(destination / filename))
        shutil.rmtree(export_dir)

    @staticmethod
    def relocate_contexts(env_dir: Path) -> None:
        """Point main.tf and level2 files at a local copy of the export-context file."""
        rewrite_context_reference(env_dir / "main.tf", _UPWARD_CONTEXTS[:1])
        level2 = env_dir / LEVEL2_DIR
        rewrite_context_reference(level2 / "main.tf", _UPWARD_CONTEXTS[1:2])
        context = env_dir / EXPORT_CONTEXT_FILE
        if context.is_file() and level2.is_dir():
            shutil.copyfile(context, level2 / EXPORT_CONTEXT_FILE)
        rewrite_context_reference(level2 / "locals.tf", _UPWARD_CONTEXTS[:2])

    def merge(self, environment_dirs: list[Path], report: ConsolidationReport) -> None:
        registry: dict[Path, str] = {}
        self.modules_dir.mkdir(parents=True, exist_ok=True)
        for env_dir in environment_dirs:
            source = env_dir / MODULES_DIR
            if not source.is_dir():
                logger.info("No modules directory found for %s", env_dir.name)
                continue
            try:
                self._merge_environment(env_dir.name, source, registry, report)
            except OSError as err:
                logger.warning("Error processing modules for %s: %s", env_dir.name, err)
                report.skipped[env_dir.name] = str(err)
                continue
            try:
                shutil.rmtree(source)
            except OSError as err:
                logger.warning("Failed to remove modules directory for %s: %s", env_dir.name, err)
        if report.conflicts:
            logger.warning(
                "Found %d module conflicts (kept first version of each)", len(report.conflicts)
            )

    def _merge_environment(
        self,
        environment: str,
        source: Path,
        registry: dict[Path, str],
        report: ConsolidationReport,
    ) -> None:
        """Copy one environment's module files into the project tree.

        Registry and report only change once every file is handled. On an
        OSError the files and directories created for this environment are
        removed again before the error propagates.
        """
        added: list[Path] = []
        created_dirs: list[Path] = []
        duplicates = 0
        conflicts: list[ConsolidationConflict] = []
        try:
            for dirpath, dirnames, filenames in os.walk(source):
                dirnames.sort()
                current = Path(dirpath)
                relative_dir = current.relative_to(source)
                target_dir = self.modules_dir / relative_dir
                if not target_dir.exists():
                    target_dir.mkdir(parents=True)
                    created_dirs.append(target_dir)
                for filename in sorted(filenames):
                    relative = relative_dir / filename
                    destination = self.modules_dir / relative
                    if relative not in registry:
                        shutil.copyfile(current / filename, destination)
                        added.append(relative)
                    elif _files_identical(current / filename, destination):
                        duplicates += 1
                    else:
                        conflicts.append(
                            ConsolidationConflict(
                                relative_path=relative,
                                kept_from=registry[relative],
                                rejected_from=environment,
                            )
                        )
        except OSError:
            self._discard(added, created_dirs)
            raise
        for relative in added:
            registry[relative] = environment
        report.unique_files.extend(added)
        report.duplicates += duplicates
        for conflict in conflicts:
            logger.warning("Module conflict detected: %s", conflict)
            report.conflicts.append(conflict)

    def _discard(self, added: list[Path], created_dirs: list[Path]) -> None:
        for relative in added:
            try:
                (self.modules_dir / relative).unlink(missing_ok=True)
            except OSError as err:
                logger.warning("Failed to remove partial module copy %s: %s", relative, err)
        for directory in reversed(created_dirs):
            try:
                directory.rmdir()
            except OSError as err:
                logger.debug("Left module directory %s in place: %s", directory, err)

    def rewrite_module_contexts(self) -> int:
        """Point every consolidated module at ``./deploymentcontext.json``."""
        rewritten = 0
        if not self.modules_dir.is_dir():
            return rewritten
        for path in sorted(self.modules_dir.rglob("*")):
            if path.is_file() and path.name.endswith((".tf", ".tf.json")):
                changed = False
                # several historical depths may be mixed within one file
                for candidate in _UPWARD_CONTEXTS:
                    changed |= rewrite_context_reference(path, (candidate,))
                rewritten += int(changed)
        return rewritten
