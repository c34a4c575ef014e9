"""
Repackage Command Implementation

Injects extra files into an export zip: extract, copy a file or directory into
the tree, and pack it again.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path, PurePosixPath

from rich.console import Console

from fctl.core.archive import extract_archive, zip_directory
from fctl.domain.errors import FctlDomainError
from fctl.domain.results import CommandResult

console = Console()


class RepackageError(Exception):
    """Raised when repackage command fails"""


def parse_copy_pair(value: str) -> tuple[Path, str]:
    """Split a ``SOURCE:DEST`` option value at the first colon."""
    source, separator, destination = value.partition(":")
    if not separator:
        raise RepackageError(
            f"Invalid --copy value: {value} (expected format source:destination)"
        )
    if not source or not destination:
        raise RepackageError(f"Invalid --copy value: {value} (source and destination required)")
    return Path(source), destination


def copy_into_tree(root: Path, source: Path, destination: str) -> Path:
    """Copy ``source`` to ``destination`` (relative to ``root``), merging directories.

    Raises:
        RepackageError: If the source is missing or the destination escapes ``root``.
    """
    relative = PurePosixPath(destination.strip("/"))
    if ".." in relative.parts:
        raise RepackageError(f"Destination must stay inside the archive: {destination}")
    target = root.joinpath(*relative.parts)
    if source.is_dir():
        shutil.copytree(source, target, dirs_exist_ok=True)
    elif source.is_file():
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
    else:
        raise RepackageError(f"Source path does not exist: {source}")
    return target


def repackage_zip(
    zip_path: Path,
    source: Path,
    destination: str,
    output: Path | None = None,
) -> CommandResult:
    """Copy ``source`` into the archive at ``destination`` and rezip.

    The result replaces ``zip_path`` unless ``output`` is given.
    """
    if not zip_path.is_file():
        raise RepackageError(f"Zip file not found: {zip_path}")
    target_zip = output or zip_path
    try:
        with tempfile.TemporaryDirectory(prefix="fctl-repackage-") as scratch:
            tree = Path(scratch)
            extract_archive(zip_path, tree)
            copied = copy_into_tree(tree, source, destination)
            zip_directory(tree, target_zip)
    except RepackageError as err:
        console.print(f"[red]✗ Repackage failed: {err}[/red]")
        raise
    except (FctlDomainError, OSError) as err:
        console.print(f"[red]✗ Repackage failed: {err}[/red]")
        raise RepackageError(str(err)) from err
    console.print(f"[green]✓[/green] Copied {source} to {copied.relative_to(tree)}")
    console.print(f"[green]✓[/green] Repackaged zip saved to {target_zip}")
    return CommandResult(
        success=True,
        message=f"Repackaged {zip_path.name}",
        data={"output": str(target_zip)},
    )
