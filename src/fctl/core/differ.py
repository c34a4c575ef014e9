"""Content-addressed comparison of a zip archive against an extracted directory."""

from __future__ import annotations

import hashlib
import zipfile
from pathlib import Path
from typing import BinaryIO

from fctl.domain.errors import ContentDiffError

_CHUNK_SIZE = 1024 * 1024


def _digest(stream: BinaryIO) -> str:
    sha = hashlib.sha256()
    for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
        sha.update(chunk)
    return sha.hexdigest()


def hash_file(path: Path) -> str:
    """Return the SHA-256 hex digest of a file on disk."""
    with open(path, "rb") as handle:
        return _digest(handle)


def archive_differs(archive: Path, directory: Path) -> bool:
    """Return True if any file in ``archive`` is missing or different in ``directory``.

    Only files listed in the archive are compared; extra files in the directory
    are ignored. Comparison is by content hash, never size or mtime.

    Raises:
        ContentDiffError: If the archive or a directory file cannot be read. The
            error carries ``different=True`` so callers re-extract.
    """
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.infolist():
                if member.is_dir():
                    continue
                target = directory / member.filename
                if not target.is_file():
                    return True
                with bundle.open(member) as stream:
                    archived = _digest(stream)
                if archived != hash_file(target):
                    return True
    except (OSError, zipfile.BadZipFile) as err:
        raise ContentDiffError(
            message=f"Failed to compare {archive} with {directory}: {err}",
            code="diff_failed",
        ) from err
    return False
