"""
Archive Helpers

Zip extraction and packing, artifact name parsing and the export-context file
that identifies which environment an artifact belongs to.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path

from fctl.domain.errors import TransferError, WorkspaceIOError

EXPORT_CONTEXT_FILE = "deploymentcontext.json"

_DEPLOYMENT_ARCHIVE = re.compile(r"^([a-fA-F0-9-]{24,36})\.zip$")
_LEGACY_ARCHIVE = re.compile(r"^terraform-export-([^-]+)-([^-]+)-\d{8}-\d{6}\.zip$")
RETAINED_ARCHIVE = re.compile(r"[a-fA-F0-9-]{36}\.zip$")


@dataclass(frozen=True, slots=True)
class ArtifactName:
    """Identifiers encoded in an artifact file name."""

    deployment_id: str
    environment_id: str | None = None


def parse_artifact_name(path: Path | str) -> ArtifactName:
    """Extract the deployment (and, for legacy names, environment) identifier.

    Accepts ``<deploymentID>.zip`` and the older
    ``terraform-export-<env>-<deployment>-<YYYYMMDD>-<HHMMSS>.zip`` form.

    Raises:
        TransferError: If the name matches neither form.
    """
    name = Path(path).name
    match = _DEPLOYMENT_ARCHIVE.match(name)
    if match:
        return ArtifactName(deployment_id=match.group(1))
    legacy = _LEGACY_ARCHIVE.match(name)
    if legacy:
        return ArtifactName(deployment_id=legacy.group(2), environment_id=legacy.group(1))
    raise TransferError(
        message=f"Could not extract deployment ID from zip filename: {name}",
        code="invalid_artifact_name",
    )


def _member_target(destination: Path, member_name: str) -> Path:
    root = destination.resolve()
    target = (root / member_name).resolve()
    if target != root and root not in target.parents:
        raise TransferError(
            message=f"Illegal file path in archive: {member_name}",
            code="corrupt_archive",
        )
    return target


def extract_archive(archive: Path, destination: Path) -> None:
    """Extract every member of ``archive`` below ``destination``."""
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise WorkspaceIOError(
            message=f"Could not create directory {destination}: {err}",
            code="mkdir_failed",
        ) from err
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.infolist():
                target = _member_target(destination, member.filename)
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with bundle.open(member) as source, open(target, "wb") as sink:
                    shutil.copyfileobj(source, sink)
                mode = (member.external_attr >> 16) & 0o777
                if mode:
                    # keep extracted files owner-writable so re-extraction can overwrite them
                    os.chmod(target, mode | 0o600)
    except zipfile.BadZipFile as err:
        raise TransferError(
            message=f"Corrupt archive {archive}: {err}", code="corrupt_archive"
        ) from err
    except OSError as err:
        raise TransferError(
            message=f"Could not extract {archive}: {err}", code="extract_failed"
        ) from err


def zip_directory(source: Path, target: Path) -> None:
    """Pack ``source`` into ``target`` with paths relative to ``source``.

    Empty directories are kept as ``dir/`` entries; only regular files are
    stored.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_target = target.with_name(f".{target.name}.tmp")
    try:
        with zipfile.ZipFile(temp_target, "w", compression=zipfile.ZIP_DEFLATED) as bundle:
            for dirpath, dirnames, filenames in os.walk(source):
                dirnames.sort()
                current = Path(dirpath)
                relative = current.relative_to(source)
                if relative != Path(".") and not dirnames and not filenames:
                    bundle.writestr(f"{relative.as_posix()}/", b"")
                for filename in sorted(filenames):
                    path = current / filename
                    if path.is_symlink() or not path.is_file():
                        continue
                    bundle.write(path, (relative / filename).as_posix())
        os.replace(temp_target, target)
    except OSError as err:
        temp_target.unlink(missing_ok=True)
        raise TransferError(
            message=f"Could not create archive {target}: {err}", code="archive_failed"
        ) from err


def _environment_id(payload: object) -> str:
    cluster = payload.get("cluster") if isinstance(payload, dict) else None
    environment_id = cluster.get("id") if isinstance(cluster, dict) else None
    if not environment_id:
        raise TransferError(
            message=f"cluster.id not found in {EXPORT_CONTEXT_FILE}",
            code="context_invalid",
        )
    return str(environment_id)


def read_environment_id(directory: Path) -> str:
    """Read the environment identifier (``cluster.id``) from the export-context file."""
    context_path = directory / EXPORT_CONTEXT_FILE
    try:
        payload = json.loads(context_path.read_text(encoding="utf-8"))
    except FileNotFoundError as err:
        raise TransferError(
            message=f"{EXPORT_CONTEXT_FILE} not found in {directory}",
            code="context_missing",
        ) from err
    except (OSError, json.JSONDecodeError) as err:
        raise TransferError(
            message=f"Failed to read {context_path}: {err}", code="context_invalid"
        ) from err
    return _environment_id(payload)


def read_archive_environment_id(archive: Path) -> str:
    """Read the environment identifier from the export-context file inside an archive."""
    try:
        with zipfile.ZipFile(archive) as bundle:
            names = [
                name
                for name in bundle.namelist()
                if name == EXPORT_CONTEXT_FILE or name.endswith(f"/{EXPORT_CONTEXT_FILE}")
            ]
            if not names:
                raise TransferError(
                    message=f"{EXPORT_CONTEXT_FILE} not found in {archive.name}",
                    code="context_missing",
                )
            payload = json.loads(bundle.read(min(names, key=len)))
    except zipfile.BadZipFile as err:
        raise TransferError(
            message=f"Corrupt archive {archive}: {err}", code="corrupt_archive"
        ) from err
    except (OSError, json.JSONDecodeError) as err:
        raise TransferError(
            message=f"Failed to read {EXPORT_CONTEXT_FILE} from {archive}: {err}",
            code="context_invalid",
        ) from err
    return _environment_id(payload)
