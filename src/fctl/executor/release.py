"""Release metadata extraction from terraform state."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

RELEASE_METADATA_FILE = "release-metadata.json"
_METADATA_RESOURCE_TYPE = "scratch_string"
_METADATA_RESOURCE_NAME = "release_metadata"


def _walk_modules(module: dict[str, Any] | None) -> Iterator[dict[str, Any]]:
    if not module:
        return
    yield from module.get("resources") or []
    for child in module.get("child_modules") or []:
        yield from _walk_modules(child)


def collect_release_metadata(state: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the release metadata recorded by ``release_metadata`` scratch resources.

    ``state`` is the output of ``terraform show -json``. Only resources whose
    payload sets ``generate_release_metadata`` contribute.
    """
    collected: list[dict[str, Any]] = []
    root = (state.get("values") or {}).get("root_module")
    for resource in _walk_modules(root):
        if (
            resource.get("type") != _METADATA_RESOURCE_TYPE
            or resource.get("name") != _METADATA_RESOURCE_NAME
        ):
            continue
        raw = (resource.get("values") or {}).get("in")
        if not isinstance(raw, str):
            continue
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as err:
            logger.warning(
                "Failed to parse release metadata in %s: %s", resource.get("address"), err
            )
            continue
        metadata = payload.get("release_metadata") if isinstance(payload, dict) else None
        if isinstance(metadata, dict) and payload.get("generate_release_metadata") is True:
            collected.append(metadata)
    return collected


def write_release_metadata(directory: Path, metadata: list[dict[str, Any]]) -> Path:
    path = directory / RELEASE_METADATA_FILE
    path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")
    return path
