"""Lifecycle overrides applied to an export tree before destructive runs."""

from __future__ import annotations

import logging
from pathlib import Path

from fctl.sanitize.hcl import Document, HCLSyntaxError

logger = logging.getLogger(__name__)


def relax_prevent_destroy(root: Path) -> list[Path]:
    """Set ``lifecycle { prevent_destroy = false }`` on every managed resource.

    Returns the files that were rewritten. Files that cannot be parsed are
    logged and skipped.
    """
    rewritten: list[Path] = []
    for path in sorted(root.rglob("*.tf")):
        if ".terraform" in path.parts:
            continue
        try:
            original = path.read_text(encoding="utf-8")
            document = Document(original)
        except (HCLSyntaxError, OSError, UnicodeDecodeError) as err:
            logger.warning("Skipping %s: %s", path, err)
            continue
        for resource in document.blocks("resource"):
            if len(resource.labels) != 2:
                continue
            lifecycle = resource.find_block("lifecycle")
            if lifecycle is None:
                resource.append_block("lifecycle", ["prevent_destroy = false"])
            else:
                lifecycle.set_attribute("prevent_destroy", "false")
        if document.text != original:
            path.write_text(document.text, encoding="utf-8")
            rewritten.append(path)
    return rewritten
