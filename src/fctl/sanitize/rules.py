"""
Sanitization Rule Table

Maps each file role of an exported configuration tree to the ordered list of
transformations applied to it. A transformation receives the parsed file and
its path relative to the tree root and reports whether it changed anything.
Adding a new platform-internal construct means adding a transformation here;
the engine's control flow does not change.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from enum import StrEnum
from functools import partial
from pathlib import PurePosixPath
from typing import Any

from fctl.sanitize.hcl import (
    Document,
    drop_lines_referencing,
    drop_object_items,
    is_empty_collection,
    references,
)

HclTransform = Callable[[Document, PurePosixPath], bool]
JsonTransform = Callable[[dict[str, Any], PurePosixPath], bool]

EXPORT_ROOT = "tfexport"
MODULES_DIR = "modules"
LEVEL2_DIR = "level2"
EXPORT_MODULE = "level2"
PROTECTED_MODULES = frozenset({"blueprint_self", "environment"})

METADATA_ATTRIBUTE = "cc_metadata"
MODULE_INTERNAL_ATTRIBUTES = (
    "settings",
    "state",
    "infra_output",
    "deployment_id",
    "release_metadata",
    "instance_type",
    "iac_version",
    "generate_release_metadata",
    "baseinfra",
    "cc_metadata",
)
LEVEL2_INTERNAL_ATTRIBUTES = (
    "instance_type",
    "iac_version",
    "release_metadata",
    "generate_release_metadata",
    "baseinfra",
    "settings",
)
LEVEL2_REQUIRED_ATTRIBUTES = (
    ("inputs", "{}"),
    ("instance", "{}"),
    ("instance_name", '""'),
    ("cluster", "var.cluster"),
    ("environment", "var.environment"),
)
ROOT_INTERNAL_VARIABLES = ("deployment_id", "dev_mode", "releaseType")
MODULE_INTERNAL_VARIABLES = (
    "release_metadata",
    "instance_type",
    "iac_version",
    "generate_release_metadata",
    "settings",
    "baseinfra",
    "cc_metadata",
)
LEVEL2_INTERNAL_VARIABLES = ("infra_output", "settings", "state", "cc_metadata", "deployment_id")
PROJECT_INTERNAL_VARIABLES = (
    "deployment_id",
    "dev_mode",
    "releaseType",
    "CUSTOMER_ARTIFACT_BUCKET",
    "USE_MINIO",
)
PROJECT_INTERNAL_PREFIX = "cc_"
REQUIRED_MODULE_VARIABLES = (
    ("instance", "object({})", "{}", "Instance configuration"),
    ("instance_name", "string", '""', "Name of the instance"),
    ("cluster", "object({})", "{}", "Cluster identifier"),
    ("environment", "object({})", "{}", "Environment name"),
    ("inputs", "object({})", "{}", "Inputs"),
)
REMOVED_SYMBOLS = (
    "cc_metadata",
    "deployment_id",
    "release_metadata",
    "generate_release_metadata",
    "baseinfra",
    "settings",
    "infra_output",
    "state",
)
CLOUD_TAGS_EXPRESSION = (
    'merge(lookup(local.spec, "enable_cloud_tags", true) ? {\n'
    "    cluster           = var.cluster.name\n"
    "    facetsclustername = var.cluster.name\n"
    "    facetsclusterid   = var.cluster.id\n"
    '  } : {}, lookup(local.spec, "cloud_tags", {}))'
)
ENVIRONMENT_VARIABLES_EXPRESSION = "var.cluster.commonEnvironmentVariables"
PLATFORM_VARIABLE_PREFIX = "FACETS_"
SYNTHETIC_RESOURCE_TYPES = ("scratch_string", "scratch_number")
DEFAULT_STATE_VERSION = 4
DEFAULT_TERRAFORM_VERSION = "1.5.7"
INPUT_METADATA_FIELDS = ("flavor", "version", "kind")

_INPUT_FILE = re.compile(r"^input_.*\.tf\.json$")


class FileRole(StrEnum):
    ROOT_MAIN = "root_main"
    LEVEL2_MAIN = "level2_main"
    MODULE_VARIABLES = "module_variables"
    LEVEL2_VARIABLES = "level2_variables"
    ROOT_VARIABLES = "root_variables"
    OUTPUTS = "outputs"
    METADATA = "metadata"
    GENERIC = "generic"
    STATE_JSON = "state_json"
    INPUT_JSON = "input_json"


JSON_ROLES = frozenset({FileRole.STATE_JSON, FileRole.INPUT_JSON})


def classify(relative: PurePosixPath) -> FileRole | None:
    """Return the role of a file below the tree root, or None to pass it through."""
    parts = relative.parts
    if parts and parts[0] == EXPORT_ROOT:
        parts = parts[1:]
    if not parts:
        return None
    name = parts[-1]
    in_modules = MODULES_DIR in parts[:-1]
    in_level2 = not in_modules and len(parts) == 2 and parts[0] == LEVEL2_DIR
    if name == "downloaded-terraform.tfstate" and len(parts) == 1:
        return FileRole.STATE_JSON
    if in_level2 and _INPUT_FILE.match(name):
        return FileRole.INPUT_JSON
    if not name.endswith(".tf"):
        return None
    if name == "cc_metadata.tf":
        return FileRole.METADATA
    if name == "main.tf":
        if len(parts) == 1:
            return FileRole.ROOT_MAIN
        if in_level2:
            return FileRole.LEVEL2_MAIN
        return FileRole.GENERIC
    if name == "variables.tf":
        if in_modules:
            return FileRole.MODULE_VARIABLES
        if in_level2:
            return FileRole.LEVEL2_VARIABLES
        return FileRole.ROOT_VARIABLES
    if name == "outputs.tf":
        return FileRole.OUTPUTS
    return FileRole.GENERIC


# Configuration transformations


def strip_block_attributes(
    document: Document,
    relative: PurePosixPath,
    *,
    names: tuple[str, ...],
    block_type: str | None = None,
    protected: frozenset[str] = frozenset(),
) -> bool:
    """Remove ``names`` from every top-level block (of ``block_type`` if given)."""
    changed = False
    for block in document.blocks(block_type):
        if block.type == "module" and block.name in protected:
            continue
        changed |= block.remove_attributes(names)
    return changed


def remove_blocks(
    document: Document,
    relative: PurePosixPath,
    *,
    block_type: str,
    predicate: Callable[[str], bool],
) -> bool:
    changed = False
    for block in reversed(document.blocks(block_type)):
        if predicate(block.name):
            changed |= block.remove()
    return changed


def clean_export_module(document: Document, relative: PurePosixPath) -> bool:
    """Drop metadata and id passthrough from the top-level export module call."""
    block = document.find_block("module", EXPORT_MODULE)
    if block is None:
        return False
    changed = block.remove_attributes(("cc_metadata", "deployment_id"))
    for name in ("providers", "state"):
        if is_empty_collection(block.expression(name)):
            changed |= block.remove_attribute(name)
    return changed


def _references_deployment_id(key: str, value: str) -> bool:
    return key == "deployment_id" or references(value, "deployment_id")


def normalize_level2_modules(document: Document, relative: PurePosixPath) -> bool:
    """Strip internal attributes from module calls and inject required defaults."""
    changed = False
    for block in document.blocks("module"):
        if block.name in PROTECTED_MODULES:
            continue
        changed |= block.remove_attributes(LEVEL2_INTERNAL_ATTRIBUTES)
        if is_empty_collection(block.expression("providers")):
            changed |= block.remove_attribute("providers")
        inputs = block.expression("inputs")
        if inputs is not None:
            cleaned = drop_object_items(inputs, _references_deployment_id)
            if references(cleaned, "deployment_id"):
                cleaned = "{}"
            changed |= block.set_attribute("inputs", cleaned)
        for name, default in LEVEL2_REQUIRED_ATTRIBUTES:
            changed |= block.set_default(name, default)
    return changed


def ensure_module_variables(document: Document, relative: PurePosixPath) -> bool:
    """Declare the variables every module is called with."""
    declared = {block.name for block in document.blocks("variable")}
    changed = False
    for name, type_expression, default, description in REQUIRED_MODULE_VARIABLES:
        if name in declared:
            continue
        document.append(
            f'variable "{name}" {{\n'
            f"  type        = {type_expression}\n"
            f"  default     = {default}\n"
            f'  description = "{description}"\n'
            "}"
        )
        changed = True
    return changed


def _rewrite_preserved_output(expression: str, marker: str, fallback: str) -> str:
    cleaned = drop_lines_referencing(expression, marker)
    return cleaned if marker not in cleaned else fallback


def prune_outputs(document: Document, relative: PurePosixPath) -> bool:
    """Remove outputs built from removed symbols; rewrite the two preserved ones."""
    changed = False
    parts = relative.parts[:-1]
    for block in reversed(document.blocks("output")):
        value = block.expression("value")
        if value is None:
            continue
        if block.name == "cloud_tags" and "environment" in parts:
            if METADATA_ATTRIBUTE in value:
                rewritten = _rewrite_preserved_output(
                    value, METADATA_ATTRIBUTE, CLOUD_TAGS_EXPRESSION
                )
                changed |= block.set_attribute("value", rewritten)
            continue
        if block.name == "variables" and "blueprint_self" in parts:
            if PLATFORM_VARIABLE_PREFIX in value:
                rewritten = _rewrite_preserved_output(
                    value, PLATFORM_VARIABLE_PREFIX, ENVIRONMENT_VARIABLES_EXPRESSION
                )
                changed |= block.set_attribute("value", rewritten)
            continue
        if any(references(value, symbol) for symbol in REMOVED_SYMBOLS):
            changed |= block.remove()
    return changed


def clear_document(document: Document, relative: PurePosixPath) -> bool:
    return document.clear()


# State and input JSON transformations


def drop_synthetic_resources(state: dict[str, Any], relative: PurePosixPath) -> bool:
    """Remove synthetic resources and scrub them from every dependency list."""
    resources = state.get("resources")
    if not isinstance(resources, list):
        return False
    changed = False
    kept: list[Any] = []
    for resource in resources:
        if isinstance(resource, dict) and resource.get("type") in SYNTHETIC_RESOURCE_TYPES:
            changed = True
            continue
        for instance in (resource.get("instances") or []) if isinstance(resource, dict) else []:
            dependencies = instance.get("dependencies") if isinstance(instance, dict) else None
            if not isinstance(dependencies, list):
                continue
            cleaned = [
                dependency
                for dependency in dependencies
                if not any(kind in str(dependency) for kind in SYNTHETIC_RESOURCE_TYPES)
            ]
            if len(cleaned) != len(dependencies):
                instance["dependencies"] = cleaned
                changed = True
        kept.append(resource)
    if changed:
        state["resources"] = kept
    return changed


def ensure_state_version(state: dict[str, Any], relative: PurePosixPath) -> bool:
    changed = False
    for key, default in (
        ("version", DEFAULT_STATE_VERSION),
        ("terraform_version", DEFAULT_TERRAFORM_VERSION),
    ):
        if key not in state:
            state[key] = default
            changed = True
    return changed


def strip_input_metadata(payload: dict[str, Any], relative: PurePosixPath) -> bool:
    locals_block = payload.get("locals")
    if not isinstance(locals_block, dict):
        return False
    changed = False
    for key, value in locals_block.items():
        if not key.startswith("input_") or not isinstance(value, dict):
            continue
        for field_name in INPUT_METADATA_FIELDS:
            if field_name in value:
                del value[field_name]
                changed = True
    return changed


_strip_metadata = partial(strip_block_attributes, names=(METADATA_ATTRIBUTE,))
_strip_module_internals = partial(
    strip_block_attributes, names=MODULE_INTERNAL_ATTRIBUTES, block_type="module"
)
_GENERIC: tuple[HclTransform, ...] = (_strip_metadata, _strip_module_internals)
_GENERIC_LEVEL2: tuple[HclTransform, ...] = (
    partial(_strip_metadata, protected=PROTECTED_MODULES),
    partial(_strip_module_internals, protected=PROTECTED_MODULES),
)

HCL_RULES: dict[FileRole, tuple[HclTransform, ...]] = {
    FileRole.ROOT_MAIN: (
        clean_export_module,
        partial(
            remove_blocks,
            block_type="variable",
            predicate=lambda name: name in ROOT_INTERNAL_VARIABLES,
        ),
        *_GENERIC,
    ),
    FileRole.LEVEL2_MAIN: (normalize_level2_modules, *_GENERIC_LEVEL2),
    FileRole.MODULE_VARIABLES: (
        partial(
            remove_blocks,
            block_type="variable",
            predicate=lambda name: name in MODULE_INTERNAL_VARIABLES,
        ),
        ensure_module_variables,
        *_GENERIC,
    ),
    FileRole.LEVEL2_VARIABLES: (
        partial(
            remove_blocks,
            block_type="variable",
            predicate=lambda name: name in LEVEL2_INTERNAL_VARIABLES,
        ),
        *_GENERIC,
    ),
    FileRole.ROOT_VARIABLES: (
        partial(
            remove_blocks,
            block_type="variable",
            predicate=lambda name: name.startswith(PROJECT_INTERNAL_PREFIX)
            or name in PROJECT_INTERNAL_VARIABLES,
        ),
        *_GENERIC,
    ),
    FileRole.OUTPUTS: (prune_outputs, *_GENERIC),
    FileRole.METADATA: (clear_document,),
    FileRole.GENERIC: _GENERIC,
}

JSON_RULES: dict[FileRole, tuple[JsonTransform, ...]] = {
    FileRole.STATE_JSON: (ensure_state_version, drop_synthetic_resources),
    FileRole.INPUT_JSON: (strip_input_metadata,),
}

# Paths deleted before the rule walk, relative to the tree root.
PRUNED_MODULE_FILES = frozenset({"facets.yaml", "resources_gen.tf", "_variables.tf"})
PRUNED_EXPORT_PATHS = ("terraform.d", "outputs.tf")
