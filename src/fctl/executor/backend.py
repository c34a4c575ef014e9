"""
Remote state backend configuration

Backends are configured through environment variables named
``TF_BACKEND_<TYPE>_<VAR>``, for example ``TF_BACKEND_S3_BUCKET``. Without a
backend type, state stays local to the deployment workspace.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from fctl.domain.errors import ConfigurationError

BACKEND_FILE = "backend.tf.json"

BackendType = Literal["s3", "gcs"]

BACKEND_VARIABLES: dict[str, tuple[str, ...]] = {
    "s3": (
        "bucket",
        "key",
        "region",
        "access_key",
        "secret_key",
        "dynamodb_table",
        "endpoint",
        "session_token",
    ),
    "gcs": ("bucket", "prefix", "credentials"),
}

REQUIRED_VARIABLES: dict[str, tuple[str, ...]] = {
    "s3": ("bucket", "key", "region"),
    "gcs": ("bucket", "prefix"),
}


class BackendConfig(BaseModel):
    """Remote state backend settings

    Attributes:
        type: Backend type understood by terraform
        values: Backend configuration values keyed by terraform argument name
    """

    type: BackendType = Field(..., description="Backend type")
    values: dict[str, str] = Field(default_factory=dict, description="Backend arguments")

    @property
    def missing(self) -> list[str]:
        return [name for name in REQUIRED_VARIABLES[self.type] if name not in self.values]


def load_backend_config(
    backend_type: str | None, environ: Mapping[str, str] | None = None
) -> BackendConfig | None:
    """Build the backend configuration for ``backend_type`` from the environment.

    Returns None for an empty type (local state).

    Raises:
        ConfigurationError: If the type is unsupported or required variables are unset.
    """
    if not backend_type:
        return None
    environ = os.environ if environ is None else environ
    kind = backend_type.lower()
    if kind not in BACKEND_VARIABLES:
        raise ConfigurationError(
            message=f"Unsupported backend type: {backend_type}",
            code="unsupported_backend",
        )
    values = {}
    for name in BACKEND_VARIABLES[kind]:
        value = environ.get(f"TF_BACKEND_{kind.upper()}_{name.upper()}")
        if value:
            values[name] = value
    config = BackendConfig(type=kind, values=values)
    if config.missing:
        raise ConfigurationError(
            message=f"Missing required backend variables: {', '.join(config.missing)}",
            code="backend_incomplete",
        )
    return config


def write_backend_tf_json(directory: Path, config: BackendConfig) -> Path:
    """Write ``backend.tf.json`` declaring the backend in ``directory``."""
    path = directory / BACKEND_FILE
    document = {"terraform": {"backend": {config.type: dict(config.values)}}}
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    return path


def backend_config_args(config: BackendConfig | None) -> list[str]:
    """``-backend-config`` flags for ``terraform init``."""
    if config is None:
        return []
    return [f"-backend-config={name}={value}" for name, value in sorted(config.values.items())]
