"""Provisioning tool integration."""

from .backend import BackendConfig, backend_config_args, load_backend_config, write_backend_tf_json
from .release import collect_release_metadata, write_release_metadata
from .terraform import ProvisioningExecutor, TerraformExecutor

__all__ = [
    "BackendConfig",
    "ProvisioningExecutor",
    "TerraformExecutor",
    "backend_config_args",
    "collect_release_metadata",
    "load_backend_config",
    "write_backend_tf_json",
    "write_release_metadata",
]
