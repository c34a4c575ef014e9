"""
fctl CLI Commands

Each command is implemented as a separate module; the CLI layer (cli.py) is a
thin routing layer over them.
"""

from .export import ExportError, export_environment, resolve_environment
from .export_all import ExportAllError, export_all
from .login import LoginError, login
from .repackage import RepackageError, parse_copy_pair, repackage_zip
from .terraform_run import TerraformAction, TerraformRunError, TerraformRunRequest, run_terraform

__all__ = [
    "export_environment",
    "resolve_environment",
    "ExportError",
    "export_all",
    "ExportAllError",
    "login",
    "LoginError",
    "repackage_zip",
    "parse_copy_pair",
    "RepackageError",
    "run_terraform",
    "TerraformAction",
    "TerraformRunRequest",
    "TerraformRunError",
]
