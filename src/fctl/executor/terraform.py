"""
Terraform executor

Thin subprocess wrapper around the terraform CLI. Commands that change
infrastructure stream their output to the terminal; ``show_state`` captures
JSON output instead.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from fctl.domain.errors import ProvisioningError

logger = logging.getLogger(__name__)


class ProvisioningExecutor(Protocol):
    def init(self, working_dir: Path, backend_options: Sequence[str] | None = None) -> None: ...

    def select_workspace(self, working_dir: Path, name: str) -> None: ...

    def apply(self, working_dir: Path, *, target: str | None = None) -> None: ...

    def plan(self, working_dir: Path, *, target: str | None = None) -> None: ...

    def destroy(self, working_dir: Path, *, target: str | None = None) -> None: ...

    def show_state(self, working_dir: Path) -> dict[str, Any]: ...

    def state_push(self, working_dir: Path, state_file: Path) -> None: ...


class TerraformExecutor:
    """Runs terraform in a working directory."""

    def __init__(self, binary: str = "terraform", *, timeout: int = 3600) -> None:
        self.binary = binary
        self.timeout = timeout

    def _run(
        self, args: Sequence[str], cwd: Path, *, capture: bool = False
    ) -> subprocess.CompletedProcess[str]:
        command = [self.binary, *args]
        logger.debug("Running %s in %s", " ".join(command), cwd)
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd),
                capture_output=capture,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as err:
            raise ProvisioningError(
                message=f"{self.binary} not found on PATH",
                code="terraform_missing",
            ) from err
        except subprocess.TimeoutExpired as err:
            raise ProvisioningError(
                message=f"terraform {args[0]} timed out after {self.timeout}s",
                code="terraform_timeout",
            ) from err
        if result.returncode != 0:
            detail = (result.stderr or "").strip() if capture else ""
            message = f"terraform {args[0]} failed with exit code {result.returncode}"
            raise ProvisioningError(
                message=f"{message}: {detail}" if detail else message,
                code=f"terraform_{args[0]}_failed",
            )
        return result

    def init(self, working_dir: Path, backend_options: Sequence[str] | None = None) -> None:
        """``terraform init``; ``backend_options`` of None disables the backend."""
        args = ["init", "-input=false"]
        if backend_options is None:
            args.append("-backend=false")
        else:
            args.extend(["-backend=true", *backend_options])
        self._run(args, working_dir)

    def select_workspace(self, working_dir: Path, name: str) -> None:
        """Select workspace ``name``, creating it when it does not exist yet."""
        try:
            self._run(["workspace", "select", name], working_dir, capture=True)
        except ProvisioningError:
            logger.info("Workspace %s does not exist, creating it", name)
            self._run(["workspace", "new", name], working_dir, capture=True)

    @staticmethod
    def _target_args(target: str | None) -> list[str]:
        return [f"-target={target}"] if target else []

    def apply(self, working_dir: Path, *, target: str | None = None) -> None:
        self._run(
            ["apply", "-auto-approve", "-input=false", *self._target_args(target)], working_dir
        )

    def plan(self, working_dir: Path, *, target: str | None = None) -> None:
        self._run(["plan", "-input=false", *self._target_args(target)], working_dir)

    def destroy(self, working_dir: Path, *, target: str | None = None) -> None:
        self._run(
            ["destroy", "-auto-approve", "-input=false", *self._target_args(target)], working_dir
        )

    def show_state(self, working_dir: Path) -> dict[str, Any]:
        result = self._run(["show", "-json"], working_dir, capture=True)
        if not result.stdout.strip():
            return {}
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as err:
            raise ProvisioningError(
                message=f"Could not parse terraform show output: {err}",
                code="terraform_show_invalid",
            ) from err

    def state_push(self, working_dir: Path, state_file: Path) -> None:
        self._run(["state", "push", str(state_file)], working_dir, capture=True)
