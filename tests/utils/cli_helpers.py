"""Helpers for invoking the fctl CLI in tests."""

from __future__ import annotations

from click.testing import CliRunner, Result

from fctl.cli import cli


def invoke_cli(*args: str, input: str | None = None) -> Result:
    """Invoke the Click CLI with a fresh runner."""
    runner = CliRunner()
    return runner.invoke(cli, list(args), input=input, catch_exceptions=True)
