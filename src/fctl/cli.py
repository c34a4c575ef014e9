"""
Click-based CLI for fctl.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .commands import (
    ExportAllError,
    ExportError,
    LoginError,
    RepackageError,
    TerraformAction,
    TerraformRunError,
    TerraformRunRequest,
    export_all,
    export_environment,
    login,
    parse_copy_pair,
    repackage_zip,
    run_terraform,
)
from .config import get_settings
from .core.credentials import DEFAULT_PROFILE, ProfileStore
from .core.workspace import LatestSnapshotChooser, PromptSnapshotChooser, WorkspaceManager
from .domain.errors import FctlDomainError
from .executor.terraform import TerraformExecutor
from .remote.client import ControlPlaneClient

console = Console()


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _profile_store() -> ProfileStore:
    return ProfileStore(get_settings().home_dir)


def _client(profile: str | None) -> ControlPlaneClient:
    settings = get_settings()
    return ControlPlaneClient(
        _profile_store().load(profile), timeout=settings.http_timeout_seconds
    )


def _executor() -> TerraformExecutor:
    settings = get_settings()
    return TerraformExecutor(settings.terraform_binary, timeout=settings.terraform_timeout_seconds)


def _workspace_manager(interactive: bool) -> WorkspaceManager:
    settings = get_settings()
    if interactive and sys.stdin.isatty():
        chooser = PromptSnapshotChooser(
            lambda environment_id, deployment_id: settings.home_dir
            / environment_id
            / deployment_id
        )
    else:
        chooser = LatestSnapshotChooser()
    return WorkspaceManager(settings.home_dir, retention=settings.retention, chooser=chooser)


def _run_action(
    action: TerraformAction,
    *,
    zip_path: Path,
    target: str | None,
    state: Path | None,
    backend_type: str | None,
    allow_destroy: bool,
    upload_release_metadata: bool,
    profile: str | None,
    no_interaction: bool,
) -> None:
    """Shared body of apply, plan and destroy; exits 1 on failure."""
    request = TerraformRunRequest(
        action=action,
        zip_path=zip_path,
        target=target,
        state_file=state,
        backend_type=backend_type,
        allow_destroy=allow_destroy,
        upload_release_metadata=upload_release_metadata,
        profile=profile,
    )
    uploader = None
    try:
        if upload_release_metadata:
            uploader = _client(profile)
        run_terraform(
            request,
            workspace=_workspace_manager(not no_interaction),
            executor=_executor(),
            uploader=uploader,
        )
    except TerraformRunError:
        sys.exit(1)
    except FctlDomainError as e:
        console.print(f"[red]✗ Error:[/red] {e}")
        sys.exit(1)
    finally:
        if uploader is not None:
            uploader.close()


def _terraform_options(func):
    options = [
        click.option(
            "--zip",
            "-z",
            "zip_path",
            required=True,
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="Path to the exported zip file",
        ),
        click.option("--target", "-t", help="Module target address for selective releases"),
        click.option(
            "--state",
            "-s",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="Path to the state file",
        ),
        click.option("--backend-type", help="Type of remote state backend (s3, gcs)"),
        click.option(
            "--allow-destroy",
            is_flag=True,
            help="Set prevent_destroy = false on every resource",
        ),
        click.option(
            "--upload-release-metadata",
            is_flag=True,
            help="Upload release metadata to the control plane after apply or destroy",
        ),
        click.option(
            "--no-interaction", is_flag=True, help="Never prompt; use the latest state if any"
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="fctl")
@click.option("--profile", "-p", default=None, help="Profile to use from your credentials file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, profile: str | None, verbose: bool) -> None:
    """fctl: export control plane environments as Terraform and apply them locally"""
    ctx.ensure_object(dict)
    ctx.obj["profile"] = profile
    _configure_logging(verbose)


@cli.command(name="login")
@click.option("--host", "-H", prompt="Control plane URL", help="Control plane host")
@click.option("--username", "-u", prompt="Username", help="Username")
@click.option("--token", "-t", prompt="API token", hide_input=True, help="API token")
@click.pass_context
def login_command(ctx: click.Context, host: str, username: str, token: str) -> None:
    """Store credentials for a profile and verify them"""
    profile = ctx.obj["profile"] or DEFAULT_PROFILE
    settings = get_settings()
    try:
        login(
            store=_profile_store(),
            host=host,
            username=username,
            token=token,
            profile=profile,
            client_factory=lambda stored: ControlPlaneClient(
                stored, timeout=settings.http_timeout_seconds
            ),
        )
    except LoginError:
        sys.exit(1)


@cli.command(name="export")
@click.option("--environment-id", "-e", help="The environment to export")
@click.option("--project", help="Project (stack) name used to look up the environment")
@click.option("--env-name", help="Environment (cluster) name used to look up the environment")
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory receiving the exported zip",
)
@click.option(
    "--include-providers",
    is_flag=True,
    help="Run 'terraform init' and bundle providers for airgapped use",
)
@click.option(
    "--copy",
    "copies",
    multiple=True,
    metavar="SOURCE:DEST",
    help="Copy a local file or directory into the zip (repeatable)",
)
@click.option("--apply", "run_apply", is_flag=True, help="Apply the export afterwards")
@click.option("--plan", "run_plan", is_flag=True, help="Plan the export afterwards")
@click.option("--destroy", "run_destroy", is_flag=True, help="Destroy using the export afterwards")
@click.option("--target", "-t", help="Module target address for the chained run")
@click.option("--backend-type", help="Remote state backend for the chained run (s3, gcs)")
@click.option(
    "--allow-destroy", is_flag=True, help="Set prevent_destroy = false for the chained run"
)
@click.option(
    "--upload-release-metadata",
    is_flag=True,
    help="Upload release metadata after a chained apply or destroy",
)
@click.pass_context
def export_command(
    ctx: click.Context,
    environment_id: str | None,
    project: str | None,
    env_name: str | None,
    output_dir: Path,
    include_providers: bool,
    copies: tuple[str, ...],
    run_apply: bool,
    run_plan: bool,
    run_destroy: bool,
    target: str | None,
    backend_type: str | None,
    allow_destroy: bool,
    upload_release_metadata: bool,
) -> None:
    """Export one environment as a Terraform zip

    Examples:

        # Export by environment id
        fctl export -e 65a1f0c2d9b4e7a3c1f2e4d5

        # Export by project and environment name, then plan it
        fctl export --project shop --env-name staging --plan
    """
    profile = ctx.obj["profile"]
    chained = [flag for flag in (run_apply, run_plan, run_destroy) if flag]
    if len(chained) > 1:
        console.print("[red]✗ Only one of --apply, --plan or --destroy can be specified[/red]")
        sys.exit(1)
    if upload_release_metadata and not (run_apply or run_destroy):
        console.print(
            "[red]✗ --upload-release-metadata can only be used with --apply or --destroy[/red]"
        )
        sys.exit(1)
    settings = get_settings()
    try:
        pairs = [parse_copy_pair(value) for value in copies]
        with _client(profile) as client:
            result = export_environment(
                client,
                output_dir.resolve(),
                environment_id=environment_id,
                project=project,
                environment_name=env_name,
                include_providers=include_providers,
                copies=pairs,
                executor=_executor(),
                poll_interval=settings.poll_interval_seconds,
            )
    except (ExportError, RepackageError) as e:
        if isinstance(e, RepackageError):
            console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)
    except FctlDomainError as e:
        console.print(f"[red]✗ Error:[/red] {e}")
        sys.exit(1)

    if not chained:
        return
    action = (
        TerraformAction.APPLY
        if run_apply
        else TerraformAction.PLAN
        if run_plan
        else TerraformAction.DESTROY
    )
    console.print(f"\n[blue]Invoking 'fctl {action}' on exported zip...[/blue]")
    _run_action(
        action,
        zip_path=Path(result.data["zipPath"]),
        target=target,
        state=None,
        backend_type=backend_type,
        allow_destroy=allow_destroy,
        upload_release_metadata=upload_release_metadata,
        profile=profile,
        no_interaction=False,
    )


@cli.command(name="export-all")
@click.option("--project", required=True, help="Project (stack) name to export")
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Output directory for exports",
)
@click.option("--include-providers", is_flag=True, help="Install providers in every environment")
@click.option(
    "--skip-failed",
    is_flag=True,
    help="Post-process the successful environments even if some fail",
)
@click.pass_context
def export_all_command(
    ctx: click.Context,
    project: str,
    output_dir: Path,
    include_providers: bool,
    skip_failed: bool,
) -> None:
    """Export every environment of a project concurrently"""
    settings = get_settings()
    try:
        with _client(ctx.obj["profile"]) as client:
            result = export_all(
                client,
                output_dir.resolve(),
                project,
                skip_failed=skip_failed,
                include_providers=include_providers,
                executor=_executor(),
                poll_interval=settings.poll_interval_seconds,
                refresh_seconds=settings.display_refresh_seconds,
                grace_seconds=settings.display_grace_seconds,
            )
    except ExportAllError:
        sys.exit(1)
    except FctlDomainError as e:
        console.print(f"[red]✗ Error:[/red] {e}")
        sys.exit(1)
    if not result.success:
        sys.exit(1)


@cli.command()
@_terraform_options
@click.pass_context
def apply(ctx: click.Context, **options) -> None:
    """Apply an exported zip to its environment"""
    _run_action(TerraformAction.APPLY, profile=ctx.obj["profile"], **options)


@cli.command()
@_terraform_options
@click.pass_context
def plan(ctx: click.Context, **options) -> None:
    """Show the changes an exported zip would make"""
    _run_action(TerraformAction.PLAN, profile=ctx.obj["profile"], **options)


@cli.command()
@_terraform_options
@click.pass_context
def destroy(ctx: click.Context, **options) -> None:
    """Destroy the resources managed by an exported zip"""
    _run_action(TerraformAction.DESTROY, profile=ctx.obj["profile"], **options)


@cli.command()
@click.option(
    "--zip",
    "-z",
    "zip_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the zip file to modify",
)
@click.option(
    "--source",
    "-s",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Local file or directory to copy",
)
@click.option("--destination", "-d", required=True, help="Destination path inside the zip")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the result here instead of modifying the zip in place",
)
def repackage(zip_path: Path, source: Path, destination: str, output: Path | None) -> None:
    """Copy a file or directory into an exported zip"""
    try:
        repackage_zip(zip_path, source, destination, output)
    except RepackageError:
        sys.exit(1)


def main() -> None:
    """Main entry point"""
    cli(obj={})


if __name__ == "__main__":
    main()
