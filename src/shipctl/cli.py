"""Main CLI entry point for shipctl."""

import sys
from typing import Any

import click
from rich.console import Console

from shipctl import __version__
from shipctl.config import load_config
from shipctl.core.context import ShipCtlContext, pass_context
from shipctl.core.output import OutputFormat
from shipctl.core.exceptions import ShipCtlError, ConfigError


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"shipctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-p",
    "--profile",
    metavar="NAME",
    envvar="SHIPCTL_PROFILE",
    help="Configuration profile to use",
)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would happen without making changes",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="SHIPCTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """ShipCtl - deploy, verify, roll back and back up a single-host service.

    \b
    Examples:
        shipctl deploy run --host 203.0.113.10 --tag v1.2.0
        shipctl rollback --host 203.0.113.10 --list-tags
        shipctl db backup --host 203.0.113.10
        shipctl health wait --host 203.0.113.10

    \b
    Configuration:
        ~/.shipctl/config.yaml    User configuration
        ./shipctl.yaml            Project configuration
        SHIPCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file, profile)

        ctx.obj = ShipCtlContext(
            config=config,
            profile=profile,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=not no_color,
        )
        ctx.call_on_close(ctx.obj.close)

        if dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - no changes will be made")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]{e.kind}:[/red] {e}", soft_wrap=True)
        sys.exit(1)


def register_commands() -> None:
    """Register all command groups."""
    from shipctl.commands.db import db
    from shipctl.commands.deploy import deploy
    from shipctl.commands.health import health
    from shipctl.commands.rollback import rollback

    cli.add_command(deploy)
    cli.add_command(rollback)
    cli.add_command(db)
    cli.add_command(health)


register_commands()


@cli.command()
@pass_context
def config(ctx: ShipCtlContext) -> None:
    """Show current configuration."""
    profile = ctx.profile
    config_data = {
        "profile": ctx.profile_name,
        "output_format": ctx.output_format.value,
        "dry_run": ctx.dry_run,
        "verbose": ctx.verbose,
        "target": {
            "host": profile.target.get_host(),
            "user": profile.target.get_user(),
            "port": profile.target.port,
            "has_identity_file": bool(profile.target.get_identity_file()),
        },
        "registry": {
            "base_url": profile.registry.base_url,
            "namespace": profile.registry.get_namespace(),
            "repository": profile.registry.get_repository(),
            "has_token": bool(profile.registry.get_token()),
            "mutable_aliases": profile.registry.mutable_aliases,
        },
        "health": {
            "path": profile.health.path,
            "interval": profile.health.interval,
            "max_attempts": profile.health.max_attempts,
        },
        "deploy": {
            "app_dir": profile.deploy.app_dir,
            "app_env": profile.deploy.get_app_env(),
            "auto_rollback": profile.deploy.auto_rollback,
        },
        "backup": {
            "backup_dir": profile.backup.get_backup_dir(),
            "container": profile.backup.get_container(),
            "db_name": profile.backup.get_db_name(),
            "retention_days": profile.backup.get_retention_days(),
            "schedule": profile.backup.schedule,
        },
    }
    ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except ShipCtlError as e:
        console = Console(stderr=True)
        console.print(f"[red]{e.kind}:[/red] {e}", soft_wrap=True)
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
