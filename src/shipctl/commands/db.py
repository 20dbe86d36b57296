"""Database backup command group."""

import click

from shipctl.backup import CONFIRMATION_TOKEN
from shipctl.core.context import pass_context, ShipCtlContext
from shipctl.core.exceptions import ShipCtlError
from shipctl.core.output import OutputFormat, format_bytes


def _token(ctx: ShipCtlContext, yes: bool, message: str) -> str | None:
    """Confirmation token from --yes or an interactive prompt."""
    if yes or ctx.confirm(message):
        return CONFIRMATION_TOKEN
    return None


@click.group()
@pass_context
def db(ctx: ShipCtlContext) -> None:
    """Database backups - backup, restore, list, cleanup, schedule.

    \b
    Examples:
        shipctl db backup --host 203.0.113.10
        shipctl db list --host 203.0.113.10
        shipctl db restore --host 203.0.113.10 --name backup_20240101_020000 --yes
        shipctl db cleanup --host 203.0.113.10 --retention 14
        shipctl db schedule --host 203.0.113.10 --install
    """
    pass


@db.command("backup")
@click.option("--host", help="Target host")
@click.option("--name", help="Backup name (default: backup_<timestamp>)")
@click.option("--dir", "backup_dir", help="Backup directory on the host")
@pass_context
def backup(ctx: ShipCtlContext, host: str | None, name: str | None, backup_dir: str | None) -> None:
    """Create a compressed database backup on the host."""
    try:
        target = ctx.target(host)
        manager = ctx.backups(backup_dir)

        if ctx.dry_run:
            ctx.log_dry_run("backup", {"host": target.host, "name": name or manager.default_name(), "dir": manager.backup_dir})
            return

        record = manager.backup(target, name)
        ctx.output.print_success(f"Backup {record.name} created ({format_bytes(record.size_bytes)})")
        if ctx.output_format != OutputFormat.TABLE:
            ctx.output.print_data(record.to_dict())

    except ShipCtlError as e:
        ctx.fail(e)


@db.command("restore")
@click.option("--host", help="Target host")
@click.option("--name", required=True, help="Backup name to restore")
@click.option("--dir", "backup_dir", help="Backup directory on the host")
@click.option("-y", "--yes", is_flag=True, help="Confirm replacing the current database")
@pass_context
def restore(ctx: ShipCtlContext, host: str | None, name: str, backup_dir: str | None, yes: bool) -> None:
    """Restore a backup, replacing ALL current data.

    The current database is dropped before the backup is loaded. This
    cannot be undone; take a backup first if the current data matters.
    """
    try:
        target = ctx.target(host)
        manager = ctx.backups(backup_dir)

        record = manager.get(target, name)
        if ctx.dry_run:
            ctx.log_dry_run("restore", {"host": target.host, "name": record.name})
            return

        token = _token(ctx, yes, f"Replace all data on {target.host} with backup '{name}'?")
        record = manager.restore(target, name, token)
        ctx.output.print_success(f"Backup {record.name} restored on {target.host}")

    except ShipCtlError as e:
        ctx.fail(e)


@db.command("list")
@click.option("--host", help="Target host")
@click.option("--dir", "backup_dir", help="Backup directory on the host")
@pass_context
def list_backups(ctx: ShipCtlContext, host: str | None, backup_dir: str | None) -> None:
    """List backups on the host, newest first."""
    try:
        target = ctx.target(host)
        records = list(ctx.backups(backup_dir).list(target))

        if not records:
            ctx.output.print_info(f"No backups found on {target.host}")
            return

        if ctx.output_format == OutputFormat.TABLE:
            rows = [
                {
                    "name": r.name,
                    "created": r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                    "size": format_bytes(r.size_bytes),
                    "class": r.retention_class.value,
                }
                for r in records
            ]
            ctx.output.print_data(rows, headers=["name", "created", "size", "class"], title=f"Backups on {target.host}")
        else:
            ctx.output.print_data([r.to_dict() for r in records])

    except ShipCtlError as e:
        ctx.fail(e)


@db.command("cleanup")
@click.option("--host", help="Target host")
@click.option("--dir", "backup_dir", help="Backup directory on the host")
@click.option("--retention", type=int, help="Delete backups older than this many days")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def cleanup(
    ctx: ShipCtlContext,
    host: str | None,
    backup_dir: str | None,
    retention: int | None,
    yes: bool,
) -> None:
    """Delete backups older than the retention window."""
    try:
        target = ctx.target(host)
        manager = ctx.backups(backup_dir)
        days = retention if retention is not None else ctx.profile.backup.get_retention_days()

        expired = manager.expired(target, days)
        if not expired:
            ctx.output.print_info(f"No backups older than {days} days")
            return

        for record in expired:
            ctx.output.print(f"  {record.name}  {record.created_at.strftime('%Y-%m-%d %H:%M')}")

        if ctx.dry_run:
            ctx.log_dry_run("cleanup", {"host": target.host, "count": len(expired)})
            return

        token = _token(ctx, yes, f"Delete {len(expired)} backup(s) from {target.host}?")
        deleted = manager.cleanup(target, days, confirmation_token=token)
        ctx.output.print_success(f"Deleted {deleted} backup(s) older than {days} days")

    except ShipCtlError as e:
        ctx.fail(e)


@db.command("schedule")
@click.option("--host", help="Target host")
@click.option("--dir", "backup_dir", help="Backup directory on the host")
@click.option("--cron", "cron_spec", help="Cron schedule (default from config, 0 2 * * *)")
@click.option("--retention", type=int, help="Retention in days for scheduled cleanup")
@click.option("--install", is_flag=True, help="Install the script and crontab entry on the host")
@pass_context
def schedule(
    ctx: ShipCtlContext,
    host: str | None,
    backup_dir: str | None,
    cron_spec: str | None,
    retention: int | None,
    install: bool,
) -> None:
    """Show or install the periodic backup trigger."""
    try:
        target = ctx.target(host)
        manager = ctx.backups(backup_dir)
        trigger = manager.schedule(target, cron_spec)

        ctx.output.print_data(trigger.to_dict(), title="Backup Schedule")

        if not install:
            return

        if ctx.dry_run:
            ctx.log_dry_run("install schedule", {"host": target.host, "script": trigger.script_path})
            return

        manager.install_schedule(target, trigger, retention)
        ctx.output.print_success(f"Backup schedule installed on {target.host}")

    except ShipCtlError as e:
        ctx.fail(e)
