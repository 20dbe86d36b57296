"""Backup and restore of the service's document database."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

from shipctl.clients.remote import Executor
from shipctl.config import BackupConfig
from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import (
    BackupError,
    CancelledError,
    ConfirmationDeclined,
    NotFoundError,
    ShipCtlError,
    ValidationError,
)
from shipctl.core.locking import TargetLeases
from shipctl.core.logging import StructuredLogger
from shipctl.core.templating import render_command, shquote
from shipctl.core.utils import utc_now

if TYPE_CHECKING:
    from shipctl.deploy.models import DeploymentTarget

logger = StructuredLogger(__name__)

# Value a caller must pass to authorise restore and cleanup.
CONFIRMATION_TOKEN = "yes"

ARCHIVE_SUFFIX = ".tar.gz"
DEFAULT_NAME_FORMAT = "backup_%Y%m%d_%H%M%S"
SAFETY_PREFIX = "pre-deploy-"

# find -printf: file name, size in bytes, mtime as epoch seconds
LIST_FORMAT = "%f %s %T@\\n"
RUNNING_FORMAT = "{{.State.Running}}"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CRON_FIELD = re.compile(r"^[0-9*/,\-A-Za-z]+$")

BACKUP_SCRIPT_TEMPLATE = """#!/bin/bash
# Generated by shipctl: scheduled database backup
set -euo pipefail
BACKUP_DIR={{ backup_dir | shquote }}
CONTAINER_NAME={{ container | shquote }}
DB_NAME={{ db_name | shquote }}
BACKUP_NAME="backup_$(date -u +%Y%m%d_%H%M%S)"

mkdir -p "$BACKUP_DIR"
docker exec "$CONTAINER_NAME" mongodump --db "$DB_NAME" --out "/tmp/$BACKUP_NAME"
docker cp "$CONTAINER_NAME:/tmp/$BACKUP_NAME" "$BACKUP_DIR/"
cd "$BACKUP_DIR" && tar -czf "${BACKUP_NAME}.tar.gz" "$BACKUP_NAME" && rm -rf "$BACKUP_NAME"
docker exec "$CONTAINER_NAME" rm -rf "/tmp/$BACKUP_NAME"

find "$BACKUP_DIR" -name 'backup_*.tar.gz' -type f -mtime +{{ retention_days }} -delete

echo "Backup completed: $BACKUP_DIR/${BACKUP_NAME}.tar.gz"
"""


class RetentionClass(str, Enum):
    """How a backup came to exist."""

    AUTOMATIC = "automatic"
    SAFETY = "safety"
    MANUAL = "manual"

    @classmethod
    def for_name(cls, name: str) -> "RetentionClass":
        if name.startswith(SAFETY_PREFIX):
            return cls.SAFETY
        if re.match(r"^backup_\d{8}_\d{6}$", name):
            return cls.AUTOMATIC
        return cls.MANUAL


@dataclass(frozen=True)
class BackupRecord:
    """A named, compressed snapshot of the database on a target."""

    name: str
    created_at: datetime
    size_bytes: int
    source_target: str
    retention_class: RetentionClass

    @property
    def archive_name(self) -> str:
        return f"{self.name}{ARCHIVE_SUFFIX}"

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or utc_now()) - self.created_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "source_target": self.source_target,
            "retention_class": self.retention_class.value,
        }


@dataclass(frozen=True)
class ScheduleTrigger:
    """A periodic backup job for an external scheduler (cron)."""

    command: str
    period: str
    script_path: str
    log_path: str

    @property
    def crontab_line(self) -> str:
        return f"{self.period} {self.command} >> {shquote(self.log_path)} 2>&1"

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "period": self.period,
            "script_path": self.script_path,
            "log_path": self.log_path,
            "crontab_line": self.crontab_line,
        }


def validate_backup_name(name: str) -> str:
    """Reject names that are not safe as a single path component."""
    if not _NAME_PATTERN.match(name) or name.endswith(ARCHIVE_SUFFIX):
        raise ValidationError(
            f"Invalid backup name '{name}'. Use letters, digits, '.', '_' and '-' "
            f"without the {ARCHIVE_SUFFIX} suffix"
        )
    return name


def validate_cron_spec(spec: str) -> str:
    """Check that ``spec`` has the five fields of a crontab schedule."""
    fields = spec.split()
    if len(fields) != 5 or not all(_CRON_FIELD.match(f) for f in fields):
        raise ValidationError(f"Invalid cron schedule '{spec}'. Expected five fields, e.g. '0 2 * * *'")
    return " ".join(fields)


class BackupManager:
    """Create, list, restore and expire database backups on a target.

    Archives live in ``backup_dir`` on the target as ``<name>.tar.gz``, each
    holding one dump directory per database. ``restore`` is the only
    operation that irreversibly replaces live data: it drops the database
    before loading the archive, and there is no undo. It therefore demands
    :data:`CONFIRMATION_TOKEN` and the target's lease.
    """

    def __init__(
        self,
        executor: Executor,
        config: BackupConfig | None = None,
        leases: TargetLeases | None = None,
        backup_dir: str | None = None,
    ):
        self._executor = executor
        self._config = config or BackupConfig()
        self._leases = leases or TargetLeases()
        self._backup_dir = (backup_dir or self._config.get_backup_dir()).rstrip("/") or "/"
        self._container = self._config.get_container()
        self._db_name = self._config.get_db_name()

    @property
    def backup_dir(self) -> str:
        return self._backup_dir

    def _archive_path(self, name: str) -> str:
        return f"{self._backup_dir}/{name}{ARCHIVE_SUFFIX}"

    def _check(
        self,
        target: DeploymentTarget,
        command: str,
        cancel: CancellationToken | None = None,
    ) -> str:
        return self._executor.check(
            target,
            command,
            timeout=self._config.command_timeout,
            cancel=cancel,
        )

    def _exec_in_container(self, *args: str) -> str:
        return " ".join(["docker", "exec", shquote(self._container), *args])

    def _mongosh_eval(self, expression: str) -> str:
        return self._exec_in_container(
            "mongosh", shquote(self._db_name), "--quiet", "--eval", shquote(expression)
        )

    def _ensure_container_running(
        self,
        target: DeploymentTarget,
        cancel: CancellationToken | None,
    ) -> None:
        result = self._executor.run(
            target,
            f"docker inspect -f {shquote(RUNNING_FORMAT)} {shquote(self._container)}",
            cancel=cancel,
        )
        if not result.ok or result.stdout.strip() != "true":
            raise BackupError(
                f"Database container '{self._container}' is not running on {target.host}"
            )

    def _exists(
        self,
        target: DeploymentTarget,
        name: str,
        cancel: CancellationToken | None = None,
    ) -> bool:
        result = self._executor.run(target, f"test -e {shquote(self._archive_path(name))}", cancel=cancel)
        return result.ok

    def _stat(
        self,
        target: DeploymentTarget,
        name: str,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        output = self._check(target, f"stat -c {shquote('%s %Y')} {shquote(self._archive_path(name))}", cancel)
        try:
            size, mtime = output.split()[:2]
            return BackupRecord(
                name=name,
                created_at=datetime.fromtimestamp(float(mtime), tz=timezone.utc),
                size_bytes=int(size),
                source_target=target.host,
                retention_class=RetentionClass.for_name(name),
            )
        except ValueError:
            raise BackupError(f"Unexpected stat output for {name}: {output.strip()!r}")

    # Backup
    def default_name(self, now: datetime | None = None) -> str:
        return (now or utc_now()).strftime(DEFAULT_NAME_FORMAT)

    def backup(
        self,
        target: DeploymentTarget,
        name: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        """Dump, copy out and compress the database.

        Args:
            target: Host running the database container
            name: Backup name (defaults to ``backup_<UTC timestamp>``)
            cancel: Cancellation token

        Returns:
            The new BackupRecord

        Raises:
            BackupError: If any step fails; partial artifacts are removed
        """
        name = validate_backup_name(name or self.default_name())
        log = logger.bind(host=target.host, backup=name)

        self._ensure_container_running(target, cancel)
        if self._exists(target, name, cancel):
            raise BackupError(f"Backup '{name}' already exists on {target.host}")

        backup_dir = shquote(self._backup_dir)
        work_dir = shquote(f"/tmp/{name}")
        log.info("Creating backup", dir=self._backup_dir)

        try:
            self._check(
                target,
                self._exec_in_container("mongodump", "--db", shquote(self._db_name), "--out", work_dir),
                cancel,
            )
            self._check(
                target,
                f"mkdir -p {backup_dir} && docker cp {shquote(f'{self._container}:/tmp/{name}')} {backup_dir}/",
                cancel,
            )
            self._check(
                target,
                f"cd {backup_dir} && tar -czf {shquote(name + ARCHIVE_SUFFIX)} {shquote(name)} "
                f"&& rm -rf {shquote(name)}",
                cancel,
            )
            self._check(target, self._exec_in_container("rm", "-rf", work_dir), cancel)
            record = self._stat(target, name, cancel)
        except (ShipCtlError, KeyboardInterrupt) as e:
            self._discard_partial(target, name)
            if isinstance(e, (CancelledError, KeyboardInterrupt)):
                raise
            raise BackupError(f"Backup '{name}' failed: {e}") from e

        log.info("Backup created", size_bytes=record.size_bytes)
        return record

    def _discard_partial(self, target: DeploymentTarget, name: str) -> None:
        """Remove every artifact a failed backup may have left behind."""
        commands = [
            f"rm -rf {shquote(f'{self._backup_dir}/{name}')} {shquote(self._archive_path(name))}",
            self._exec_in_container("rm", "-rf", shquote(f"/tmp/{name}")),
        ]
        for command in commands:
            try:
                self._executor.run(target, command)
            except ShipCtlError as e:
                logger.warning("Could not remove partial backup", backup=name, error=str(e))

    # Listing
    def list(
        self,
        target: DeploymentTarget,
        cancel: CancellationToken | None = None,
    ) -> Iterator[BackupRecord]:
        """Yield the backups on ``target``, newest first."""
        backup_dir = shquote(self._backup_dir)
        output = self._check(
            target,
            f"if [ -d {backup_dir} ]; then find {backup_dir} -maxdepth 1 -type f "
            f"-name {shquote('*' + ARCHIVE_SUFFIX)} -printf {shquote(LIST_FORMAT)}; fi",
            cancel,
        )

        records: list[BackupRecord] = []
        for line in output.splitlines():
            parts = line.split()
            if len(parts) != 3 or not parts[0].endswith(ARCHIVE_SUFFIX):
                continue
            filename, size, mtime = parts
            name = filename[: -len(ARCHIVE_SUFFIX)]
            try:
                records.append(
                    BackupRecord(
                        name=name,
                        created_at=datetime.fromtimestamp(float(mtime), tz=timezone.utc),
                        size_bytes=int(size),
                        source_target=target.host,
                        retention_class=RetentionClass.for_name(name),
                    )
                )
            except ValueError:
                logger.warning("Skipping unparseable backup entry", line=line)

        records.sort(key=lambda r: r.created_at, reverse=True)
        yield from records

    def get(
        self,
        target: DeploymentTarget,
        name: str,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        """Look up one backup.

        Raises:
            NotFoundError: If no archive with that name exists
        """
        validate_backup_name(name)
        if not self._exists(target, name, cancel):
            raise NotFoundError(f"Backup '{name}' not found in {self._backup_dir} on {target.host}")
        return self._stat(target, name, cancel)

    # Restore
    def restore(
        self,
        target: DeploymentTarget,
        name: str,
        confirmation_token: str | None,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        """Replace the live database with the contents of backup ``name``.

        This drops the current database first and cannot be undone.

        Raises:
            NotFoundError: If the backup does not exist (nothing is touched)
            ConfirmationDeclined: If ``confirmation_token`` is not CONFIRMATION_TOKEN
            TargetBusyError: If a deploy or restore is already running on target
            BackupError: If extracting, dropping or loading fails
        """
        record = self.get(target, name, cancel)

        if confirmation_token != CONFIRMATION_TOKEN:
            raise ConfirmationDeclined(
                f"Restoring '{name}' replaces all data in '{self._db_name}' on {target.host}. "
                f"Pass the confirmation token '{CONFIRMATION_TOKEN}' to proceed."
            )

        log = logger.bind(host=target.host, backup=name)

        with self._leases.hold(target.key, f"restore:{name}"):
            self._ensure_container_running(target, cancel)
            backup_dir = shquote(self._backup_dir)
            log.warning("Restoring backup; current data will be replaced", db=self._db_name)

            try:
                self._check(target, f"cd {backup_dir} && tar -xzf {shquote(record.archive_name)}", cancel)
                self._check(
                    target,
                    f"docker cp {shquote(f'{self._backup_dir}/{name}')} {shquote(f'{self._container}:/tmp/')}",
                    cancel,
                )

                # mongorestore merges into existing collections
                self._check(target, self._mongosh_eval("db.dropDatabase()"), cancel)
                self._check(
                    target,
                    self._exec_in_container(
                        "mongorestore", "--db", shquote(self._db_name), shquote(f"/tmp/{name}/{self._db_name}")
                    ),
                    cancel,
                )

                ping = self._check(target, self._mongosh_eval("db.runCommand({ ping: 1 }).ok"), cancel)
                if ping.strip() != "1":
                    raise BackupError(f"Database did not answer after restore: {ping.strip()!r}")
            except ShipCtlError as e:
                if isinstance(e, (BackupError, CancelledError)):
                    raise
                raise BackupError(f"Restore of '{name}' failed: {e}") from e
            finally:
                self._discard_working_copy(target, name)

        log.info("Backup restored", db=self._db_name)
        return record

    def _discard_working_copy(self, target: DeploymentTarget, name: str) -> None:
        commands = [
            f"rm -rf {shquote(f'{self._backup_dir}/{name}')}",
            self._exec_in_container("rm", "-rf", shquote(f"/tmp/{name}")),
        ]
        for command in commands:
            try:
                self._executor.run(target, command)
            except ShipCtlError as e:
                logger.warning("Could not remove restore working copy", backup=name, error=str(e))

    # Retention
    def expired(
        self,
        target: DeploymentTarget,
        retention_days: int | None = None,
        now: datetime | None = None,
    ) -> list[BackupRecord]:
        """Backups older than the retention window."""
        days = self._config.get_retention_days() if retention_days is None else retention_days
        if days < 0:
            raise ValidationError("Retention days must not be negative")
        cutoff = (now or utc_now()) - timedelta(days=days)
        return [r for r in self.list(target) if r.created_at < cutoff]

    def cleanup(
        self,
        target: DeploymentTarget,
        retention_days: int | None = None,
        confirmation_token: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Delete backups older than the retention window.

        Nothing needs confirming when no backup has expired. Otherwise
        ``confirmation_token`` must equal CONFIRMATION_TOKEN.

        Returns:
            Number of deleted backups
        """
        doomed = self.expired(target, retention_days, now)
        if not doomed:
            logger.info("No expired backups", host=target.host)
            return 0

        if confirmation_token != CONFIRMATION_TOKEN:
            raise ConfirmationDeclined(
                f"{len(doomed)} backup(s) would be deleted from {target.host}. "
                f"Pass the confirmation token '{CONFIRMATION_TOKEN}' to proceed."
            )

        for record in doomed:
            self._check(target, f"rm -f {shquote(self._archive_path(record.name))}")
            logger.info("Deleted expired backup", host=target.host, backup=record.name)

        return len(doomed)

    # Scheduling
    def schedule(self, target: DeploymentTarget, cron_spec: str | None = None) -> ScheduleTrigger:
        """Describe the periodic backup trigger for ``target``."""
        period = validate_cron_spec(cron_spec or self._config.schedule)
        return ScheduleTrigger(
            command=shquote(self._config.script_path),
            period=period,
            script_path=self._config.script_path,
            log_path=self._config.log_path,
        )

    def render_script(self, retention_days: int | None = None) -> str:
        """Shell script the scheduled trigger runs."""
        days = self._config.get_retention_days() if retention_days is None else retention_days
        return render_command(
            BACKUP_SCRIPT_TEMPLATE,
            backup_dir=self._backup_dir,
            container=self._container,
            db_name=self._db_name,
            retention_days=int(days),
        )

    def install_schedule(
        self,
        target: DeploymentTarget,
        trigger: ScheduleTrigger,
        retention_days: int | None = None,
    ) -> None:
        """Write the backup script and its crontab entry on ``target``."""
        script = self.render_script(retention_days)
        script_path = shquote(trigger.script_path)

        self._check(target, f"printf '%s' {shquote(script)} > {script_path} && chmod +x {script_path}")
        self._check(
            target,
            f"(crontab -l 2>/dev/null | grep -v -F {shquote(trigger.script_path)}; "
            f"echo {shquote(trigger.crontab_line)}) | crontab -",
        )
        logger.info("Backup schedule installed", host=target.host, period=trigger.period)
