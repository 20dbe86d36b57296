"""Tests for database backup, restore and retention."""

from datetime import datetime, timezone

import pytest

from shipctl.backup import CONFIRMATION_TOKEN, BackupManager, RetentionClass
from shipctl.backup.manager import validate_backup_name, validate_cron_spec
from shipctl.config import BackupConfig
from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import (
    BackupError,
    CancelledError,
    ConfirmationDeclined,
    NotFoundError,
    TargetBusyError,
    ValidationError,
)
from shipctl.core.locking import TargetLeases
from shipctl.deploy.models import DeploymentTarget

from conftest import FakeMongoHost


@pytest.fixture
def manager(fake_host: FakeMongoHost, leases: TargetLeases) -> BackupManager:
    return BackupManager(fake_host, BackupConfig(), leases=leases)


class TestRetentionClass:
    """Tests for RetentionClass.for_name."""

    def test_classes(self):
        assert RetentionClass.for_name("backup_20240101_020000") == RetentionClass.AUTOMATIC
        assert RetentionClass.for_name("pre-deploy-1a2b3c4d") == RetentionClass.SAFETY
        assert RetentionClass.for_name("before-migration") == RetentionClass.MANUAL


class TestValidation:
    """Tests for name and schedule validation."""

    @pytest.mark.parametrize("name", ["../etc", "a b", "x.tar.gz", "", "-rf"])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            validate_backup_name(name)

    def test_valid_name(self):
        assert validate_backup_name("backup_20240101_020000") == "backup_20240101_020000"

    def test_cron_spec(self):
        assert validate_cron_spec("0  2 * * *") == "0 2 * * *"
        with pytest.raises(ValidationError):
            validate_cron_spec("every night")


class TestBackup:
    """Tests for BackupManager.backup."""

    def test_creates_archive(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.documents = 42

        record = manager.backup(target, "nightly")

        assert record.name == "nightly"
        assert record.archive_name == "nightly.tar.gz"
        assert record.size_bytes == 4096
        assert record.source_target == "203.0.113.10"
        assert record.retention_class == RetentionClass.MANUAL
        assert fake_host.archives["nightly"]["documents"] == 42
        assert fake_host.leftovers() == []

    def test_command_sequence(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        manager.backup(target, "nightly")

        assert fake_host.commands == [
            "docker inspect -f '{{.State.Running}}' todo-api-mongodb-1",
            "test -e /opt/todo-api/backups/nightly.tar.gz",
            "docker exec todo-api-mongodb-1 mongodump --db todoapp --out /tmp/nightly",
            "mkdir -p /opt/todo-api/backups && docker cp todo-api-mongodb-1:/tmp/nightly /opt/todo-api/backups/",
            "cd /opt/todo-api/backups && tar -czf nightly.tar.gz nightly && rm -rf nightly",
            "docker exec todo-api-mongodb-1 rm -rf /tmp/nightly",
            "stat -c '%s %Y' /opt/todo-api/backups/nightly.tar.gz",
        ]

    def test_default_name_is_timestamped(self, manager: BackupManager, target: DeploymentTarget):
        record = manager.backup(target)
        assert record.retention_class == RetentionClass.AUTOMATIC

    def test_default_name_format(self, manager: BackupManager):
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert manager.default_name(now) == "backup_20240102_030405"

    def test_existing_name_rejected(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("nightly", documents=7)

        with pytest.raises(BackupError, match="already exists"):
            manager.backup(target, "nightly")

        assert fake_host.archives["nightly"]["documents"] == 7
        assert not any("mongodump" in c for c in fake_host.commands)

    def test_container_not_running(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.running = False

        with pytest.raises(BackupError, match="not running"):
            manager.backup(target, "nightly")
        assert len(fake_host.commands) == 1

    def test_failed_compress_leaves_nothing(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.fail_on["tar -czf"] = 2

        with pytest.raises(BackupError, match="nightly"):
            manager.backup(target, "nightly")

        assert "nightly" not in fake_host.archives
        assert fake_host.leftovers() == []
        assert any(c.startswith("rm -rf /opt/todo-api/backups/nightly") for c in fake_host.commands)

    def test_failed_dump(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.fail_on["mongodump"] = 1

        with pytest.raises(BackupError):
            manager.backup(target, "nightly")
        assert fake_host.archives == {}

    def test_cancelled_backup_is_discarded(self, fake_host: FakeMongoHost, target: DeploymentTarget, leases):
        token = CancellationToken()

        class CancellingHost(FakeMongoHost):
            def run(self, target, command, timeout=None, cancel=None):
                result = super().run(target, command, timeout=timeout, cancel=cancel)
                if "mongodump" in command:
                    token.cancel()
                return result

        host = CancellingHost()
        manager = BackupManager(host, leases=leases)

        with pytest.raises(CancelledError):
            manager.backup(target, "nightly", cancel=token)
        assert host.archives == {}
        assert host.leftovers() == []


class TestListAndGet:
    """Tests for listing and lookup."""

    def test_list_newest_first(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("backup_20240101_020000", age_days=3)
        fake_host.add_archive("pre-deploy-1a2b3c4d", age_days=1)
        fake_host.add_archive("manual-one", age_days=2)

        records = list(manager.list(target))

        assert [r.name for r in records] == ["pre-deploy-1a2b3c4d", "manual-one", "backup_20240101_020000"]
        assert records[0].retention_class == RetentionClass.SAFETY
        assert records[2].retention_class == RetentionClass.AUTOMATIC

    def test_list_empty(self, manager: BackupManager, target: DeploymentTarget):
        assert list(manager.list(target)) == []

    def test_get_missing(self, manager: BackupManager, target: DeploymentTarget):
        with pytest.raises(NotFoundError):
            manager.get(target, "nope")

    def test_get_existing(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("nightly", size=1234)
        assert manager.get(target, "nightly").size_bytes == 1234


class TestRestore:
    """Tests for BackupManager.restore."""

    def test_backup_then_restore_round_trip(
        self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget
    ):
        fake_host.documents = 42
        manager.backup(target, "before-change")
        fake_host.documents = 99

        manager.restore(target, "before-change", CONFIRMATION_TOKEN)

        assert fake_host.documents == 42
        assert fake_host.leftovers() == []

    def test_restore_drops_before_loading(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("nightly", documents=5)
        manager.restore(target, "nightly", CONFIRMATION_TOKEN)

        drop = next(i for i, c in enumerate(fake_host.commands) if "dropDatabase" in c)
        load = next(i for i, c in enumerate(fake_host.commands) if "mongorestore" in c)
        assert drop < load
        assert fake_host.commands[load] == "docker exec todo-api-mongodb-1 mongorestore --db todoapp /tmp/nightly/todoapp"

    def test_missing_backup_touches_nothing(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.documents = 10

        with pytest.raises(NotFoundError):
            manager.restore(target, "nope", CONFIRMATION_TOKEN)

        assert fake_host.documents == 10
        assert fake_host.commands == ["test -e /opt/todo-api/backups/nope.tar.gz"]

    @pytest.mark.parametrize("token", [None, "", "no", "YES"])
    def test_requires_token(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget, token):
        fake_host.add_archive("nightly", documents=5)
        fake_host.documents = 10

        with pytest.raises(ConfirmationDeclined):
            manager.restore(target, "nightly", token)

        assert fake_host.documents == 10
        assert not any("dropDatabase" in c for c in fake_host.commands)

    def test_restore_holds_target_lease(
        self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget, leases: TargetLeases
    ):
        fake_host.add_archive("nightly", documents=5)
        fake_host.documents = 10

        with leases.hold(target.key, "deploy-run"):
            with pytest.raises(TargetBusyError):
                manager.restore(target, "nightly", CONFIRMATION_TOKEN)

        assert fake_host.documents == 10

    def test_failed_load_is_reported(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("nightly", documents=5)
        fake_host.fail_on["mongorestore"] = 1

        with pytest.raises(BackupError, match="Restore of 'nightly' failed"):
            manager.restore(target, "nightly", CONFIRMATION_TOKEN)
        assert fake_host.leftovers() == []

    def test_failed_drop_stops_restore(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.documents = 10
        fake_host.add_archive("nightly", documents=5)
        fake_host.fail_on["dropDatabase"] = 1

        with pytest.raises(BackupError, match="Restore of 'nightly' failed"):
            manager.restore(target, "nightly", CONFIRMATION_TOKEN)

        assert not any("mongorestore" in c for c in fake_host.commands)
        assert fake_host.documents == 10
        assert fake_host.leftovers() == []


class TestCleanup:
    """Tests for retention cleanup."""

    def test_expired(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("old", age_days=10)
        fake_host.add_archive("fresh", age_days=1)

        assert [r.name for r in manager.expired(target, 7)] == ["old"]

    def test_cleanup_requires_token(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("old", age_days=10)

        with pytest.raises(ConfirmationDeclined):
            manager.cleanup(target, 7)
        assert "old" in fake_host.archives

    def test_cleanup_deletes_expired(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("old", age_days=10)
        fake_host.add_archive("older", age_days=30)
        fake_host.add_archive("fresh", age_days=1)

        deleted = manager.cleanup(target, 7, confirmation_token=CONFIRMATION_TOKEN)

        assert deleted == 2
        assert list(fake_host.archives) == ["fresh"]

    def test_nothing_expired_needs_no_token(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        fake_host.add_archive("fresh", age_days=1)
        assert manager.cleanup(target, 7) == 0

    def test_negative_retention(self, manager: BackupManager, target: DeploymentTarget):
        with pytest.raises(ValidationError):
            manager.expired(target, -1)


class TestSchedule:
    """Tests for the periodic backup trigger."""

    def test_default_trigger(self, manager: BackupManager, target: DeploymentTarget):
        trigger = manager.schedule(target)

        assert trigger.period == "0 2 * * *"
        assert trigger.script_path == "/opt/todo-api/backup-db.sh"
        assert trigger.crontab_line == (
            "0 2 * * * /opt/todo-api/backup-db.sh >> /var/log/todo-api-backup.log 2>&1"
        )

    def test_invalid_schedule(self, manager: BackupManager, target: DeploymentTarget):
        with pytest.raises(ValidationError):
            manager.schedule(target, "@nightly")

    def test_render_script(self, manager: BackupManager):
        script = manager.render_script(retention_days=14)

        assert script.startswith("#!/bin/bash")
        assert "BACKUP_DIR=/opt/todo-api/backups" in script
        assert "mongodump" in script
        assert "-mtime +14 -delete" in script

    def test_install(self, manager: BackupManager, fake_host: FakeMongoHost, target: DeploymentTarget):
        trigger = manager.schedule(target, "30 3 * * *")
        manager.install_schedule(target, trigger)

        assert len(fake_host.commands) == 2
        assert "chmod +x /opt/todo-api/backup-db.sh" in fake_host.commands[0]
        assert "crontab -" in fake_host.commands[1]
        assert "30 3 * * *" in fake_host.commands[1]
