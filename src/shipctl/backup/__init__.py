"""Database backup, restore and retention."""

from shipctl.backup.manager import (
    CONFIRMATION_TOKEN,
    BackupManager,
    BackupRecord,
    RetentionClass,
    ScheduleTrigger,
)

__all__ = [
    "CONFIRMATION_TOKEN",
    "BackupManager",
    "BackupRecord",
    "RetentionClass",
    "ScheduleTrigger",
]
