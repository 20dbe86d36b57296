"""Per-target leases serialising deploy and restore operations."""

import fcntl
import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from shipctl.core.exceptions import TargetBusyError
from shipctl.core.logging import StructuredLogger
from shipctl.core.utils import sanitize_filename

logger = StructuredLogger(__name__)

_registry_guard = threading.Lock()
_local_locks: dict[str, threading.Lock] = {}


def _lock_for(key: str) -> threading.Lock:
    with _registry_guard:
        if key not in _local_locks:
            _local_locks[key] = threading.Lock()
        return _local_locks[key]


class TargetLeases:
    """Mutual exclusion keyed by target identity.

    Threads of one process are serialised by an in-memory lock per key.
    When ``lease_dir`` is given, an exclusive ``flock`` on a lease file
    additionally keeps separate processes from interleaving on the same
    target. The kernel drops the lock when its process exits, so a lease
    file left behind by a crashed run is simply taken over.

    Contention is rejected rather than queued: the caller gets
    :class:`TargetBusyError` and may retry later.
    """

    def __init__(self, lease_dir: str | Path | None = None):
        self._lease_dir = Path(lease_dir) if lease_dir else None
        if self._lease_dir:
            self._lease_dir.mkdir(parents=True, exist_ok=True)

    def _lease_path(self, key: str) -> Path | None:
        if self._lease_dir is None:
            return None
        return self._lease_dir / f"{sanitize_filename(key)}.lease"

    def holder(self, key: str) -> dict[str, Any] | None:
        """Return the lease file contents for ``key`` if one exists."""
        path = self._lease_path(key)
        if path is None or not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError):
            return {}

    @contextmanager
    def hold(self, key: str, owner: str) -> Generator[None, None, None]:
        """Hold the lease on ``key`` for the duration of the block.

        Args:
            key: Target identity (host)
            owner: Identifier of the run taking the lease

        Raises:
            TargetBusyError: If another run holds the lease
        """
        lock = _lock_for(key)
        if not lock.acquire(blocking=False):
            raise TargetBusyError(
                f"Another operation is already running against {key}",
                target=key,
            )
        try:
            fd = self._claim(key, owner)
            logger.debug("Lease acquired", target=key, owner=owner)
            try:
                yield
            finally:
                self._release(key, fd)
                logger.debug("Lease released", target=key, owner=owner)
        finally:
            lock.release()

    def _claim(self, key: str, owner: str) -> int | None:
        """Lock the lease file for ``key`` and record ``owner`` in it.

        Returns the open descriptor carrying the lock, or None without a
        lease directory.
        """
        path = self._lease_path(key)
        if path is None:
            return None

        while True:
            fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                current = self.holder(key) or {}
                raise TargetBusyError(
                    f"Another operation is already running against {key}",
                    target=key,
                    holder=current.get("owner"),
                )

            # the previous holder unlinks the file on release; a lock on that
            # orphaned inode guards nothing
            try:
                current_inode = os.stat(path).st_ino
            except FileNotFoundError:
                current_inode = None
            if current_inode == os.fstat(fd).st_ino:
                break
            os.close(fd)

        previous = self.holder(key)
        if previous:
            logger.warning(
                "Reclaiming stale lease",
                target=key,
                owner=previous.get("owner"),
                pid=previous.get("pid"),
            )

        payload = json.dumps(
            {
                "owner": owner,
                "pid": os.getpid(),
                "acquired_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        os.ftruncate(fd, 0)
        os.write(fd, payload.encode())
        return fd

    def _release(self, key: str, fd: int | None) -> None:
        if fd is None:
            return
        path = self._lease_path(key)
        try:
            # unlink while still locked so no newcomer locks the old inode unnoticed
            if path is not None:
                path.unlink(missing_ok=True)
        finally:
            os.close(fd)
