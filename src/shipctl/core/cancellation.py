"""Cooperative cancellation for long-running remote operations."""

import threading

from shipctl.core.exceptions import CancelledError


class CancellationToken:
    """External cancellation signal shared between a caller and a running flow.

    Sleeps performed through :meth:`wait` return early once cancelled, and the
    SSH executor polls :attr:`cancelled` to kill the remote call in flight.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Signal cancellation."""
        self._reason = reason
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self._reason or "Operation cancelled")
