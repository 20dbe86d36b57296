"""Retry and backoff policy shared by health polling and reachability probes."""

import time
from dataclasses import dataclass
from typing import Callable, Iterator, TypeVar

from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import CancelledError, ValidationError

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule.

    ``interval`` is the delay before the second attempt. Each later delay is
    multiplied by ``backoff_factor`` and capped at ``max_delay`` when set.
    A factor of 1 gives fixed-interval polling.
    """

    max_attempts: int = 3
    interval: float = 1.0
    backoff_factor: float = 1.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ValidationError("interval must not be negative")
        if self.backoff_factor < 1:
            raise ValidationError("backoff_factor must be >= 1")

    @classmethod
    def fixed(cls, interval: float, max_attempts: int) -> "RetryPolicy":
        """Constant delay between attempts."""
        return cls(max_attempts=max_attempts, interval=interval)

    @classmethod
    def exponential(
        cls,
        initial: float,
        max_attempts: int,
        factor: float = 2.0,
        max_delay: float | None = 30.0,
    ) -> "RetryPolicy":
        """Doubling (by default) delay capped at ``max_delay``."""
        return cls(
            max_attempts=max_attempts,
            interval=initial,
            backoff_factor=factor,
            max_delay=max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.interval * (self.backoff_factor ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def delays(self) -> Iterator[float]:
        """All delays of a fully exhausted run, in order."""
        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)

    @property
    def total_delay(self) -> float:
        return sum(self.delays())

    def run(
        self,
        operation: Callable[[int], T],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] | None = None,
        cancel: CancellationToken | None = None,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Call ``operation(attempt)`` until it returns or attempts run out.

        Exceptions outside ``retry_on`` propagate immediately. When every
        attempt fails the last error is re-raised.

        Args:
            operation: Callable receiving the 1-based attempt number
            retry_on: Exception types treated as transient
            sleep: Sleep function; defaults to a cancellable wait
            cancel: Cancellation token checked before each attempt
            on_retry: Called with (attempt, error, delay) before sleeping

        Returns:
            Whatever ``operation`` returned on its first success
        """
        attempt = 1
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return operation(attempt)
            except CancelledError:
                raise
            except retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                self._pause(delay, sleep, cancel)
            attempt += 1

    def _pause(
        self,
        delay: float,
        sleep: Callable[[float], None] | None,
        cancel: CancellationToken | None,
    ) -> None:
        if sleep is not None:
            sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)
        if cancel is not None:
            cancel.raise_if_cancelled()
