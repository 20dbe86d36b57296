"""Health verification of a deployed service."""

from typing import Any, Callable

import httpx

from shipctl.config import HealthConfig
from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import ShipCtlError, VerificationTimeoutError
from shipctl.core.logging import StructuredLogger
from shipctl.core.retry import RetryPolicy
from shipctl.deploy.models import DeploymentTarget, HealthCheckResult

logger = StructuredLogger(__name__)


class _Unhealthy(ShipCtlError):
    """One poll that did not observe a healthy service."""

    kind = "Unhealthy"

    def __init__(self, result: HealthCheckResult):
        super().__init__(result.reason)
        self.result = result


def parse_health_body(body: Any) -> tuple[str | None, str | None]:
    """Extract (service status, database status) from a health response.

    Services that report ``success`` instead of ``status`` are treated as
    healthy when ``success`` is true.
    """
    if not isinstance(body, dict):
        return None, None

    service_status = body.get("status")
    if service_status is None and "success" in body:
        service_status = "healthy" if body["success"] is True else "unhealthy"

    database = body.get("database")
    database_status = database.get("status") if isinstance(database, dict) else None

    return service_status, database_status


class HealthVerifier:
    """Poll a health endpoint until it reports the service and database healthy."""

    def __init__(
        self,
        config: HealthConfig | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self._config = config or HealthConfig()
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self._config.request_timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "HealthVerifier":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def endpoint_for(self, target: DeploymentTarget) -> str:
        """Health URL of ``target``."""
        return self._config.endpoint_for(target.host)

    def check(self, endpoint: str) -> HealthCheckResult:
        """Perform a single poll. Never raises for an unhealthy service."""
        try:
            response = self.client.get(endpoint)
        except httpx.RequestError as e:
            return HealthCheckResult(endpoint=endpoint, error=f"Request failed: {e}")

        result = HealthCheckResult(endpoint=endpoint, http_status=response.status_code)
        try:
            body = response.json()
        except ValueError:
            result.error = "Response body is not valid JSON"
            return result

        result.service_status, result.database_status = parse_health_body(body)
        return result

    def verify(
        self,
        target: DeploymentTarget,
        endpoint: str | None = None,
        interval_seconds: float | None = None,
        max_attempts: int | None = None,
        cancel: CancellationToken | None = None,
        on_poll: Callable[[int, HealthCheckResult], None] | None = None,
    ) -> HealthCheckResult:
        """Poll until healthy or the attempt budget is spent.

        Args:
            target: Deployment target
            endpoint: Health URL (defaults to the configured one for target)
            interval_seconds: Fixed delay between polls
            max_attempts: Number of polls before giving up
            cancel: Cancellation token
            on_poll: Called with (attempt, result) after each poll

        Returns:
            The first healthy HealthCheckResult

        Raises:
            VerificationTimeoutError: After ``max_attempts`` unhealthy polls
        """
        endpoint = endpoint or self.endpoint_for(target)
        interval = self._config.interval if interval_seconds is None else interval_seconds
        attempts = self._config.max_attempts if max_attempts is None else max_attempts
        policy = RetryPolicy.fixed(interval, attempts)

        def poll(attempt: int) -> HealthCheckResult:
            result = self.check(endpoint)
            if on_poll is not None:
                on_poll(attempt, result)
            if not result.healthy:
                logger.debug(
                    "Health check not passing",
                    endpoint=endpoint,
                    attempt=attempt,
                    reason=result.reason,
                )
                raise _Unhealthy(result)
            return result

        logger.info("Verifying health", endpoint=endpoint, attempts=attempts, interval=interval)

        try:
            result = policy.run(poll, retry_on=(_Unhealthy,), sleep=self._sleep, cancel=cancel)
        except _Unhealthy as e:
            raise VerificationTimeoutError(
                f"{endpoint} not healthy after {attempts} attempts: {e.result.reason}",
                endpoint=endpoint,
                attempts=attempts,
                last_result=e.result,
                timeout_seconds=int(policy.total_delay),
            )

        logger.info("Service healthy", endpoint=endpoint)
        return result
