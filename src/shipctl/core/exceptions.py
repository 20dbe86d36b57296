"""Custom exceptions for shipctl."""

from typing import Any


class ShipCtlError(Exception):
    """Base exception for all shipctl errors."""

    kind = "ShipCtlError"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable form of the error."""
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ConfigError(ShipCtlError):
    """Configuration-related errors."""

    kind = "ConfigError"


class ValidationError(ShipCtlError):
    """Input validation errors."""

    kind = "ValidationError"


class ConnectivityError(ShipCtlError):
    """Target host could not be reached."""

    kind = "ConnectivityError"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host


class ExternalToolError(ShipCtlError):
    """A remote command exited non-zero."""

    kind = "ExternalToolError"

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class TimeoutError(ShipCtlError):
    """Operation timeout errors."""

    kind = "TimeoutError"

    def __init__(
        self,
        message: str,
        timeout_seconds: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class VerificationTimeoutError(TimeoutError):
    """Health was never observed within the polling budget."""

    kind = "VerificationTimeoutError"

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        attempts: int = 0,
        last_result: Any = None,
        timeout_seconds: int | None = None,
    ):
        super().__init__(
            message,
            timeout_seconds=timeout_seconds,
            details={"endpoint": endpoint, "attempts": attempts},
        )
        self.endpoint = endpoint
        self.attempts = attempts
        self.last_result = last_result


class RegistryError(ShipCtlError):
    """Artifact registry API errors."""

    kind = "RegistryError"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class NoRollbackCandidateError(ShipCtlError):
    """No immutable tag other than the current one is available."""

    kind = "NoRollbackCandidateError"


class NotFoundError(ShipCtlError):
    """A named backup or tag does not exist."""

    kind = "NotFoundError"


class ConfirmationDeclined(ShipCtlError):
    """A destructive operation was not confirmed."""

    kind = "ConfirmationDeclined"


class BackupError(ShipCtlError):
    """Dump, compress or load of persisted state failed."""

    kind = "BackupError"


class TargetBusyError(ShipCtlError):
    """Another operation already holds the target's lease."""

    kind = "TargetBusyError"

    def __init__(
        self,
        message: str,
        target: str | None = None,
        holder: str | None = None,
    ):
        super().__init__(message, {"target": target, "holder": holder} if holder else {})
        self.target = target
        self.holder = holder


class CancelledError(ShipCtlError):
    """The operation was cancelled by an external signal."""

    kind = "Cancelled"


class DeploymentError(ShipCtlError):
    """Deployment orchestration errors."""

    kind = "DeploymentError"

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        attempt: Any = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.phase = phase
        self.attempt = attempt

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["phase"] = self.phase
        if self.attempt is not None:
            data["attempt_id"] = self.attempt.id
            data["cause"] = self.attempt.error_kind
        return data


class AttemptOutcomeError(DeploymentError):
    """An attempt's terminal outcome was set twice."""

    kind = "AttemptOutcomeError"
