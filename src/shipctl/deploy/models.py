"""Deployment data models."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable
import uuid

from shipctl.core.exceptions import (
    AttemptOutcomeError,
    DeploymentError,
    ShipCtlError,
    ValidationError,
)
from shipctl.core.utils import utc_now

DEFAULT_MUTABLE_ALIASES = ("latest",)


def new_id() -> str:
    return str(uuid.uuid4())[:8]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class AttemptPhase(str, Enum):
    """Deployment attempt phases."""

    PROVISIONED = "provisioned"
    CONFIGURED = "configured"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"


class AttemptOutcome(str, Enum):
    """Terminal outcome of an attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[AttemptPhase, frozenset[AttemptPhase]] = {
    AttemptPhase.PROVISIONED: frozenset({AttemptPhase.CONFIGURED, AttemptPhase.FAILED}),
    AttemptPhase.CONFIGURED: frozenset({AttemptPhase.DEPLOYING, AttemptPhase.FAILED}),
    AttemptPhase.DEPLOYING: frozenset({AttemptPhase.VERIFYING, AttemptPhase.FAILED}),
    AttemptPhase.VERIFYING: frozenset({AttemptPhase.SUCCEEDED, AttemptPhase.FAILED}),
    AttemptPhase.FAILED: frozenset({AttemptPhase.ROLLING_BACK}),
    AttemptPhase.SUCCEEDED: frozenset(),
    AttemptPhase.ROLLING_BACK: frozenset(),
}


@dataclass
class DeploymentTarget:
    """A single remote host running the service."""

    host: str
    user: str = "ubuntu"
    port: int = 22
    identity_file: str | None = None
    reachable: bool | None = None

    def __post_init__(self) -> None:
        if not self.host:
            raise ValidationError("Target host is required")

    @property
    def key(self) -> str:
        """Identity used for leases and state lookups."""
        return self.host

    def mark_reachable(self, reachable: bool) -> None:
        self.reachable = reachable

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "user": self.user,
            "port": self.port,
            "identity_file": self.identity_file,
            "reachable": self.reachable,
        }


@dataclass(frozen=True)
class ArtifactReference:
    """Immutable reference to a published build: ``repository:tag``."""

    repository: str
    tag: str

    def __post_init__(self) -> None:
        if not self.repository or not self.tag:
            raise ValidationError("Artifact needs both a repository and a tag")
        if ":" in self.tag or "/" in self.tag:
            raise ValidationError(f"Invalid tag '{self.tag}'")

    @classmethod
    def parse(cls, image: str, default_tag: str | None = None) -> "ArtifactReference":
        """Parse ``namespace/name:tag``.

        A colon after the last slash separates the tag, so registry hosts
        with ports (``host:5000/app:v1``) parse correctly.
        """
        name, sep, tag = image.rpartition(":")
        if not sep or "/" in tag:
            if default_tag is None:
                raise ValidationError(
                    f"Image '{image}' has no tag. Use the form namespace/name:tag"
                )
            return cls(repository=image, tag=default_tag)
        return cls(repository=name, tag=tag)

    @property
    def image(self) -> str:
        return f"{self.repository}:{self.tag}"

    def is_mutable_alias(self, aliases: Iterable[str] = DEFAULT_MUTABLE_ALIASES) -> bool:
        """True when the tag is a moving alias rather than a fixed release."""
        return self.tag in set(aliases)

    def __str__(self) -> str:
        return self.image


@dataclass(frozen=True)
class RunContext:
    """Immutable context threaded through one orchestration run."""

    target: DeploymentTarget
    artifact: ArtifactReference
    run_id: str = field(default_factory=new_id)

    def with_artifact(self, artifact: ArtifactReference) -> "RunContext":
        return replace(self, artifact=artifact)


@dataclass(frozen=True)
class DeployOptions:
    """Per-invocation deployment options."""

    auto_rollback: bool = False
    confirmed: bool = False
    health_interval: float = 15.0
    health_attempts: int = 20
    health_timeout: float | None = None
    backup_first: bool = False

    @property
    def effective_attempts(self) -> int:
        """Poll budget, derived from ``health_timeout`` when it is given."""
        if self.health_timeout is None:
            return self.health_attempts
        if self.health_interval <= 0:
            return self.health_attempts
        return max(1, int(self.health_timeout // self.health_interval) + 1)


@dataclass
class HealthCheckResult:
    """One poll of the health endpoint."""

    endpoint: str
    timestamp: datetime = field(default_factory=utc_now)
    http_status: int | None = None
    service_status: str | None = None
    database_status: str | None = None
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return (
            self.http_status == 200
            and self.service_status == "healthy"
            and self.database_status == "connected"
        )

    @property
    def reason(self) -> str:
        """Short explanation of why the poll was not healthy."""
        if self.error:
            return self.error
        if self.http_status != 200:
            return f"HTTP {self.http_status}"
        if self.service_status != "healthy":
            return f"service status {self.service_status!r}"
        if self.database_status != "connected":
            return f"database status {self.database_status!r}"
        return "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "timestamp": self.timestamp.isoformat(),
            "http_status": self.http_status,
            "service_status": self.service_status,
            "database_status": self.database_status,
            "error": self.error,
            "healthy": self.healthy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthCheckResult":
        return cls(
            endpoint=data.get("endpoint", ""),
            timestamp=_parse(data.get("timestamp")) or utc_now(),
            http_status=data.get("http_status"),
            service_status=data.get("service_status"),
            database_status=data.get("database_status"),
            error=data.get("error"),
        )


@dataclass
class RollbackDecision:
    """Proposed replacement of a failing artifact.

    A decision is never executed unconfirmed and may be executed only once.
    """

    current_artifact: ArtifactReference
    candidate_artifact: ArtifactReference
    justification: str
    confirmed: bool = False
    executed: bool = False

    def confirm(self) -> None:
        self.confirmed = True

    def mark_executed(self) -> None:
        if not self.confirmed:
            raise DeploymentError("Rollback decision has not been confirmed")
        if self.executed:
            raise DeploymentError("Rollback decision has already been executed")
        self.executed = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_artifact": self.current_artifact.image,
            "candidate_artifact": self.candidate_artifact.image,
            "justification": self.justification,
            "confirmed": self.confirmed,
            "executed": self.executed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackDecision":
        return cls(
            current_artifact=ArtifactReference.parse(data["current_artifact"]),
            candidate_artifact=ArtifactReference.parse(data["candidate_artifact"]),
            justification=data.get("justification", ""),
            confirmed=data.get("confirmed", False),
            executed=data.get("executed", False),
        )


@dataclass
class RollbackSummary:
    """Report produced after a rollback has been deployed and re-verified."""

    previous: str
    rolled_back_to: str
    health_outcome: str
    attempt_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous": self.previous,
            "rolled_back_to": self.rolled_back_to,
            "health_outcome": self.health_outcome,
            "attempt_id": self.attempt_id,
        }


@dataclass
class DeploymentEvent:
    """Deployment event for audit trail."""

    timestamp: datetime
    event_type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentEvent":
        return cls(
            timestamp=_parse(data.get("timestamp")) or utc_now(),
            event_type=data.get("event_type", ""),
            message=data.get("message", ""),
            details=data.get("details", {}),
        )


@dataclass
class DeploymentAttempt:
    """One pass through the provision → verify cycle for an artifact."""

    target: str
    artifact: ArtifactReference
    id: str = field(default_factory=new_id)
    run_id: str = ""
    phase: AttemptPhase = AttemptPhase.PROVISIONED
    outcome: AttemptOutcome | None = None
    error_kind: str | None = None
    message: str = ""
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    health: HealthCheckResult | None = None
    rollback_of: str | None = None
    rollback_attempt_id: str | None = None
    decision: RollbackDecision | None = None
    noop: bool = False
    events: list[DeploymentEvent] = field(default_factory=list)

    def add_event(self, event_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Add an event to the attempt history."""
        self.events.append(
            DeploymentEvent(
                timestamp=utc_now(),
                event_type=event_type,
                message=message,
                details=details or {},
            )
        )

    def transition(self, phase: AttemptPhase) -> None:
        """Move to ``phase`` if the state machine allows it."""
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise DeploymentError(
                f"Illegal transition {self.phase.value} -> {phase.value}",
                phase=self.phase.value,
            )
        self.add_event("phase", f"{self.phase.value} -> {phase.value}")
        self.phase = phase

    def _finish(self, outcome: AttemptOutcome) -> None:
        if self.outcome is not None:
            raise AttemptOutcomeError(
                f"Attempt {self.id} already finished as {self.outcome.value}",
                phase=self.phase.value,
            )
        self.outcome = outcome
        self.ended_at = utc_now()

    def succeed(self, health: HealthCheckResult | None = None, message: str = "") -> None:
        """Record the terminal Succeeded outcome."""
        self._finish(AttemptOutcome.SUCCEEDED)
        self.health = health or self.health
        self.phase = AttemptPhase.SUCCEEDED
        self.message = message or "Deployment succeeded"
        self.add_event("succeeded", self.message)

    def fail(self, error: BaseException) -> None:
        """Record the terminal Failed outcome for ``error``."""
        failed_in = self.phase.value
        self._finish(AttemptOutcome.FAILED)
        self.error_kind = error.kind if isinstance(error, ShipCtlError) else type(error).__name__
        if self.error_kind == "KeyboardInterrupt":
            self.error_kind = "Cancelled"
        self.message = str(error) or self.error_kind
        self.phase = AttemptPhase.FAILED
        self.add_event("failed", f"Failed during {failed_in}: {self.message}", {"kind": self.error_kind})

    @property
    def is_active(self) -> bool:
        return self.outcome is None

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at or utc_now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "target": self.target,
            "artifact": self.artifact.image,
            "phase": self.phase.value,
            "outcome": self.outcome.value if self.outcome else None,
            "error_kind": self.error_kind,
            "message": self.message,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "health": self.health.to_dict() if self.health else None,
            "rollback_of": self.rollback_of,
            "rollback_attempt_id": self.rollback_attempt_id,
            "decision": self.decision.to_dict() if self.decision else None,
            "noop": self.noop,
            "events": [e.to_dict() for e in self.events[-50:]],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentAttempt":
        """Create from dictionary."""
        outcome = data.get("outcome")
        return cls(
            id=data["id"],
            run_id=data.get("run_id", ""),
            target=data["target"],
            artifact=ArtifactReference.parse(data["artifact"]),
            phase=AttemptPhase(data.get("phase", "provisioned")),
            outcome=AttemptOutcome(outcome) if outcome else None,
            error_kind=data.get("error_kind"),
            message=data.get("message", ""),
            started_at=_parse(data.get("started_at")) or utc_now(),
            ended_at=_parse(data.get("ended_at")),
            health=HealthCheckResult.from_dict(data["health"]) if data.get("health") else None,
            rollback_of=data.get("rollback_of"),
            rollback_attempt_id=data.get("rollback_attempt_id"),
            decision=RollbackDecision.from_dict(data["decision"]) if data.get("decision") else None,
            noop=data.get("noop", False),
            events=[DeploymentEvent.from_dict(e) for e in data.get("events", [])],
        )
