"""Deployment orchestration module."""

from shipctl.deploy.controller import DeploymentController
from shipctl.deploy.health import HealthVerifier
from shipctl.deploy.models import (
    ArtifactReference,
    AttemptOutcome,
    AttemptPhase,
    DeploymentAttempt,
    DeploymentTarget,
    DeployOptions,
    HealthCheckResult,
    RollbackDecision,
    RollbackSummary,
    RunContext,
)
from shipctl.deploy.rollback import RollbackSelector
from shipctl.deploy.state import DeploymentState

__all__ = [
    "ArtifactReference",
    "AttemptOutcome",
    "AttemptPhase",
    "DeploymentAttempt",
    "DeploymentController",
    "DeploymentState",
    "DeploymentTarget",
    "DeployOptions",
    "HealthCheckResult",
    "HealthVerifier",
    "RollbackDecision",
    "RollbackSelector",
    "RollbackSummary",
    "RunContext",
]
