"""Rollback candidate selection."""

from typing import Iterable

from shipctl.clients.registry import RegistryClient, RegistryTag
from shipctl.core.exceptions import NoRollbackCandidateError, NotFoundError
from shipctl.core.logging import StructuredLogger
from shipctl.deploy.models import (
    DEFAULT_MUTABLE_ALIASES,
    ArtifactReference,
    DeploymentAttempt,
    RollbackDecision,
    RollbackSummary,
)

logger = StructuredLogger(__name__)


class RollbackSelector:
    """Pick the artifact to fall back to from the registry's recent tags."""

    def __init__(
        self,
        registry: RegistryClient,
        mutable_aliases: Iterable[str] = DEFAULT_MUTABLE_ALIASES,
        page_size: int | None = None,
    ):
        self._registry = registry
        self._aliases = frozenset(mutable_aliases)
        self._page_size = page_size

    def candidates(self, repository: str, current_tag: str | None) -> list[RegistryTag]:
        """Recent immutable tags other than ``current_tag``, newest first."""
        tags = self._registry.list_tags(repository, page_size=self._page_size)
        return [t for t in tags if t.name != current_tag and t.name not in self._aliases]

    def select_rollback(self, repository: str, current_tag: str | None) -> RollbackDecision:
        """Propose the newest published tag that is neither current nor an alias.

        The returned decision is unconfirmed.

        Raises:
            NoRollbackCandidateError: If the current tag is unknown or no such tag exists
        """
        if current_tag is None:
            raise NoRollbackCandidateError(
                f"Cannot tell which tag of {repository} is deployed; choose a rollback tag explicitly"
            )

        candidates = self.candidates(repository, current_tag)
        if not candidates:
            raise NoRollbackCandidateError(
                f"No rollback candidate for {repository} other than '{current_tag}'"
            )

        chosen = candidates[0]
        current = ArtifactReference(repository, current_tag)
        logger.info("Selected rollback candidate", repository=repository, current=current_tag, candidate=chosen.name)

        return RollbackDecision(
            current_artifact=current,
            candidate_artifact=ArtifactReference(repository, chosen.name),
            justification=f"Most recent published tag before '{current_tag}'",
        )

    def decision_for_tag(
        self,
        repository: str,
        current_tag: str | None,
        tag: str,
    ) -> RollbackDecision:
        """Build a decision for an operator-chosen tag after checking it exists."""
        if tag in self._aliases:
            raise NoRollbackCandidateError(f"'{tag}' is a mutable alias and cannot be a rollback target")
        if tag == current_tag:
            raise NoRollbackCandidateError(f"'{tag}' is already deployed")
        if not self._registry.tag_exists(repository, tag):
            raise NotFoundError(f"Tag '{tag}' not found in {repository}")

        return RollbackDecision(
            current_artifact=ArtifactReference(repository, current_tag or "unknown"),
            candidate_artifact=ArtifactReference(repository, tag),
            justification=f"Operator requested '{tag}'",
        )

    @staticmethod
    def summarize(decision: RollbackDecision, attempt: DeploymentAttempt) -> RollbackSummary:
        """Report of an executed rollback."""
        if attempt.succeeded:
            health_outcome = "healthy"
        else:
            health_outcome = f"unhealthy ({attempt.error_kind or 'unknown'})"
        return RollbackSummary(
            previous=decision.current_artifact.image,
            rolled_back_to=decision.candidate_artifact.image,
            health_outcome=health_outcome,
            attempt_id=attempt.id,
        )
