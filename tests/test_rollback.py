"""Tests for rollback candidate selection."""

import pytest

from shipctl.core.exceptions import ExternalToolError, NoRollbackCandidateError, NotFoundError
from shipctl.deploy.models import ArtifactReference, DeploymentAttempt
from shipctl.deploy.rollback import RollbackSelector

from conftest import REPOSITORY, make_selector

TAGS = [
    ("v1.0.0", "2024-01-01T10:00:00Z"),
    ("v1.1.0", "2024-02-01T10:00:00Z"),
    ("latest", "2024-02-01T10:00:01Z"),
]


class TestSelectRollback:
    """Tests for RollbackSelector.select_rollback."""

    def test_skips_current_and_alias(self):
        decision = make_selector(TAGS).select_rollback(REPOSITORY, "v1.1.0")

        assert decision.candidate_artifact == ArtifactReference(REPOSITORY, "v1.0.0")
        assert decision.current_artifact.tag == "v1.1.0"
        assert not decision.confirmed
        assert not decision.executed

    def test_unknown_current_is_refused(self):
        with pytest.raises(NoRollbackCandidateError, match="Cannot tell which tag"):
            make_selector(TAGS).select_rollback(REPOSITORY, None)

    def test_no_candidate(self):
        selector = make_selector([("v1.1.0", "2024-02-01T10:00:00Z"), ("latest", "2024-02-01T10:00:01Z")])
        with pytest.raises(NoRollbackCandidateError):
            selector.select_rollback(REPOSITORY, "v1.1.0")

    def test_custom_aliases(self):
        tags = TAGS + [("stable", "2024-03-01T00:00:00Z")]
        selector = make_selector(tags, aliases=("latest", "stable"))
        assert selector.select_rollback(REPOSITORY, "v1.1.0").candidate_artifact.tag == "v1.0.0"

    def test_candidates_order(self):
        names = [t.name for t in make_selector(TAGS).candidates(REPOSITORY, "v1.0.0")]
        assert names == ["v1.1.0"]


class TestDecisionForTag:
    """Tests for operator-chosen rollback targets."""

    def test_existing_tag(self):
        decision = make_selector(TAGS).decision_for_tag(REPOSITORY, "v1.1.0", "v1.0.0")
        assert decision.candidate_artifact.tag == "v1.0.0"
        assert "Operator" in decision.justification

    def test_missing_tag(self):
        with pytest.raises(NotFoundError):
            make_selector(TAGS).decision_for_tag(REPOSITORY, "v1.1.0", "v0.9.0")

    def test_alias_rejected(self):
        with pytest.raises(NoRollbackCandidateError):
            make_selector(TAGS).decision_for_tag(REPOSITORY, "v1.1.0", "latest")

    def test_current_rejected(self):
        with pytest.raises(NoRollbackCandidateError):
            make_selector(TAGS).decision_for_tag(REPOSITORY, "v1.1.0", "v1.1.0")


class TestSummarize:
    """Tests for RollbackSelector.summarize."""

    def _decision(self):
        return make_selector(TAGS).select_rollback(REPOSITORY, "v1.1.0")

    def test_healthy(self):
        decision = self._decision()
        attempt = DeploymentAttempt(target="203.0.113.10", artifact=decision.candidate_artifact)
        attempt.succeed()

        summary = RollbackSelector.summarize(decision, attempt)
        assert summary.previous == "acme/todo-api:v1.1.0"
        assert summary.rolled_back_to == "acme/todo-api:v1.0.0"
        assert summary.health_outcome == "healthy"
        assert summary.attempt_id == attempt.id

    def test_unhealthy(self):
        decision = self._decision()
        attempt = DeploymentAttempt(target="203.0.113.10", artifact=decision.candidate_artifact)
        attempt.fail(ExternalToolError("boom"))

        summary = RollbackSelector.summarize(decision, attempt)
        assert summary.health_outcome == "unhealthy (ExternalToolError)"
