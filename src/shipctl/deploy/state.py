"""Deployment attempt state management."""

from __future__ import annotations

import json
from pathlib import Path

from shipctl.core.exceptions import DeploymentError, NotFoundError
from shipctl.core.logging import StructuredLogger
from shipctl.core.utils import get_state_dir
from shipctl.deploy.models import ArtifactReference, DeploymentAttempt

logger = StructuredLogger(__name__)


class DeploymentState:
    """Persist deployment attempts as one JSON file per attempt."""

    def __init__(self, state_dir: str | Path | None = None):
        """Initialize deployment state manager.

        Args:
            state_dir: Directory to store attempt state
        """
        if state_dir:
            self._state_dir = Path(state_dir)
        else:
            self._state_dir = get_state_dir() / "attempts"
        self._state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def save(self, attempt: DeploymentAttempt) -> None:
        """Save attempt state.

        Args:
            attempt: Attempt to save
        """
        state_file = self._state_dir / f"{attempt.id}.json"
        tmp_file = state_file.with_suffix(".tmp")

        try:
            with open(tmp_file, "w") as f:
                json.dump(attempt.to_dict(), f, indent=2)
            tmp_file.replace(state_file)
        except OSError as e:
            raise DeploymentError(f"Failed to save attempt state: {e}", attempt=attempt)

        logger.debug("Saved attempt state", id=attempt.id, phase=attempt.phase.value)

    def load(self, attempt_id: str) -> DeploymentAttempt:
        """Load attempt state.

        Args:
            attempt_id: Attempt ID

        Returns:
            Loaded DeploymentAttempt
        """
        state_file = self._state_dir / f"{attempt_id}.json"

        if not state_file.exists():
            raise NotFoundError(f"Deployment attempt not found: {attempt_id}")

        try:
            with open(state_file) as f:
                data = json.load(f)
            return DeploymentAttempt.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            raise DeploymentError(f"Failed to load attempt state {attempt_id}: {e}")

    def list(
        self,
        target: str | None = None,
        limit: int = 50,
    ) -> list[DeploymentAttempt]:
        """List attempts, newest first.

        Args:
            target: Only attempts against this host
            limit: Maximum attempts to return

        Returns:
            List of DeploymentAttempts
        """
        attempts: list[DeploymentAttempt] = []

        for state_file in self._state_dir.glob("*.json"):
            try:
                with open(state_file) as f:
                    data = json.load(f)
                attempt = DeploymentAttempt.from_dict(data)
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable attempt state", file=state_file.name, error=str(e))
                continue

            if target and attempt.target != target:
                continue

            attempts.append(attempt)

        attempts.sort(key=lambda a: a.started_at, reverse=True)

        return attempts[:limit]

    def latest(self, target: str, include_noop: bool = False) -> DeploymentAttempt | None:
        """Most recent finished attempt against ``target``."""
        for attempt in self.list(target=target, limit=1000):
            if attempt.is_active:
                continue
            if attempt.noop and not include_noop:
                continue
            return attempt
        return None

    def current_artifact(self, target: str) -> ArtifactReference | None:
        """Artifact of the most recent successful attempt on ``target``."""
        for attempt in self.list(target=target, limit=1000):
            if attempt.succeeded:
                return attempt.artifact
        return None
