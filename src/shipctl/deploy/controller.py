"""Deployment controller: provision, configure, deploy, verify and roll back."""

from typing import Callable

from shipctl.backup.manager import SAFETY_PREFIX, BackupManager
from shipctl.clients.remote import Executor
from shipctl.config import ProfileConfig
from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import (
    CancelledError,
    ConfirmationDeclined,
    ConnectivityError,
    DeploymentError,
    ShipCtlError,
    ValidationError,
    VerificationTimeoutError,
)
from shipctl.core.locking import TargetLeases
from shipctl.core.logging import StructuredLogger
from shipctl.core.retry import RetryPolicy
from shipctl.core.templating import render_command, shquote
from shipctl.deploy.health import HealthVerifier
from shipctl.deploy.models import (
    ArtifactReference,
    AttemptPhase,
    DeploymentAttempt,
    DeploymentTarget,
    DeployOptions,
    RollbackDecision,
    RollbackSummary,
    RunContext,
)
from shipctl.deploy.rollback import RollbackSelector
from shipctl.deploy.state import DeploymentState

logger = StructuredLogger(__name__)

ConfirmCallback = Callable[[RollbackDecision], bool]
NotifyCallback = Callable[[DeploymentAttempt, str], None]

# docker ps --format: image reference of each running container
RUNNING_IMAGE_FORMAT = "{{.Image}}"


class DeploymentController:
    """Drive one target through the deploy and verify cycle.

    Every run holds the target's lease, so two deploys against the same
    host never interleave. Attempts are persisted after each change.
    """

    def __init__(
        self,
        executor: Executor,
        verifier: HealthVerifier,
        selector: RollbackSelector,
        state: DeploymentState,
        config: ProfileConfig | None = None,
        leases: TargetLeases | None = None,
        backups: BackupManager | None = None,
        confirm_callback: ConfirmCallback | None = None,
        notify_callback: NotifyCallback | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        """Initialize controller.

        Args:
            executor: Remote execution adapter
            verifier: Health verifier
            selector: Rollback candidate selector
            state: Attempt persistence
            config: Profile configuration (command templates, probe budget)
            leases: Per-target leases
            backups: Backup manager used for pre-deploy safety backups
            confirm_callback: Asked to confirm an automatic rollback
            notify_callback: Called with (attempt, message) on terminal outcomes
            sleep: Sleep function for reachability backoff
        """
        self._executor = executor
        self._verifier = verifier
        self._selector = selector
        self._state = state
        self._config = config or ProfileConfig()
        self._leases = leases or TargetLeases()
        self._backups = backups
        self._confirm = confirm_callback
        self._notify = notify_callback
        self._sleep = sleep

    @property
    def mutable_aliases(self) -> list[str]:
        return self._config.registry.mutable_aliases

    # Queries
    def history(self, target: DeploymentTarget, limit: int = 20) -> list[DeploymentAttempt]:
        """Attempts against ``target``, newest first."""
        return self._state.list(target=target.key, limit=limit)

    def current_artifact(self, target: DeploymentTarget) -> ArtifactReference | None:
        """Artifact of the last successful deployment on ``target``."""
        return self._state.current_artifact(target.key)

    def default_options(self, **overrides: object) -> DeployOptions:
        """DeployOptions seeded from configuration."""
        values: dict[str, object] = {
            "auto_rollback": self._config.deploy.auto_rollback,
            "health_interval": self._config.health.interval,
            "health_attempts": self._config.health.max_attempts,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return DeployOptions(**values)  # type: ignore[arg-type]

    # Deploy
    def deploy(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        options: DeployOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> DeploymentAttempt:
        """Deploy ``artifact`` to ``target`` and verify it.

        Returns the final attempt: the child rollback attempt when an
        automatic rollback ran, otherwise the attempt for ``artifact``.
        A Failed attempt is returned, not raised, when verification timed out.

        Raises:
            TargetBusyError: If another deploy or restore holds the target
            ConnectivityError: If the target is unreachable (no attempt is created)
            DeploymentError: If a remote command fails mid-cycle
            CancelledError: If cancelled (the attempt is recorded as Failed first)
        """
        options = options or self.default_options()
        ctx = RunContext(target=target, artifact=artifact)
        budget = 1 if options.auto_rollback else 0

        with self._leases.hold(target.key, ctx.run_id):
            return self._run(ctx, options, cancel, budget)

    def _run(
        self,
        ctx: RunContext,
        options: DeployOptions,
        cancel: CancellationToken | None,
        rollback_budget: int,
        rollback_of: DeploymentAttempt | None = None,
        decision: RollbackDecision | None = None,
    ) -> DeploymentAttempt:
        log = logger.bind(host=ctx.target.host, image=ctx.artifact.image, run=ctx.run_id)

        noop = self._already_deployed(ctx)
        if noop is not None:
            log.info("Artifact already deployed, nothing to do")
            return noop

        self._ensure_reachable(ctx.target, cancel)

        attempt = DeploymentAttempt(
            target=ctx.target.key,
            artifact=ctx.artifact,
            run_id=ctx.run_id,
            rollback_of=rollback_of.id if rollback_of else None,
            decision=decision,
        )
        attempt.add_event("started", f"Deploying {ctx.artifact.image} to {ctx.target.host}")
        self._state.save(attempt)
        log.info("Deployment started", attempt=attempt.id)

        try:
            self._provision(ctx, attempt, options, cancel)

            attempt.transition(AttemptPhase.CONFIGURED)
            self._state.save(attempt)
            self._run_template(ctx, self._config.deploy.configure_command, cancel)

            attempt.transition(AttemptPhase.DEPLOYING)
            self._state.save(attempt)
            self._run_template(ctx, self._config.deploy.activate_command, cancel)

            attempt.transition(AttemptPhase.VERIFYING)
            self._state.save(attempt)
            health = self._verifier.verify(
                ctx.target,
                interval_seconds=options.health_interval,
                max_attempts=options.effective_attempts,
                cancel=cancel,
            )

        except VerificationTimeoutError as e:
            attempt.health = e.last_result
            attempt.fail(e)
            self._state.save(attempt)
            log.error("Deployment failed verification", attempt=attempt.id, reason=e.message)
            self._notify_status(attempt, f"Deployment of {ctx.artifact.image} failed health verification")

            if rollback_budget > 0:
                return self._auto_rollback(ctx, attempt, options, cancel, rollback_budget - 1)
            return attempt

        except (CancelledError, KeyboardInterrupt) as e:
            attempt.fail(e)
            self._state.save(attempt)
            log.warning("Deployment cancelled", attempt=attempt.id)
            raise

        except ShipCtlError as e:
            phase = attempt.phase.value
            attempt.fail(e)
            self._state.save(attempt)
            log.error("Deployment failed", attempt=attempt.id, phase=phase, error=e.kind)
            self._notify_status(attempt, f"Deployment of {ctx.artifact.image} failed during {phase}")
            raise DeploymentError(
                f"Deployment of {ctx.artifact.image} failed during {phase}: {e.message}",
                phase=phase,
                attempt=attempt,
            ) from e

        attempt.succeed(health, message=f"{ctx.artifact.image} is healthy on {ctx.target.host}")
        self._state.save(attempt)
        log.info("Deployment succeeded", attempt=attempt.id)
        self._notify_status(attempt, attempt.message)
        return attempt

    def _already_deployed(self, ctx: RunContext) -> DeploymentAttempt | None:
        """Return a recorded no-op attempt when ``ctx.artifact`` is already live."""
        if ctx.artifact.is_mutable_alias(self.mutable_aliases):
            return None

        latest = self._state.latest(ctx.target.key)
        if latest is None or not latest.succeeded or latest.artifact != ctx.artifact:
            return None

        attempt = DeploymentAttempt(
            target=ctx.target.key,
            artifact=ctx.artifact,
            run_id=ctx.run_id,
            noop=True,
        )
        attempt.succeed(
            latest.health,
            message=f"{ctx.artifact.image} already deployed by attempt {latest.id}",
        )
        self._state.save(attempt)
        return attempt

    def _ensure_reachable(self, target: DeploymentTarget, cancel: CancellationToken | None) -> None:
        settings = self._config.target
        policy = RetryPolicy.exponential(
            1.0,
            settings.reachability_attempts,
            max_delay=settings.reachability_max_delay,
        )

        def probe(attempt: int) -> None:
            if not self._executor.probe(target, cancel=cancel):
                raise ConnectivityError(
                    f"Target {target.user}@{target.host} is unreachable",
                    host=target.host,
                )

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning("Target not reachable yet", host=target.host, attempt=attempt, retry_in=delay)

        policy.run(probe, retry_on=(ConnectivityError,), sleep=self._sleep, cancel=cancel, on_retry=on_retry)

    def _provision(
        self,
        ctx: RunContext,
        attempt: DeploymentAttempt,
        options: DeployOptions,
        cancel: CancellationToken | None,
    ) -> None:
        self._run_template(ctx, self._config.deploy.prepare_command, cancel)

        if options.backup_first:
            if self._backups is None:
                raise DeploymentError("Pre-deploy backup requested but no backup manager is configured")
            record = self._backups.backup(ctx.target, name=f"{SAFETY_PREFIX}{ctx.run_id}", cancel=cancel)
            attempt.add_event("backup", f"Safety backup {record.name} created", record.to_dict())
            self._state.save(attempt)

    def render(self, template: str, ctx: RunContext) -> str:
        """Render a command template for ``ctx``."""
        return render_command(
            template,
            host=ctx.target.host,
            user=ctx.target.user,
            image=ctx.artifact.image,
            repository=ctx.artifact.repository,
            tag=ctx.artifact.tag,
            app_dir=self._config.deploy.app_dir,
            app_env=self._config.deploy.get_app_env(),
            run_id=ctx.run_id,
        )

    def _run_template(self, ctx: RunContext, template: str, cancel: CancellationToken | None) -> str:
        return self._executor.check(ctx.target, self.render(template, ctx), cancel=cancel)

    # Rollback
    def _auto_rollback(
        self,
        ctx: RunContext,
        failed: DeploymentAttempt,
        options: DeployOptions,
        cancel: CancellationToken | None,
        remaining_budget: int,
    ) -> DeploymentAttempt:
        try:
            decision = self._selector.select_rollback(ctx.artifact.repository, ctx.artifact.tag)
        except ShipCtlError as e:
            failed.add_event("rollback_skipped", f"No automatic rollback: {e}", {"kind": e.kind})
            self._state.save(failed)
            logger.warning("Automatic rollback skipped", attempt=failed.id, reason=e.message)
            return failed

        failed.decision = decision
        if not (options.confirmed or (self._confirm is not None and self._confirm(decision))):
            failed.add_event("rollback_declined", f"Rollback to {decision.candidate_artifact.image} not confirmed")
            self._state.save(failed)
            logger.warning("Automatic rollback not confirmed", attempt=failed.id)
            return failed

        decision.confirm()
        return self._execute_rollback(ctx, failed, decision, options, cancel, remaining_budget)

    def _execute_rollback(
        self,
        ctx: RunContext,
        failed: DeploymentAttempt | None,
        decision: RollbackDecision,
        options: DeployOptions,
        cancel: CancellationToken | None,
        remaining_budget: int = 0,
    ) -> DeploymentAttempt:
        decision.mark_executed()
        if failed is not None:
            failed.transition(AttemptPhase.ROLLING_BACK)
            failed.add_event(
                "rolling_back",
                f"Rolling back to {decision.candidate_artifact.image}",
                decision.to_dict(),
            )
            self._state.save(failed)

        logger.info(
            "Rolling back",
            host=ctx.target.host,
            previous=decision.current_artifact.image,
            candidate=decision.candidate_artifact.image,
        )

        child: DeploymentAttempt | None = None
        try:
            child = self._run(
                ctx.with_artifact(decision.candidate_artifact),
                options,
                cancel,
                remaining_budget,
                rollback_of=failed,
                decision=decision,
            )
        except DeploymentError as e:
            child = e.attempt
            raise
        finally:
            if failed is not None and child is not None:
                failed.rollback_attempt_id = child.id
                self._state.save(failed)

        return child

    def running_artifact(
        self,
        target: DeploymentTarget,
        repository: str,
        cancel: CancellationToken | None = None,
    ) -> ArtifactReference | None:
        """Artifact of ``repository`` that a running container on ``target`` uses."""
        result = self._executor.run(
            target,
            f"docker ps --format {shquote(RUNNING_IMAGE_FORMAT)}",
            cancel=cancel,
        )
        if not result.ok:
            logger.warning("Could not list running containers", host=target.host, stderr=result.stderr.strip())
            return None

        for line in result.stdout.splitlines():
            try:
                running = ArtifactReference.parse(line.strip())
            except ValidationError:
                continue
            # docker may print the registry-qualified name (docker.io/acme/app)
            if running.repository == repository or running.repository.endswith(f"/{repository}"):
                return ArtifactReference(repository, running.tag)
        return None

    def current_tag(
        self,
        target: DeploymentTarget,
        repository: str,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Tag of ``repository`` live on ``target``, or None when unknown.

        The host is asked first. When no matching container runs, the last
        recorded attempt is used: a failed deploy still leaves its image in
        place, so that is the last attempted artifact, not the last healthy one.
        """
        running = self.running_artifact(target, repository, cancel)
        if running is not None:
            return running.tag

        latest = self._state.latest(target.key)
        if latest is not None and latest.artifact.repository == repository:
            return latest.artifact.tag
        return None

    def rollback(
        self,
        target: DeploymentTarget,
        repository: str,
        tag: str | None = None,
        confirmed: bool = False,
        options: DeployOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> tuple[RollbackDecision, DeploymentAttempt, RollbackSummary]:
        """Operator-initiated rollback to ``tag`` or the selector's candidate.

        Raises:
            NotFoundError: If an explicit ``tag`` is not published
            NoRollbackCandidateError: If no candidate exists
            ConfirmationDeclined: If not confirmed
        """
        options = options or self.default_options()
        current_tag = self.current_tag(target, repository, cancel)

        if tag:
            decision = self._selector.decision_for_tag(repository, current_tag, tag)
        else:
            decision = self._selector.select_rollback(repository, current_tag)

        if not (confirmed or (self._confirm is not None and self._confirm(decision))):
            raise ConfirmationDeclined(
                f"Rollback from {decision.current_artifact.image} to "
                f"{decision.candidate_artifact.image} was not confirmed"
            )
        decision.confirm()

        ctx = RunContext(target=target, artifact=decision.candidate_artifact)
        with self._leases.hold(target.key, ctx.run_id):
            previous = self._state.latest(target.key)
            failed = previous if previous is not None and previous.phase == AttemptPhase.FAILED else None
            attempt = self._execute_rollback(ctx, failed, decision, options, cancel)

        summary = self._selector.summarize(decision, attempt)
        self._notify_status(
            attempt,
            f"Rolled back {summary.previous} -> {summary.rolled_back_to}: {summary.health_outcome}",
        )
        return decision, attempt, summary

    def _notify_status(self, attempt: DeploymentAttempt, message: str) -> None:
        """Send status notification."""
        if self._notify:
            try:
                self._notify(attempt, message)
            except Exception as e:
                logger.warning("Notification failed", error=str(e))
