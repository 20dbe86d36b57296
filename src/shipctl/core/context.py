"""Click context object for sharing state across commands."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click
from rich.markup import escape

from shipctl.config import ShipCtlConfig, ProfileConfig, get_default_config
from shipctl.core.exceptions import ConfigError, ShipCtlError
from shipctl.core.output import OutputFormat, OutputFormatter
from shipctl.core.logging import LogLevel, setup_logging, StructuredLogger
from shipctl.core.utils import get_state_dir

if TYPE_CHECKING:
    from shipctl.backup.manager import BackupManager
    from shipctl.clients.registry import RegistryClient
    from shipctl.clients.remote import Executor
    from shipctl.core.locking import TargetLeases
    from shipctl.deploy.controller import DeploymentController
    from shipctl.deploy.health import HealthVerifier
    from shipctl.deploy.models import DeploymentAttempt, DeploymentTarget, RollbackDecision
    from shipctl.deploy.rollback import RollbackSelector
    from shipctl.deploy.state import DeploymentState


class ShipCtlContext:
    """Shared context object for shipctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, clients, and the orchestration services.
    """

    def __init__(
        self,
        config: ShipCtlConfig | None = None,
        profile: str | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        # Load or use provided config
        self._config = config or get_default_config()
        self._profile_name = profile or "default"

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run
        self._color = color

        # Determine log level from verbosity
        if verbose >= 2:
            log_level = LogLevel.DEBUG
        elif verbose >= 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = self._config.global_settings.verbosity

        setup_logging(log_level, rich_output=color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        # Lazy-loaded services
        self._executor: Executor | None = None
        self._registry: RegistryClient | None = None
        self._verifier: HealthVerifier | None = None
        self._state: DeploymentState | None = None
        self._leases: TargetLeases | None = None

    @property
    def config(self) -> ShipCtlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def profile(self) -> ProfileConfig:
        """Get the current profile configuration."""
        return self._config.get_profile(self._profile_name)

    @property
    def profile_name(self) -> str:
        """Get the current profile name."""
        return self._profile_name

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        """Get the output format."""
        return self._output_format

    @property
    def dry_run(self) -> bool:
        """Check if dry-run mode is enabled."""
        return self._dry_run

    @property
    def verbose(self) -> int:
        """Get verbosity level."""
        return self._verbose

    @property
    def quiet(self) -> bool:
        """Check if quiet mode is enabled."""
        return self._quiet

    @property
    def logger(self) -> StructuredLogger:
        """Get the context logger."""
        return self._logger

    @property
    def state_dir(self) -> Path:
        configured = self.profile.deploy.state_dir
        return Path(configured).expanduser() if configured else get_state_dir()

    @property
    def executor(self) -> "Executor":
        """Get or create the SSH executor."""
        if self._executor is None:
            from shipctl.clients.remote import SSHExecutor

            self._executor = SSHExecutor(connect_timeout=self.profile.target.connect_timeout)
        return self._executor

    @property
    def registry(self) -> "RegistryClient":
        """Get or create the registry client."""
        if self._registry is None:
            from shipctl.clients.registry import RegistryClient

            self._registry = RegistryClient(self.profile.registry)
        return self._registry

    @property
    def verifier(self) -> "HealthVerifier":
        """Get or create the health verifier."""
        if self._verifier is None:
            from shipctl.deploy.health import HealthVerifier

            self._verifier = HealthVerifier(self.profile.health)
        return self._verifier

    @property
    def state(self) -> "DeploymentState":
        """Get or create the attempt store."""
        if self._state is None:
            from shipctl.deploy.state import DeploymentState

            self._state = DeploymentState(self.state_dir / "attempts")
        return self._state

    @property
    def leases(self) -> "TargetLeases":
        """Get or create the per-target leases."""
        if self._leases is None:
            from shipctl.core.locking import TargetLeases

            self._leases = TargetLeases(self.state_dir / "leases")
        return self._leases

    @property
    def selector(self) -> "RollbackSelector":
        from shipctl.deploy.rollback import RollbackSelector

        return RollbackSelector(
            self.registry,
            mutable_aliases=self.profile.registry.mutable_aliases,
            page_size=self.profile.registry.page_size,
        )

    def backups(self, backup_dir: str | None = None) -> "BackupManager":
        """Backup manager, optionally for a non-default backup directory."""
        from shipctl.backup.manager import BackupManager

        return BackupManager(
            self.executor,
            self.profile.backup,
            leases=self.leases,
            backup_dir=backup_dir,
        )

    def controller(self, interactive: bool = True) -> "DeploymentController":
        """Deployment controller wired to this context's services.

        When ``interactive`` is set, automatic rollbacks are confirmed by
        prompting the operator.
        """
        from shipctl.deploy.controller import DeploymentController

        def confirm_rollback(decision: "RollbackDecision") -> bool:
            return self.confirm(
                f"Roll back {decision.current_artifact.image} to {decision.candidate_artifact.image}?"
            )

        def notify(attempt: "DeploymentAttempt", message: str) -> None:
            self.logger.info(message, attempt=attempt.id, outcome=attempt.phase.value)

        return DeploymentController(
            executor=self.executor,
            verifier=self.verifier,
            selector=self.selector,
            state=self.state,
            config=self.profile,
            leases=self.leases,
            backups=self.backups(),
            confirm_callback=confirm_rollback if interactive else None,
            notify_callback=notify,
        )

    def target(self, host: str | None = None, user: str | None = None) -> "DeploymentTarget":
        """Build the deployment target from CLI overrides and config."""
        from shipctl.deploy.models import DeploymentTarget

        settings = self.profile.target
        resolved = host or settings.get_host()
        if not resolved:
            raise ConfigError("No target host given. Use --host or set SHIPCTL_HOST / SERVER_HOST.")

        return DeploymentTarget(
            host=resolved,
            user=user or settings.get_user(),
            port=settings.port,
            identity_file=settings.get_identity_file(),
        )

    def repository(self, namespace: str | None = None) -> str:
        return self.profile.registry.full_repository(namespace)

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation.

        In dry-run mode, always returns True without prompting.
        """
        if self._dry_run:
            self._output.print(f"[dim]{escape(f'[dry-run] Would prompt: {message}')}[/dim]")
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Log a dry-run action."""
        if self._dry_run:
            msg = f"[dry-run] {action}"
            if details:
                detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
                msg = f"{msg} ({detail_str})"
            self._output.print(f"[dim]{escape(msg)}[/dim]")

    def fail(self, error: ShipCtlError) -> NoReturn:
        """Report ``error`` as ``Kind: detail`` on stderr and exit non-zero."""
        self._output.print_failure(error.kind, error.message)
        raise click.Abort()

    def close(self) -> None:
        if self._registry is not None:
            self._registry.close()
        if self._verifier is not None:
            self._verifier.close()


# Click decorator for passing context
pass_context = click.make_pass_decorator(ShipCtlContext, ensure=True)
