"""Remote execution adapter: run commands on a target over SSH."""

from __future__ import annotations

import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import CancelledError, ConnectivityError, ExternalToolError
from shipctl.core.logging import StructuredLogger
from shipctl.core.utils import truncate_string

if TYPE_CHECKING:
    from shipctl.deploy.models import DeploymentTarget

logger = StructuredLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Executor(ABC):
    """Contract for running opaque shell commands on a target.

    Orchestration code depends only on this interface so it can be driven by
    a scripted fake in tests.
    """

    @abstractmethod
    def run(
        self,
        target: DeploymentTarget,
        command: str,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        """Run ``command`` on ``target`` and return its result.

        Raises:
            ConnectivityError: If the target cannot be reached at all
            CancelledError: If ``cancel`` fires while the command runs
        """

    def check(
        self,
        target: DeploymentTarget,
        command: str,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Run ``command`` and return stdout, raising on a non-zero exit."""
        result = self.run(target, command, timeout=timeout, cancel=cancel)
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip() or "no output"
            raise ExternalToolError(
                f"Command failed on {target.host} (exit {result.exit_code}): {detail}",
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result.stdout

    def probe(
        self,
        target: DeploymentTarget,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """Check that an authenticated no-op command succeeds on ``target``."""
        try:
            result = self.run(target, "true", cancel=cancel)
        except ConnectivityError:
            target.mark_reachable(False)
            return False
        target.mark_reachable(result.ok)
        return result.ok


class SSHExecutor(Executor):
    """Key-authenticated, non-interactive SSH executor."""

    # ssh reports its own connection and authentication failures as 255
    SSH_FAILURE_EXIT = 255
    POLL_INTERVAL = 0.2

    def __init__(
        self,
        connect_timeout: int = 10,
        ssh_binary: str = "ssh",
        extra_options: list[str] | None = None,
    ):
        self._connect_timeout = connect_timeout
        self._ssh_binary = ssh_binary
        self._extra_options = extra_options or []

    def build_command(self, target: DeploymentTarget, command: str) -> list[str]:
        """Build the ssh argv for ``command``."""
        argv = [
            self._ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(target.port),
        ]
        if target.identity_file:
            argv += ["-i", target.identity_file]
        argv += self._extra_options
        argv += [f"{target.user}@{target.host}", command]
        return argv

    def run(
        self,
        target: DeploymentTarget,
        command: str,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        argv = self.build_command(target, command)
        logger.debug("Running remote command", host=target.host, command=truncate_string(command, 80))

        if cancel is not None:
            cancel.raise_if_cancelled()

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            raise ExternalToolError(
                f"{self._ssh_binary} command not found. Please install an OpenSSH client.",
                command=command,
            )

        stdout, stderr = self._communicate(proc, command, timeout, cancel)

        if proc.returncode == self.SSH_FAILURE_EXIT:
            raise ConnectivityError(
                f"Cannot connect to {target.user}@{target.host} via SSH: {stderr.strip() or 'connection failed'}",
                host=target.host,
            )

        return CommandResult(
            command=command,
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
        )

    def _communicate(
        self,
        proc: subprocess.Popen,
        command: str,
        timeout: float | None,
        cancel: CancellationToken | None,
    ) -> tuple[str, str]:
        """Wait for ``proc`` while honouring the timeout and cancellation."""
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            try:
                return proc.communicate(timeout=self.POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    proc.kill()
                    proc.communicate()
                    raise CancelledError(cancel.reason or "Remote command cancelled")
                if deadline is not None and time.monotonic() > deadline:
                    proc.kill()
                    proc.communicate()
                    raise ExternalToolError(
                        f"Remote command timed out after {timeout}s",
                        command=command,
                    )
