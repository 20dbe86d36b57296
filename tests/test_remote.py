"""Tests for the SSH executor."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from shipctl.clients.remote import SSHExecutor
from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import CancelledError, ConnectivityError, ExternalToolError
from shipctl.deploy.models import DeploymentTarget


def _process(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.communicate.return_value = (stdout, stderr)
    proc.returncode = returncode
    return proc


class TestBuildCommand:
    """Tests for ssh argv construction."""

    def test_defaults(self, target: DeploymentTarget):
        argv = SSHExecutor(connect_timeout=5).build_command(target, "docker ps")

        assert argv[0] == "ssh"
        assert "BatchMode=yes" in argv
        assert "ConnectTimeout=5" in argv
        assert argv[argv.index("-p") + 1] == "22"
        assert "-i" not in argv
        assert argv[-2:] == ["ubuntu@203.0.113.10", "docker ps"]

    def test_identity_file(self):
        target = DeploymentTarget(host="example.com", user="deploy", port=2222, identity_file="/keys/id")
        argv = SSHExecutor().build_command(target, "true")

        assert argv[argv.index("-i") + 1] == "/keys/id"
        assert argv[argv.index("-p") + 1] == "2222"
        assert argv[-2] == "deploy@example.com"


class TestRun:
    """Tests for SSHExecutor.run."""

    def test_success(self, target: DeploymentTarget):
        with patch("subprocess.Popen", return_value=_process("ok\n")) as popen:
            result = SSHExecutor().run(target, "echo ok")

        assert result.ok
        assert result.stdout == "ok\n"
        assert popen.call_args[0][0][-1] == "echo ok"

    def test_remote_failure_is_returned(self, target: DeploymentTarget):
        with patch("subprocess.Popen", return_value=_process(stderr="nope", returncode=3)):
            result = SSHExecutor().run(target, "false")

        assert not result.ok
        assert result.exit_code == 3

    def test_check_raises_on_failure(self, target: DeploymentTarget):
        with patch("subprocess.Popen", return_value=_process(stderr="pull denied", returncode=1)):
            with pytest.raises(ExternalToolError, match="pull denied"):
                SSHExecutor().check(target, "docker pull x")

    def test_ssh_failure_is_connectivity_error(self, target: DeploymentTarget):
        proc = _process(stderr="Connection refused", returncode=255)
        with patch("subprocess.Popen", return_value=proc):
            with pytest.raises(ConnectivityError, match="Connection refused"):
                SSHExecutor().run(target, "true")

    def test_probe_marks_unreachable(self, target: DeploymentTarget):
        with patch("subprocess.Popen", return_value=_process(returncode=255)):
            assert SSHExecutor().probe(target) is False

    def test_missing_ssh_binary(self, target: DeploymentTarget):
        with patch("subprocess.Popen", side_effect=FileNotFoundError):
            with pytest.raises(ExternalToolError, match="not found"):
                SSHExecutor(ssh_binary="missing-ssh").run(target, "true")

    def test_cancelled_before_start(self, target: DeploymentTarget):
        token = CancellationToken()
        token.cancel("stop")
        with patch("subprocess.Popen") as popen:
            with pytest.raises(CancelledError):
                SSHExecutor().run(target, "true", cancel=token)
        popen.assert_not_called()

    def test_cancel_kills_running_command(self, target: DeploymentTarget):
        token = CancellationToken()
        proc = MagicMock()
        proc.returncode = -9

        def communicate(timeout=None):
            if timeout is not None:
                token.cancel("operator interrupt")
                raise subprocess.TimeoutExpired("ssh", timeout)
            return ("", "")

        proc.communicate.side_effect = communicate
        with patch("subprocess.Popen", return_value=proc):
            with pytest.raises(CancelledError):
                SSHExecutor().run(target, "sleep 60", cancel=token)
        proc.kill.assert_called_once()
