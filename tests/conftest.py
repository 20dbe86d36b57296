"""Pytest fixtures for shipctl tests."""

import json
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generator

import httpx
import pytest
from click.testing import CliRunner

from shipctl.clients.registry import RegistryClient
from shipctl.clients.remote import CommandResult, Executor
from shipctl.config import (
    BackupConfig,
    DeployConfig,
    HealthConfig,
    ProfileConfig,
    RegistryConfig,
    ShipCtlConfig,
    TargetConfig,
)
from shipctl.core.cancellation import CancellationToken
from shipctl.core.exceptions import ConnectivityError
from shipctl.core.locking import TargetLeases
from shipctl.deploy.health import HealthVerifier
from shipctl.deploy.models import DeploymentTarget
from shipctl.deploy.rollback import RollbackSelector
from shipctl.deploy.state import DeploymentState

REPOSITORY = "acme/todo-api"


class FakeExecutor(Executor):
    """Scripted executor that records every command.

    Rules are matched by substring in the order they were added; unmatched
    commands succeed with empty output.
    """

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.commands: list[str] = []
        self._rules: list[tuple[str, Any]] = []

    def on(
        self,
        fragment: str,
        stdout: str = "",
        exit_code: int = 0,
        stderr: str = "",
        error: Exception | None = None,
        action: Callable[[str], None] | None = None,
    ) -> "FakeExecutor":
        self._rules.append((fragment, (stdout, exit_code, stderr, error, action)))
        return self

    def run(
        self,
        target: DeploymentTarget,
        command: str,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if command == "true":
            if not self.reachable:
                raise ConnectivityError(f"Cannot connect to {target.host}", host=target.host)
            return CommandResult(command, "", "", 0)

        self.commands.append(command)
        for fragment, (stdout, exit_code, stderr, error, action) in self._rules:
            if fragment in command:
                if action is not None:
                    action(command)
                if error is not None:
                    raise error
                return CommandResult(command, stdout, stderr, exit_code)
        return CommandResult(command, "", "", 0)

    def ran(self, fragment: str) -> bool:
        return any(fragment in c for c in self.commands)


class FakeMongoHost(Executor):
    """Simulates the docker/mongo commands issued by BackupManager.

    ``documents`` is the live collection size; archives remember the size
    at dump time so restore round-trips can be checked.
    """

    ARCHIVE = re.compile(r"/([A-Za-z0-9._-]+)\.tar\.gz")

    def __init__(self) -> None:
        self.documents = 0
        self.running = True
        self.archives: dict[str, dict[str, Any]] = {}
        self.fail_on: dict[str, int] = {}
        self.commands: list[str] = []
        self._dumps: dict[str, int] = {}
        self._extracted: dict[str, int] = {}

    def add_archive(self, name: str, age_days: float = 0, documents: int = 0, size: int = 2048) -> None:
        created = datetime.now(timezone.utc) - timedelta(days=age_days)
        self.archives[name] = {"documents": documents, "size": size, "mtime": created.timestamp()}

    def leftovers(self) -> list[str]:
        return sorted(self._dumps) + sorted(self._extracted)

    def run(
        self,
        target: DeploymentTarget,
        command: str,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.commands.append(command)

        for fragment, exit_code in self.fail_on.items():
            if fragment in command:
                return CommandResult(command, "", f"{fragment} failed", exit_code)

        def ok(stdout: str = "") -> CommandResult:
            return CommandResult(command, stdout, "", 0)

        def failed(stderr: str = "error") -> CommandResult:
            return CommandResult(command, "", stderr, 1)

        # script and crontab installation
        if command.startswith("printf ") or "crontab" in command:
            return ok()

        if command.startswith("docker inspect"):
            return ok("true\n") if self.running else failed("No such container")

        if command.startswith("test -e"):
            match = self.ARCHIVE.search(command)
            return ok() if match and match.group(1) in self.archives else failed("")

        if "mongodump" in command:
            name = re.search(r"--out /tmp/(\S+)", command).group(1)
            self._dumps[name] = self.documents
            return ok()

        if "tar -czf" in command:
            name = self.ARCHIVE.search(" /" + command.split("tar -czf ", 1)[1]).group(1)
            self.archives[name] = {
                "documents": self._dumps.get(name, 0),
                "size": 4096,
                "mtime": datetime.now(timezone.utc).timestamp(),
            }
            return ok()

        if command.startswith("stat -c"):
            match = self.ARCHIVE.search(command)
            if not match or match.group(1) not in self.archives:
                return failed("No such file or directory")
            archive = self.archives[match.group(1)]
            return ok(f"{archive['size']} {int(archive['mtime'])}\n")

        if "find " in command:
            lines = [
                f"{name}.tar.gz {a['size']} {a['mtime']:.6f}"
                for name, a in self.archives.items()
            ]
            return ok("\n".join(lines) + ("\n" if lines else ""))

        if "tar -xzf" in command:
            name = re.search(r"tar -xzf (\S+)\.tar\.gz", command).group(1)
            self._extracted[name] = self.archives[name]["documents"]
            return ok()

        if "dropDatabase" in command:
            self.documents = 0
            return ok()

        if "mongorestore" in command:
            name = re.search(r"/tmp/([^/\s]+)/", command).group(1)
            self.documents = self._extracted[name]
            return ok()

        if "ping" in command:
            return ok("1\n")

        if command.startswith("rm ") or " rm -rf /tmp/" in command:
            for name in self.ARCHIVE.findall(command):
                self.archives.pop(name, None)
            for name in re.findall(r"/tmp/([A-Za-z0-9._-]+)", command):
                self._dumps.pop(name, None)
            for name in re.findall(r"/([A-Za-z0-9._-]+)(?:\s|$)", command):
                if not name.endswith(".tar.gz"):
                    self._extracted.pop(name, None)
            return ok()

        return ok()


def registry_transport(tags: list[tuple[str, str | None]]) -> httpx.MockTransport:
    """Docker Hub style tag API serving ``tags`` as (name, last_updated)."""
    results = [{"name": name, "last_updated": updated} for name, updated in tags]
    names = {name for name, _ in tags}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/tags"):
            return httpx.Response(200, json={"count": len(results), "results": results})
        tag = path.rsplit("/", 1)[-1]
        if tag in names:
            return httpx.Response(200, json={"name": tag})
        return httpx.Response(404, json={"message": "tag not found"})

    return httpx.MockTransport(handler)


class HealthServer:
    """Health endpoint returning scripted bodies; the last one repeats."""

    def __init__(self, *responses: tuple[int, Any]):
        self.responses = list(responses) or [(200, {"status": "healthy", "database": {"status": "connected"}})]
        self.calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        status, body = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        if isinstance(body, (dict, list)):
            return httpx.Response(status, content=json.dumps(body).encode(), headers={"content-type": "application/json"})
        return httpx.Response(status, content=str(body).encode())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


HEALTHY = (200, {"status": "healthy", "database": {"status": "connected"}})
UNHEALTHY = (503, {"status": "unhealthy", "database": {"status": "disconnected"}})


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def target() -> DeploymentTarget:
    return DeploymentTarget(host="203.0.113.10", user="ubuntu")


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_host() -> FakeMongoHost:
    return FakeMongoHost()


@pytest.fixture
def state(tmp_path) -> DeploymentState:
    return DeploymentState(tmp_path / "attempts")


@pytest.fixture
def leases(tmp_path) -> TargetLeases:
    return TargetLeases(tmp_path / "leases")


@pytest.fixture
def profile() -> ProfileConfig:
    return ProfileConfig(
        target=TargetConfig(host="203.0.113.10", reachability_attempts=3),
        registry=RegistryConfig(namespace="acme", repository="todo-api"),
        health=HealthConfig(interval=15.0, max_attempts=20),
        deploy=DeployConfig(),
        backup=BackupConfig(),
    )


@pytest.fixture
def mock_config(profile: ProfileConfig) -> ShipCtlConfig:
    """Create a mock configuration."""
    return ShipCtlConfig(profiles={"default": profile})


@pytest.fixture
def sleeps() -> list[float]:
    return []


def make_verifier(server: HealthServer, sleeps: list[float] | None = None) -> HealthVerifier:
    recorded = sleeps if sleeps is not None else []
    return HealthVerifier(HealthConfig(), transport=server.transport, sleep=recorded.append)


def make_selector(tags: list[tuple[str, str | None]], aliases: tuple[str, ...] = ("latest",)) -> RollbackSelector:
    client = RegistryClient(RegistryConfig(namespace="acme"), transport=registry_transport(tags))
    return RollbackSelector(client, mutable_aliases=aliases)


@pytest.fixture(autouse=True)
def clean_env(tmp_path) -> Generator[None, None, None]:
    """Clean environment variables before each test."""
    env_vars = [
        "SHIPCTL_HOST",
        "SHIPCTL_USER",
        "SHIPCTL_IDENTITY_FILE",
        "SHIPCTL_REGISTRY_NAMESPACE",
        "SHIPCTL_REGISTRY_TOKEN",
        "SHIPCTL_REPOSITORY",
        "SHIPCTL_RETENTION_DAYS",
        "SHIPCTL_PROFILE",
        "SHIPCTL_CONFIG",
        "SERVER_HOST",
        "SERVER_USER",
        "DOCKER_USERNAME",
        "DOCKER_TOKEN",
        "APP_NAME",
        "APP_ENV",
        "BACKUP_DIR",
        "CONTAINER_NAME",
        "DB_NAME",
        "RETENTION_DAYS",
    ]

    original = {k: os.environ.get(k) for k in env_vars + ["SHIPCTL_CONFIG_DIR", "SHIPCTL_STATE_DIR"]}

    for k in env_vars:
        os.environ.pop(k, None)
    os.environ["SHIPCTL_CONFIG_DIR"] = str(tmp_path / "config")
    os.environ["SHIPCTL_STATE_DIR"] = str(tmp_path / "state")

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)
