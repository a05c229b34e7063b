"""Pytest configuration and fixtures for promoter tests."""

from __future__ import annotations

import itertools
import logging
import os
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from promoter.approval import EventApprovalGate
from promoter.controller import PromotionController
from promoter.driver.docker import DockerDriver
from promoter.driver.executor import CommandResult
from promoter.environment import ENVIRONMENT_LABEL, Environment
from promoter.health import HealthVerifier
from promoter.image import ImageReference
from promoter.locking import EnvironmentLocks
from promoter.observability.metrics import MetricsCollector
from promoter.rollback import RollbackManager
from promoter.state import DeploymentRecordStore

if TYPE_CHECKING:
    from collections.abc import Generator


# Keep tests independent of a developer's .env and shell
for _key in [k for k in os.environ if k.startswith("PROMOTER_")]:
    del os.environ[_key]

REGISTRY = "registry.example.com"


def docker_display_name(image: str) -> str:
    """Name as `docker ps` prints it: Docker Hub images lose their registry host."""
    for prefix in ("docker.io/library/", "docker.io/"):
        if image.startswith(prefix):
            return image[len(prefix) :]
    return image


class FakeDockerHost:
    """In-memory docker host that answers the commands DockerDriver issues.

    Attributes:
        containers: container id -> {"name", "image", "labels"}
        missing_images: images whose pull fails as if absent from the registry
        failing_runs: images whose ``docker run`` exits non-zero
        unreachable: every command fails like an ssh connection error
        health: callable returning the HTTP status curl reports, per environment port
        commands: every argv received, in order
    """

    target = "fake-host"

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.missing_images: set[str] = set()
        self.failing_runs: set[str] = set()
        self.unreachable = False
        self.health: Callable[[str], int] = lambda url: 200  # noqa: ARG005
        self.commands: list[tuple[str, ...]] = []
        self.pulled: list[str] = []
        self._ids = itertools.count(1)

    def running_image(self, environment: str) -> str | None:
        for container in self.containers.values():
            if container["labels"].get(ENVIRONMENT_LABEL) == environment:
                return container["image"]
        return None

    def start(self, environment: str, image: str, name: str | None = None) -> str:
        """Put a container in place without going through the driver."""
        container_id = f"c{next(self._ids):04d}"
        self.containers[container_id] = {
            "name": name or f"app-{environment}",
            "image": image,
            "labels": {ENVIRONMENT_LABEL: environment},
        }
        return container_id

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:  # noqa: ARG002
        argv = tuple(argv)
        self.commands.append(argv)

        if self.unreachable:
            return self._result(argv, 255, stderr="ssh: connect to host fake-host port 22: Connection refused")

        if argv[0] == "curl":
            return self._result(argv, 0, stdout=str(self.health(argv[-1])))

        command = argv[1]
        if command == "ps":
            environment = argv[argv.index("--filter") + 1].split("=", 2)[2]
            matching = {
                cid: c
                for cid, c in self.containers.items()
                if c["labels"].get(ENVIRONMENT_LABEL) == environment
            }
            if "-aq" in argv:
                return self._result(argv, 0, stdout="\n".join(matching))
            return self._result(argv, 0, stdout="\n".join(docker_display_name(c["image"]) for c in matching.values()))

        if command == "pull":
            image = argv[2]
            if image in self.missing_images:
                return self._result(argv, 1, stderr=f"Error response from daemon: manifest for {image} not found")
            self.pulled.append(image)
            return self._result(argv, 0, stdout=f"Status: Image is up to date for {image}")

        if command == "rm":
            for container_id in argv[3:]:
                if container_id not in self.containers:
                    return self._result(argv, 1, stderr=f"Error: No such container: {container_id}")
                del self.containers[container_id]
            return self._result(argv, 0, stdout="\n".join(argv[3:]))

        if command == "run":
            image = argv[-1]
            name = argv[argv.index("--name") + 1]
            label = argv[argv.index("--label") + 1]
            key, _, value = label.partition("=")
            if image in self.failing_runs:
                return self._result(argv, 125, stderr="docker: Error response from daemon: port is already allocated")
            if any(c["name"] == name for c in self.containers.values()):
                return self._result(argv, 125, stderr=f"Conflict. The container name {name} is already in use")
            container_id = f"c{next(self._ids):04d}"
            self.containers[container_id] = {"name": name, "image": image, "labels": {key: value}}
            return self._result(argv, 0, stdout=container_id)

        return self._result(argv, 1, stderr=f"unknown command {command}")

    @staticmethod
    def _result(argv: tuple[str, ...], code: int, stdout: str = "", stderr: str = "") -> CommandResult:
        return CommandResult(argv=argv, exit_code=code, stdout=stdout, stderr=stderr)


class HttpHealth:
    """Scripted HTTP health endpoint served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.statuses: list[int] = []
        self.default = 200
        self.requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        status = self.statuses.pop(0) if self.statuses else self.default
        if status == 0:
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(status, request=request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def image(tag: str, repository: str = "app") -> ImageReference:
    return ImageReference(registry=REGISTRY, repository=repository, tag=tag)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reset settings cache before each test."""
    from promoter.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def restore_root_logging() -> Generator[None, None, None]:
    """Undo configure_logging so later tests never write to a closed capture stream."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def make_image() -> Callable[..., ImageReference]:
    """Build image references in the test registry."""
    return image


@pytest.fixture
def docker_host() -> FakeDockerHost:
    """In-memory docker host shared by staging and production."""
    return FakeDockerHost()


@pytest.fixture
def http_health() -> HttpHealth:
    """Scripted staging health endpoint."""
    return HttpHealth()


@pytest.fixture
def staging_env() -> Environment:
    return Environment(
        name="staging",
        app_name="app",
        port=8081,
        container_port=8080,
        health_url="http://staging.example.com:8081/healthz",
        host="staging.example.com",
        ssh_user="deploy",
    )


@pytest.fixture
def production_env() -> Environment:
    return Environment(
        name="production",
        app_name="app",
        port=8080,
        container_port=8080,
        health_url="http://app.example.com/healthz",
        health_path="/healthz",
        host="prod.example.com",
        ssh_user="deploy",
        probe_from_host=True,
    )


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def driver(docker_host: FakeDockerHost) -> DockerDriver:
    return DockerDriver(lambda env: docker_host)  # noqa: ARG005


@pytest.fixture
def record_store(state_dir: Path) -> DeploymentRecordStore:
    return DeploymentRecordStore(state_dir)


@pytest.fixture
def rollback_manager(driver: DockerDriver, record_store: DeploymentRecordStore) -> RollbackManager:
    return RollbackManager(driver, record_store)


@pytest.fixture
def approval_gate() -> EventApprovalGate:
    return EventApprovalGate()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(namespace="test_promoter")


@pytest.fixture
def controller(
    staging_env: Environment,
    production_env: Environment,
    driver: DockerDriver,
    rollback_manager: RollbackManager,
    approval_gate: EventApprovalGate,
    state_dir: Path,
    http_health: HttpHealth,
    metrics: MetricsCollector,
) -> PromotionController:
    """Controller over the fake host with the default 30-attempt policy and no waiting."""
    return PromotionController(
        staging=staging_env,
        production=production_env,
        driver=driver,
        verifier=HealthVerifier(max_attempts=30, interval=0),
        approval_gate=approval_gate,
        rollback=rollback_manager,
        locks=EnvironmentLocks(state_dir),
        approval_timeout=0.2,
        metrics=metrics,
        http_client=http_health.client(),
    )


@pytest.fixture
def temp_env_vars() -> Generator[dict[str, str], None, None]:
    """Fixture to set temporary environment variables."""
    original_env = os.environ.copy()
    temp_vars: dict[str, str] = {}

    yield temp_vars

    os.environ.clear()
    os.environ.update(original_env)
