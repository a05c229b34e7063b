"""Docker environment driver.

Executes container lifecycle operations (pull, inspect-current,
stop/remove, run) against the host of one environment. The container
owning an environment is found by label, so inspection and removal do
not depend on container names.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

from promoter.driver.executor import CommandExecutor, CommandResult, executor_for
from promoter.environment import ENVIRONMENT_LABEL, Environment
from promoter.errors import DeployError, ExecutionError, PullError
from promoter.image import ImageReference
from promoter.observability.logging import get_logger


log = get_logger(__name__)

ExecutorFactory = Callable[[Environment], CommandExecutor]

# docker reports images pulled from Docker Hub without their registry host
DOCKER_HUB_REGISTRY = "docker.io"


class DockerDriver:
    """Container lifecycle operations for deployment environments.

    One executor is created per environment, on first use, from
    ``executor_factory`` (local docker or ssh by default). Image names
    reported without a registry host resolve against ``default_registry``.
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory = executor_for,
        *,
        docker_binary: str = "docker",
        restart_policy: str = "unless-stopped",
        default_registry: str = DOCKER_HUB_REGISTRY,
    ) -> None:
        self._executor_factory = executor_factory
        self._executors: dict[str, CommandExecutor] = {}
        self.docker_binary = docker_binary
        self.restart_policy = restart_policy
        self.default_registry = default_registry

    def executor(self, env: Environment) -> CommandExecutor:
        """Executor reaching the environment's host."""
        if env.name not in self._executors:
            self._executors[env.name] = self._executor_factory(env)
        return self._executors[env.name]

    async def current_image(self, env: Environment) -> ImageReference | None:
        """Inspect the image of the container currently owning the environment.

        Returns:
            The running image, or None when nothing was ever deployed.

        Raises:
            DeployError: If the host cannot be inspected.
        """
        result = await self._docker(
            env,
            "ps",
            "-a",
            "--filter",
            f"label={ENVIRONMENT_LABEL}={env.name}",
            "--format",
            "{{.Image}}",
            phase="inspect",
        )
        images = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not images:
            return None
        if len(images) > 1:
            log.warning("multiple_containers_for_environment", environment=env.name, images=images)

        try:
            reference = ImageReference.parse(images[0], default_registry=self.default_registry)
        except ValueError as e:
            msg = f"Running container reports an unrecognised image: {images[0]!r}"
            raise DeployError(
                msg,
                phase="inspect",
                details={"environment": env.name, "image": images[0]},
            ) from e

        # Official images live under library/ but are reported without it
        if reference.registry == DOCKER_HUB_REGISTRY and "/" not in reference.repository:
            return ImageReference(
                registry=reference.registry,
                repository=f"library/{reference.repository}",
                tag=reference.tag,
            )
        return reference

    async def deploy(self, env: Environment, image: ImageReference) -> None:
        """Pull the image and replace the environment's container with it.

        Raises:
            PullError: If the image cannot be pulled.
            DeployError: If the old container cannot be removed or the new
                one cannot be started.
        """
        started = time.monotonic()
        log.info("deploy_started", environment=env.name, image=str(image), target=env.target)

        pull = await self._docker(env, "pull", str(image), phase="pull", check=False)
        if not pull.ok:
            msg = f"Failed to pull {image}: {pull.stderr or 'exit code ' + str(pull.exit_code)}"
            log.error("image_pull_failed", environment=env.name, image=str(image))
            raise PullError(
                msg,
                phase="pull",
                details=self._details(env, pull),
            )

        await self.remove(env)

        await self._docker(
            env,
            "run",
            "-d",
            "--name",
            env.container_name,
            "--label",
            f"{ENVIRONMENT_LABEL}={env.name}",
            "--restart",
            self.restart_policy,
            "-p",
            f"{env.port}:{env.container_port}",
            str(image),
            phase="run",
        )

        log.info(
            "deploy_completed",
            environment=env.name,
            image=str(image),
            duration_seconds=round(time.monotonic() - started, 3),
        )

    async def remove(self, env: Environment) -> None:
        """Stop and remove the environment's container; no-op when absent.

        Raises:
            DeployError: If the container cannot be removed.
        """
        listing = await self._docker(
            env,
            "ps",
            "-aq",
            "--filter",
            f"label={ENVIRONMENT_LABEL}={env.name}",
            phase="remove",
        )
        container_ids = [line.strip() for line in listing.stdout.splitlines() if line.strip()]
        if not container_ids:
            log.debug("no_container_to_remove", environment=env.name)
            return

        await self._docker(env, "rm", "-f", *container_ids, phase="remove")
        log.info("container_removed", environment=env.name, containers=container_ids)

    async def _docker(
        self,
        env: Environment,
        *args: str,
        phase: str,
        check: bool = True,
    ) -> CommandResult:
        argv: Sequence[str] = (self.docker_binary, *args)
        try:
            result = await self.executor(env).run(argv)
        except ExecutionError as e:
            raise DeployError(
                f"{phase} on {env.target} failed: {e.message}",
                phase=phase,
                details={"environment": env.name, **e.details},
            ) from e

        if check and not result.ok:
            msg = f"{phase} on {env.target} failed: {result.stderr or 'exit code ' + str(result.exit_code)}"
            raise DeployError(msg, phase=phase, details=self._details(env, result))
        return result

    @staticmethod
    def _details(env: Environment, result: CommandResult) -> dict[str, object]:
        return {
            "environment": env.name,
            "argv": list(result.argv),
            "exit_code": result.exit_code,
            "stderr": result.stderr,
        }


__all__ = ["DOCKER_HUB_REGISTRY", "DockerDriver", "ExecutorFactory"]
