"""Command execution on a deployment host.

Container lifecycle commands run either against the local docker daemon
or on a remote host over ssh. Both transports return the raw exit code
and output; interpreting a non-zero exit is up to the caller.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from promoter.environment import Environment
from promoter.errors import ExecutionError
from promoter.observability.logging import get_logger


log = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 300.0
DEFAULT_SSH_OPTIONS = ("-o", "BatchMode=yes", "-o", "ConnectTimeout=10")


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command run on the target host."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandExecutor(Protocol):
    """Runs an argv on one target host."""

    target: str

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        """Run a command and return its result.

        Raises:
            ExecutionError: If the command could not be started or timed out.
        """
        ...


class LocalExecutor:
    """Runs commands on the controller's own host."""

    target = "local"

    def __init__(self, *, default_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> None:
        self.default_timeout = default_timeout

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        return await self._exec(tuple(argv), tuple(argv), timeout or self.default_timeout)

    async def _exec(
        self,
        argv: tuple[str, ...],
        spawn_argv: tuple[str, ...],
        timeout: float,
    ) -> CommandResult:
        log.debug("command_started", target=self.target, argv=list(argv))

        try:
            proc = await asyncio.create_subprocess_exec(
                *spawn_argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            msg = f"Failed to start {spawn_argv[0]!r}: {e}"
            raise ExecutionError(
                msg,
                phase="execute",
                details={"target": self.target, "argv": list(argv)},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            msg = f"Command timed out after {timeout}s"
            log.warning("command_timeout", target=self.target, argv=list(argv), timeout=timeout)
            raise ExecutionError(
                msg,
                phase="execute",
                details={"target": self.target, "argv": list(argv), "timeout_seconds": timeout},
            ) from e

        result = CommandResult(
            argv=argv,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=(stdout or b"").decode(errors="replace").strip(),
            stderr=(stderr or b"").decode(errors="replace").strip(),
        )
        log.debug(
            "command_finished",
            target=self.target,
            argv=list(argv),
            exit_code=result.exit_code,
        )
        return result


class SSHExecutor(LocalExecutor):
    """Runs commands on a remote host through ssh.

    Authentication is left to the ssh client configuration (agent, keys);
    BatchMode keeps a missing credential from blocking on a prompt.
    """

    def __init__(
        self,
        host: str,
        *,
        user: str | None = None,
        port: int = 22,
        ssh_options: Sequence[str] = DEFAULT_SSH_OPTIONS,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(default_timeout=default_timeout)
        self.host = host
        self.user = user
        self.port = port
        self.ssh_options = tuple(ssh_options)
        self.target = f"{user}@{host}" if user else host

    def build_argv(self, argv: Sequence[str]) -> tuple[str, ...]:
        """Wrap a command in the ssh invocation that runs it remotely."""
        ssh_argv: list[str] = ["ssh", *self.ssh_options]
        if self.port != 22:
            ssh_argv += ["-p", str(self.port)]
        ssh_argv += [self.target, shlex.join(argv)]
        return tuple(ssh_argv)

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        return await self._exec(tuple(argv), self.build_argv(argv), timeout or self.default_timeout)


def executor_for(
    env: Environment,
    *,
    ssh_options: Sequence[str] = DEFAULT_SSH_OPTIONS,
    default_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
) -> CommandExecutor:
    """Pick the executor that reaches an environment's host."""
    if env.host:
        return SSHExecutor(
            env.host,
            user=env.ssh_user,
            port=env.ssh_port,
            ssh_options=ssh_options,
            default_timeout=default_timeout,
        )
    return LocalExecutor(default_timeout=default_timeout)


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "LocalExecutor",
    "SSHExecutor",
    "executor_for",
]
