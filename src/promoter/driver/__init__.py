"""Environment drivers.

Container lifecycle operations against local or remote deployment hosts.
"""

from promoter.driver.docker import DockerDriver
from promoter.driver.executor import (
    CommandExecutor,
    CommandResult,
    LocalExecutor,
    SSHExecutor,
    executor_for,
)

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "DockerDriver",
    "LocalExecutor",
    "SSHExecutor",
    "executor_for",
]
