"""Deployment environment description."""

from __future__ import annotations

from dataclasses import dataclass


STAGING = "staging"
PRODUCTION = "production"

ENVIRONMENT_LABEL = "promoter.environment"


@dataclass(frozen=True)
class Environment:
    """A named deployment target with exactly one current deployment.

    Attributes:
        name: Environment name ("staging", "production", ...)
        app_name: Application name, used to name the container
        port: Host port the application is exposed on
        container_port: Port the application listens on inside the container
        health_url: Health endpoint as reachable from the controller
        health_path: Health path probed from the host itself
        host: Remote host (None = local docker daemon)
        ssh_user: SSH user for remote hosts
        ssh_port: SSH port for remote hosts
        probe_from_host: Probe health on the host against localhost instead
            of from the controller
    """

    name: str
    app_name: str
    port: int
    container_port: int
    health_url: str
    health_path: str = "/healthz"
    host: str | None = None
    ssh_user: str | None = None
    ssh_port: int = 22
    probe_from_host: bool = False

    @property
    def container_name(self) -> str:
        return f"{self.app_name}-{self.name}"

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    @property
    def local_health_url(self) -> str:
        """Health URL as seen from the deployment host."""
        path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
        return f"http://localhost:{self.port}{path}"

    @property
    def target(self) -> str:
        """Human-readable execution target for logs."""
        if not self.host:
            return "local"
        return f"{self.ssh_user}@{self.host}" if self.ssh_user else self.host


__all__ = ["ENVIRONMENT_LABEL", "PRODUCTION", "STAGING", "Environment"]
