"""Promoter Settings configuration.

Uses Pydantic Settings for type-safe configuration management
with support for environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from promoter.environment import PRODUCTION, STAGING, Environment
from promoter.version import __version__


class EnvironmentSettings(BaseSettings):
    """Target host and health endpoints for one environment."""

    model_config = SettingsConfigDict(extra="ignore")

    host: str | None = Field(
        default=None,
        description="Remote host reached over SSH (None = local docker daemon)",
    )
    ssh_user: str | None = Field(
        default=None,
        description="SSH user for the remote host",
    )
    ssh_port: int = Field(
        default=22,
        ge=1,
        le=65535,
        description="SSH port for the remote host",
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Host port the application is exposed on",
    )
    container_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port the application listens on inside the container",
    )
    health_url: str = Field(
        default="http://localhost:8080/healthz",
        description="Health endpoint as reachable from the controller",
    )
    health_path: str = Field(
        default="/healthz",
        description="Health path probed on the deployment host against localhost",
    )
    probe_from_host: bool = Field(
        default=False,
        description="Run the health probe on the deployment host instead of the controller",
    )

    def to_environment(self, name: str, app_name: str) -> Environment:
        """Build the runtime environment description."""
        return Environment(
            name=name,
            app_name=app_name,
            port=self.port,
            container_port=self.container_port,
            health_url=self.health_url,
            health_path=self.health_path,
            host=self.host,
            ssh_user=self.ssh_user,
            ssh_port=self.ssh_port,
            probe_from_host=self.probe_from_host,
        )


class StagingSettings(EnvironmentSettings):
    """Staging environment configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_STAGING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ProductionSettings(EnvironmentSettings):
    """Production environment configuration.

    Production health is probed from the host itself by default, so that
    an external network partition is not mistaken for an unhealthy release.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_PRODUCTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    probe_from_host: bool = Field(
        default=True,
        description="Run the health probe on the deployment host instead of the controller",
    )


class HealthCheckSettings(BaseSettings):
    """Health verification policy."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_HEALTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_attempts: int = Field(
        default=30,
        ge=1,
        description="Maximum number of health probes before giving up",
    )
    interval_seconds: float = Field(
        default=3.0,
        ge=0.0,
        description="Fixed wait between failed probes",
    )
    request_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Timeout for a single probe",
    )


class ApprovalSettings(BaseSettings):
    """Production approval gate configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_APPROVAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    timeout_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="How long to wait for an approval signal",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="How often the file channel is checked for a signal",
    )


class ExecutorSettings(BaseSettings):
    """Command execution configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_EXECUTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    command_timeout_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Timeout for a single container lifecycle command",
    )
    ssh_options: list[str] = Field(
        default_factory=lambda: ["-o", "BatchMode=yes", "-o", "ConnectTimeout=10"],
        description="Extra options passed to ssh",
    )


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_OBSERVABILITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log output format",
    )
    metrics_textfile: Path | None = Field(
        default=None,
        description="Write Prometheus metrics to this file at the end of a run",
    )


class Settings(BaseSettings):
    """Main promoter configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    version: str = Field(default=__version__)
    app_name: str = Field(
        default="app",
        min_length=1,
        description="Application name, used to name containers",
    )
    registry: str | None = Field(
        default=None,
        description="Default registry host for image references without one",
    )
    state_dir: Path = Field(
        default=Path(".promoter"),
        description="Directory for deployment records, locks and approval signals",
    )
    deploy_to_production: bool = Field(
        default=False,
        description="Continue to production after a healthy staging deploy",
    )

    # Nested settings
    staging: StagingSettings = Field(default_factory=StagingSettings)
    production: ProductionSettings = Field(default_factory=ProductionSettings)
    health: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    def environment(self, name: str) -> Environment:
        """Resolve a configured environment by name.

        Raises:
            KeyError: If the environment is not configured.
        """
        if name == STAGING:
            return self.staging.to_environment(STAGING, self.app_name)
        if name == PRODUCTION:
            return self.production.to_environment(PRODUCTION, self.app_name)
        msg = f"Unknown environment: {name}"
        raise KeyError(msg)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def reload_settings() -> Settings:
    """Force reload settings (clears cache).

    Returns:
        Settings: Fresh settings instance.
    """
    get_settings.cache_clear()
    return get_settings()
