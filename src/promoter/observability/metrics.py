"""Prometheus metrics for promoter.

Promotion runs are short-lived batch jobs, so metrics live in a
dedicated registry that the CLI writes out as a node-exporter
textfile at the end of a run.
"""

from __future__ import annotations

from pathlib import Path

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, write_to_textfile


class MetricsCollector:
    """Prometheus metrics collector for promotion runs.

    Provides metrics for:
    - Promotion outcomes
    - Health probe results
    - Rollbacks
    - Deploy durations
    """

    def __init__(
        self,
        namespace: str = "promoter",
        registry: CollectorRegistry | None = None,
    ) -> None:
        """Initialize metrics.

        Args:
            namespace: Prometheus namespace prefix for all metrics.
            registry: Registry to register into (a fresh one by default).
        """
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()

        self.info = Info(
            f"{namespace}_build",
            "Promoter build information",
            registry=self.registry,
        )

        self.promotions_total = Counter(
            f"{namespace}_promotions_total",
            "Total promotion runs by terminal outcome",
            ["environment", "outcome", "reason"],
            registry=self.registry,
        )

        self.health_probes_total = Counter(
            f"{namespace}_health_probes_total",
            "Total health probes issued",
            ["environment", "result"],  # result: healthy/unhealthy
            registry=self.registry,
        )

        self.rollbacks_total = Counter(
            f"{namespace}_rollbacks_total",
            "Total rollbacks attempted",
            ["environment", "outcome"],  # outcome: restored/no_prior_image/failed
            registry=self.registry,
        )

        self.deploy_duration = Histogram(
            f"{namespace}_deploy_duration_seconds",
            "Time spent deploying an image to an environment",
            ["environment", "status"],
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
            registry=self.registry,
        )

    def set_build_info(self, version: str) -> None:
        """Set build information."""
        self.info.info({"version": version})

    def record_promotion(self, environment: str, outcome: str, reason: str | None) -> None:
        """Record a finished promotion run."""
        self.promotions_total.labels(
            environment=environment,
            outcome=outcome,
            reason=reason or "",
        ).inc()

    def record_health_probe(self, environment: str, *, healthy: bool) -> None:
        """Record a single health probe."""
        self.health_probes_total.labels(
            environment=environment,
            result="healthy" if healthy else "unhealthy",
        ).inc()

    def record_rollback(self, environment: str, outcome: str) -> None:
        """Record a rollback attempt."""
        self.rollbacks_total.labels(environment=environment, outcome=outcome).inc()

    def record_deploy(self, environment: str, status: str, duration_seconds: float) -> None:
        """Record a deploy duration."""
        self.deploy_duration.labels(environment=environment, status=status).observe(
            duration_seconds
        )

    def write_textfile(self, path: Path) -> None:
        """Write all metrics in the Prometheus text format."""
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
