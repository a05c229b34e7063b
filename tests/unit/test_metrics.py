"""Unit tests for Prometheus metrics."""

from __future__ import annotations

from promoter.observability.metrics import MetricsCollector


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_collectors_use_private_registries(self) -> None:
        first = MetricsCollector(namespace="test_promoter")
        second = MetricsCollector(namespace="test_promoter")

        first.record_rollback("production", "restored")

        assert first.registry is not second.registry
        assert second.registry.get_sample_value(
            "test_promoter_rollbacks_total",
            {"environment": "production", "outcome": "restored"},
        ) is None

    def test_set_build_info(self) -> None:
        collector = MetricsCollector(namespace="test_build")

        collector.set_build_info(version="0.1.0")

        assert collector.registry.get_sample_value("test_build_build_info", {"version": "0.1.0"}) == 1.0

    def test_record_promotion(self) -> None:
        collector = MetricsCollector(namespace="test_promotion")

        collector.record_promotion("production", "rolled_back", "production_unhealthy")
        collector.record_promotion("production", "promoted", None)

        assert collector.registry.get_sample_value(
            "test_promotion_promotions_total",
            {"environment": "production", "outcome": "rolled_back", "reason": "production_unhealthy"},
        ) == 1.0
        assert collector.registry.get_sample_value(
            "test_promotion_promotions_total",
            {"environment": "production", "outcome": "promoted", "reason": ""},
        ) == 1.0

    def test_record_health_probe(self) -> None:
        collector = MetricsCollector(namespace="test_probe")

        collector.record_health_probe("staging", healthy=False)
        collector.record_health_probe("staging", healthy=False)
        collector.record_health_probe("staging", healthy=True)

        assert collector.registry.get_sample_value(
            "test_probe_health_probes_total",
            {"environment": "staging", "result": "unhealthy"},
        ) == 2.0

    def test_record_deploy(self) -> None:
        collector = MetricsCollector(namespace="test_deploy")

        collector.record_deploy("staging", "succeeded", 4.2)

        assert collector.registry.get_sample_value(
            "test_deploy_deploy_duration_seconds_count",
            {"environment": "staging", "status": "succeeded"},
        ) == 1.0

    def test_write_textfile(self, tmp_path) -> None:
        collector = MetricsCollector(namespace="test_textfile")
        collector.record_promotion("staging", "staged", None)
        path = tmp_path / "textfile" / "promoter.prom"

        collector.write_textfile(path)

        content = path.read_text(encoding="utf-8")
        assert "test_textfile_promotions_total" in content
        assert 'outcome="staged"' in content
