"""Unit tests for the promotion controller."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from promoter.controller import (
    PromotionOutcome,
    PromotionReport,
    PromotionState,
    RollbackReport,
)
from promoter.errors import DeployError, FailureReason
from promoter.health import HostCommandProbe, HttpProbe


def states(report: PromotionReport) -> list[PromotionState]:
    return [t.state for t in report.transitions]


class TestProbeSelection:
    def test_production_is_probed_from_host(self, controller, production_env) -> None:
        probe = controller.probe_for(production_env)

        assert isinstance(probe, HostCommandProbe)
        assert probe.url == "http://localhost:8080/healthz"

    def test_staging_is_probed_from_controller(self, controller, staging_env) -> None:
        probe = controller.probe_for(staging_env)

        assert isinstance(probe, HttpProbe)
        assert probe.url == "http://staging.example.com:8081/healthz"


class TestStagingOnly:
    """Promotions that stop after staging verification."""

    @pytest.mark.asyncio
    async def test_staged(self, controller, docker_host, make_image) -> None:
        report = await controller.promote(make_image("abc123"))

        assert report.outcome == PromotionOutcome.STAGED
        assert report.exit_code == 0
        assert report.final_state == PromotionState.STAGING_HEALTHY
        assert states(report) == [PromotionState.STAGING_DEPLOYED, PromotionState.STAGING_HEALTHY]
        assert report.environments == {"staging": "registry.example.com/app:abc123"}
        assert report.attempts == {"staging": 1}
        assert docker_host.running_image("production") is None

    @pytest.mark.asyncio
    async def test_mutable_tag_rejected_before_any_command(self, controller, docker_host, make_image) -> None:
        report = await controller.promote(make_image("latest"), to_production=True)

        assert report.outcome == PromotionOutcome.FAILED
        assert report.reason == FailureReason.MUTABLE_TAG
        assert report.error["code"] == "mutable_tag"
        assert docker_host.commands == []

    @pytest.mark.asyncio
    async def test_staging_pull_error(self, controller, docker_host, make_image) -> None:
        docker_host.missing_images.add("registry.example.com/app:abc123")

        report = await controller.promote(make_image("abc123"), to_production=True)

        assert report.outcome == PromotionOutcome.FAILED
        assert report.reason == FailureReason.PULL_ERROR
        assert report.error["phase"] == "pull"
        assert report.environments == {"staging": None}

    @pytest.mark.asyncio
    async def test_staging_unhealthy_is_not_rolled_back(
        self, controller, docker_host, http_health, make_image
    ) -> None:
        docker_host.start("staging", "registry.example.com/app:old1")
        http_health.default = 500

        report = await controller.promote(make_image("abc123"), to_production=True)

        assert report.outcome == PromotionOutcome.FAILED
        assert report.reason == FailureReason.STAGING_UNHEALTHY
        assert report.attempts == {"staging": 30}
        assert http_health.requests == 30
        # Staging keeps the failed candidate; production never touched
        assert report.environments == {"staging": "registry.example.com/app:abc123"}
        assert not any(argv[:2] == ("docker", "pull") and "old1" in argv[2] for argv in docker_host.commands)


class TestLocking:
    @pytest.mark.asyncio
    async def test_locked_environment_rejects_run(self, controller, state_dir, docker_host, make_image) -> None:
        state_dir.mkdir(parents=True)
        (state_dir / "production.lock").write_text('{"run_id": "other"}', encoding="utf-8")

        report = await controller.promote(make_image("abc123"), to_production=True)

        assert report.outcome == PromotionOutcome.FAILED
        assert report.reason == FailureReason.ENVIRONMENT_LOCKED
        assert docker_host.commands == []

    @pytest.mark.asyncio
    async def test_locks_released_after_run(self, controller, make_image) -> None:
        await controller.promote(make_image("abc123"))

        assert not controller.locks.is_locked("staging")
        assert not controller.locks.is_locked("production")


class TestMetrics:
    @pytest.mark.asyncio
    async def test_promotion_outcome_is_counted(self, controller, metrics, make_image) -> None:
        await controller.promote(make_image("abc123"))

        value = metrics.registry.get_sample_value(
            "test_promoter_promotions_total",
            {"environment": "staging", "outcome": "staged", "reason": ""},
        )
        assert value == 1.0
        probes = metrics.registry.get_sample_value(
            "test_promoter_health_probes_total",
            {"environment": "staging", "result": "healthy"},
        )
        assert probes == 1.0


class TestManualRollback:
    """Operator-initiated restores."""

    @pytest.mark.asyncio
    async def test_rollback_restores_previous(
        self, controller, approval_gate, docker_host, production_env, make_image
    ) -> None:
        docker_host.start("production", "registry.example.com/app:old1")
        approval_gate.approve("alice")
        await controller.promote(make_image("new2"), to_production=True)

        report = await controller.rollback_environment(production_env)

        assert isinstance(report, RollbackReport)
        assert report.restore == "restored"
        assert report.restored_to == "registry.example.com/app:old1"
        assert report.running == "registry.example.com/app:old1"
        assert report.exit_code == 0

    @pytest.mark.asyncio
    async def test_nothing_recorded_leaves_environment_alone(
        self, controller, docker_host, production_env
    ) -> None:
        docker_host.start("production", "registry.example.com/app:manual")

        report = await controller.rollback_environment(production_env)

        assert report.restore == "no_prior_image"
        assert report.running == "registry.example.com/app:manual"
        assert docker_host.running_image("production") == "registry.example.com/app:manual"

    @pytest.mark.asyncio
    async def test_failed_restore_is_reported(
        self, controller, approval_gate, docker_host, production_env, make_image
    ) -> None:
        docker_host.start("production", "registry.example.com/app:old1")
        approval_gate.approve("alice")
        await controller.promote(make_image("new2"), to_production=True)
        docker_host.missing_images.add("registry.example.com/app:old1")

        report = await controller.rollback_environment(production_env)

        assert report.restore == "failed"
        assert report.exit_code == 3
        assert report.error["code"] == "pull_error"


class TestReport:
    @pytest.mark.asyncio
    async def test_inspection_failure_is_reported_not_raised(self, controller, make_image) -> None:
        with patch.object(
            controller.driver,
            "current_image",
            AsyncMock(side_effect=[None, DeployError("ssh: connection reset")]),
        ):
            report = await controller.promote(make_image("abc123"))

        assert report.outcome == PromotionOutcome.STAGED
        assert report.environments == {"staging": None}
        assert report.inspect_errors == {"staging": "ssh: connection reset"}

    @pytest.mark.asyncio
    async def test_report_serializes(self, controller, make_image) -> None:
        report = await controller.promote(make_image("abc123"))

        payload = report.model_dump(mode="json")
        assert payload["outcome"] == "staged"
        assert payload["final_state"] == "StagingHealthy"
        assert payload["transitions"][0]["state"] == "StagingDeployed"
