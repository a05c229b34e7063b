"""Promotion Controller.

Sequences a promotion run as a state machine:

    Idle → StagingDeployed → StagingHealthy → AwaitingApproval
         → ProductionDeploying → ProductionHealthy              (promoted)
                               → ProductionUnhealthy → RolledBack
                                                     → RollbackFailed
    any step → Failed

Staging failures are fatal without rollback: staging carries no traffic
worth protecting. Production failures restore the image captured right
before the replacement. Deploys are never retried; health probes are.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from promoter.approval import ApprovalGate, ApprovalStatus
from promoter.driver.docker import DockerDriver
from promoter.environment import Environment
from promoter.errors import (
    DeployError,
    EnvironmentLockedError,
    FailureReason,
    PromotionError,
    PullError,
    RollbackFailedError,
    StateError,
)
from promoter.health import (
    HealthProbe,
    HealthResult,
    HealthStatus,
    HealthVerifier,
    HostCommandProbe,
    HttpProbe,
    ProbeResult,
)
from promoter.image import ImageReference
from promoter.locking import EnvironmentLocks
from promoter.observability.logging import LogContext, get_logger
from promoter.observability.metrics import MetricsCollector
from promoter.rollback import RestoreOutcome, RollbackManager


log = get_logger(__name__)


class PromotionState(str, Enum):
    """States of a promotion run."""

    IDLE = "Idle"
    STAGING_DEPLOYED = "StagingDeployed"
    STAGING_HEALTHY = "StagingHealthy"
    AWAITING_APPROVAL = "AwaitingApproval"
    PRODUCTION_DEPLOYING = "ProductionDeploying"
    PRODUCTION_HEALTHY = "ProductionHealthy"
    PRODUCTION_UNHEALTHY = "ProductionUnhealthy"
    ROLLED_BACK = "RolledBack"
    ROLLBACK_FAILED = "RollbackFailed"
    FAILED = "Failed"


class PromotionOutcome(str, Enum):
    """Overall result of a run, as reported to the pipeline."""

    PROMOTED = "promoted"
    STAGED = "staged"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    PromotionOutcome.PROMOTED: 0,
    PromotionOutcome.STAGED: 0,
    PromotionOutcome.FAILED: 1,
    PromotionOutcome.ROLLED_BACK: 2,
    PromotionOutcome.ROLLBACK_FAILED: 3,
}


class StateTransition(BaseModel):
    """One step in a run's history."""

    state: PromotionState
    at: datetime
    detail: dict[str, Any] = Field(default_factory=dict)


class PromotionReport(BaseModel):
    """Structured result of a terminal promotion run.

    ``environments`` maps every environment the run touched to the image
    running there once the run ended (None = nothing running).
    """

    run_id: str
    image: str
    target: str
    outcome: PromotionOutcome
    final_state: PromotionState
    reason: FailureReason | None = None
    trigger: FailureReason | None = Field(
        default=None,
        description="Failure that started a production restore",
    )
    restore: str | None = None
    error: dict[str, Any] | None = None
    attempts: dict[str, int] = Field(default_factory=dict)
    environments: dict[str, str | None] = Field(default_factory=dict)
    inspect_errors: dict[str, str] = Field(default_factory=dict)
    transitions: list[StateTransition] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


class RollbackReport(BaseModel):
    """Result of an operator-initiated rollback."""

    environment: str
    restored_to: str | None
    restore: str
    running: str | None = None
    inspect_error: str | None = None
    error: dict[str, Any] | None = None

    @property
    def exit_code(self) -> int:
        return 3 if self.error else 0


@dataclass
class PromotionRun:
    """Mutable state of one run; discarded once its report is built."""

    image: ImageReference
    target: Environment
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: PromotionState = PromotionState.IDLE
    outcome: PromotionOutcome | None = None
    reason: FailureReason | None = None
    trigger: FailureReason | None = None
    restore: RestoreOutcome | str | None = None
    error: PromotionError | None = None
    attempts: dict[str, int] = field(default_factory=dict)
    touched: list[Environment] = field(default_factory=list)
    transitions: list[StateTransition] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def transition(self, state: PromotionState, **detail: Any) -> None:
        log.info("promotion_state_changed", previous=self.state.value, state=state.value, **detail)
        self.state = state
        self.transitions.append(
            StateTransition(state=state, at=datetime.now(UTC), detail=detail)
        )

    def touch(self, env: Environment) -> None:
        if all(e.name != env.name for e in self.touched):
            self.touched.append(env)

    def finish(
        self,
        outcome: PromotionOutcome,
        *,
        reason: FailureReason | None = None,
        error: PromotionError | None = None,
    ) -> None:
        self.outcome = outcome
        self.reason = reason
        if error is not None:
            self.error = error

    def fail(self, reason: FailureReason, error: PromotionError | None = None, **detail: Any) -> None:
        self.transition(PromotionState.FAILED, reason=reason.value, **detail)
        self.finish(PromotionOutcome.FAILED, reason=reason, error=error)


class PromotionController:
    """Orchestrates deploy, verification, approval and rollback.

    Attributes:
        staging: Staging environment
        production: Production environment
        driver: Container lifecycle driver
        verifier: Health verification policy
        approval_gate: Source of the production approval signal
        rollback: Snapshot/restore of production deployments
        locks: Per-environment single-flight tokens
    """

    def __init__(
        self,
        *,
        staging: Environment,
        production: Environment,
        driver: DockerDriver,
        verifier: HealthVerifier,
        approval_gate: ApprovalGate,
        rollback: RollbackManager,
        locks: EnvironmentLocks,
        approval_timeout: float = 900.0,
        probe_timeout: float = 5.0,
        metrics: MetricsCollector | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.staging = staging
        self.production = production
        self.driver = driver
        self.verifier = verifier
        self.approval_gate = approval_gate
        self.rollback = rollback
        self.locks = locks
        self.approval_timeout = approval_timeout
        self.probe_timeout = probe_timeout
        self.metrics = metrics or MetricsCollector()
        self._http_client = http_client

    async def promote(
        self,
        image: ImageReference,
        *,
        to_production: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> PromotionReport:
        """Run a promotion to staging, and on to production if requested.

        Args:
            image: Candidate image, referenced by its content-derived tag
            to_production: Continue past staging to the approval gate
            cancel: Operator abort; stops health polling and the approval
                wait, never an issued deploy

        Returns:
            PromotionReport: Terminal outcome and the images left running.
        """
        run = PromotionRun(
            image=image,
            target=self.production if to_production else self.staging,
        )

        with LogContext(run_id=run.run_id, image=str(image)):
            log.info("promotion_started", target=run.target.name)

            if image.is_mutable_alias:
                log.error("mutable_tag_rejected", tag=image.tag)
                run.fail(
                    FailureReason.MUTABLE_TAG,
                    PromotionError(
                        f"Refusing to deploy mutable tag {image.tag!r}; use the content-derived tag",
                        code="mutable_tag",
                        phase="validate",
                    ),
                )
                return self._report(run)

            environments = [self.staging.name]
            if to_production:
                environments.append(self.production.name)

            report: PromotionReport
            try:
                async with self.locks.hold_all(environments, run.run_id):
                    await self._run(run, to_production=to_production, cancel=cancel)
                    report = await self._finalize(run)
            except EnvironmentLockedError as e:
                log.warning("promotion_rejected_environment_locked", error=e.message)
                run.fail(FailureReason.ENVIRONMENT_LOCKED, e)
                report = self._report(run)

            self.metrics.record_promotion(run.target.name, report.outcome.value, self._reason(report))
            log.info(
                "promotion_finished",
                outcome=report.outcome.value,
                final_state=report.final_state.value,
                reason=self._reason(report) or None,
                environments=report.environments,
            )
            return report

    async def rollback_environment(self, env: Environment) -> RollbackReport:
        """Restore the previous image recorded for an environment.

        Used by operators after an interrupted run or to back out a
        release that passed verification but misbehaves later.
        """
        run_id = f"rollback-{uuid.uuid4().hex[:8]}"
        async with self.locks.hold(env.name, run_id):
            try:
                record = self.rollback.store.get(env.name)
            except StateError as e:
                log.critical("manual_rollback_failed", environment=env.name, error=e.message)
                return RollbackReport(
                    environment=env.name,
                    restored_to=None,
                    restore="failed",
                    error=e.to_dict(),
                )

            previous = record.previous
            if previous is None and record.in_flight is None:
                # Nothing recorded to go back to and no interrupted run to clean up.
                log.warning("manual_rollback_nothing_recorded", environment=env.name)
                running, inspect_error = await self._inspect(env)
                return RollbackReport(
                    environment=env.name,
                    restored_to=None,
                    restore=RestoreOutcome.NO_PRIOR_IMAGE.value,
                    running=running,
                    inspect_error=inspect_error,
                )

            try:
                outcome = await self.rollback.restore(env, previous)
            except (DeployError, StateError) as e:
                log.critical("manual_rollback_failed", environment=env.name, error=e.message)
                self.metrics.record_rollback(env.name, "failed")
                return RollbackReport(
                    environment=env.name,
                    restored_to=str(previous) if previous else None,
                    restore="failed",
                    error=e.to_dict(),
                )

            self.metrics.record_rollback(env.name, outcome.value)
            running, inspect_error = await self._inspect(env)
            return RollbackReport(
                environment=env.name,
                restored_to=str(previous) if previous else None,
                restore=outcome.value,
                running=running,
                inspect_error=inspect_error,
            )

    async def _run(
        self,
        run: PromotionRun,
        *,
        to_production: bool,
        cancel: asyncio.Event | None,
    ) -> None:
        image = run.image

        # Staging: deploy, verify, no rollback on failure.
        run.touch(self.staging)
        try:
            await self.rollback.snapshot(self.staging, image)
            await self._deploy(self.staging, image)
            self.rollback.commit(self.staging, image)
        except DeployError as e:
            run.fail(self._deploy_reason(e), e, environment=self.staging.name)
            return
        except StateError as e:
            run.fail(FailureReason.STATE_ERROR, e, environment=self.staging.name)
            return
        run.transition(PromotionState.STAGING_DEPLOYED, environment=self.staging.name)

        health = await self._verify(run, self.staging, cancel)
        if health.status == HealthStatus.CANCELLED:
            run.fail(FailureReason.CANCELLED, environment=self.staging.name)
            return
        if not health.healthy:
            run.fail(
                FailureReason.STAGING_UNHEALTHY,
                environment=self.staging.name,
                last_error=health.last_error,
            )
            return
        run.transition(PromotionState.STAGING_HEALTHY, attempts=health.attempts)

        if not to_production:
            run.finish(PromotionOutcome.STAGED)
            return

        # Approval gate.
        run.transition(PromotionState.AWAITING_APPROVAL, timeout_seconds=self.approval_timeout)
        decision = await self.approval_gate.wait(
            self.production,
            image,
            timeout=self.approval_timeout,
            cancel=cancel,
        )
        if decision.status == ApprovalStatus.TIMEOUT:
            run.fail(FailureReason.APPROVAL_TIMEOUT)
            return
        if decision.status == ApprovalStatus.CANCELLED:
            run.fail(FailureReason.CANCELLED)
            return
        if decision.status == ApprovalStatus.REJECTED:
            run.fail(
                FailureReason.APPROVAL_REJECTED,
                approver=decision.approver,
                rejection_reason=decision.reason,
            )
            return

        # Production: snapshot, deploy, verify, restore on failure.
        run.transition(PromotionState.PRODUCTION_DEPLOYING, approver=decision.approver)
        run.touch(self.production)
        try:
            previous = await self.rollback.snapshot(self.production, image)
        except DeployError as e:
            # Nothing was replaced; production is as it was.
            run.fail(FailureReason.DEPLOY_ERROR, e, environment=self.production.name)
            return
        except StateError as e:
            run.fail(FailureReason.STATE_ERROR, e, environment=self.production.name)
            return

        try:
            await self._deploy(self.production, image)
        except DeployError as e:
            await self._restore(run, previous, trigger=self._deploy_reason(e), error=e)
            return

        health = await self._verify(run, self.production, cancel)
        if health.healthy:
            run.transition(PromotionState.PRODUCTION_HEALTHY, attempts=health.attempts)
            try:
                self.rollback.commit(self.production, image)
            except StateError as e:
                # The release is live and healthy; only its record is stale.
                run.fail(FailureReason.STATE_ERROR, e, environment=self.production.name)
                return
            run.finish(PromotionOutcome.PROMOTED)
            return

        run.transition(
            PromotionState.PRODUCTION_UNHEALTHY,
            attempts=health.attempts,
            last_error=health.last_error,
        )
        trigger = (
            FailureReason.CANCELLED
            if health.status == HealthStatus.CANCELLED
            else FailureReason.PRODUCTION_UNHEALTHY
        )
        await self._restore(run, previous, trigger=trigger)

    async def _restore(
        self,
        run: PromotionRun,
        previous: ImageReference | None,
        *,
        trigger: FailureReason,
        error: PromotionError | None = None,
    ) -> None:
        run.trigger = trigger
        if error is not None:
            run.error = error

        try:
            outcome = await self.rollback.restore(self.production, previous)
        except (DeployError, StateError) as e:
            run.restore = "failed"
            self.metrics.record_rollback(self.production.name, "failed")
            log.critical(
                "rollback_failed",
                environment=self.production.name,
                previous=str(previous) if previous else None,
                error=e.message,
                action_required="operator intervention: production may have no healthy deployment",
            )
            failure = RollbackFailedError(
                f"Restoring {previous} to {self.production.name} failed: {e.message}",
                phase="rollback",
                details={"cause": e.to_dict(), "trigger": trigger.value},
            )
            run.transition(PromotionState.ROLLBACK_FAILED, error=e.message)
            run.finish(PromotionOutcome.ROLLBACK_FAILED, reason=FailureReason.ROLLBACK_FAILED, error=failure)
            return

        run.restore = outcome
        self.metrics.record_rollback(self.production.name, outcome.value)

        if outcome == RestoreOutcome.NO_PRIOR_IMAGE:
            run.fail(FailureReason.NO_PRIOR_IMAGE, trigger=trigger.value)
            return
        if trigger == FailureReason.CANCELLED:
            run.fail(FailureReason.CANCELLED, restored=str(previous))
            return

        run.transition(PromotionState.ROLLED_BACK, restored=str(previous))
        run.finish(PromotionOutcome.ROLLED_BACK, reason=trigger)

    async def _deploy(self, env: Environment, image: ImageReference) -> None:
        started = time.monotonic()
        try:
            await self.driver.deploy(env, image)
        except DeployError as e:
            self.metrics.record_deploy(env.name, "failed", time.monotonic() - started)
            log.error("deploy_failed", environment=env.name, error=e.message, code=e.code)
            raise
        self.metrics.record_deploy(env.name, "succeeded", time.monotonic() - started)

    async def _verify(
        self,
        run: PromotionRun,
        env: Environment,
        cancel: asyncio.Event | None,
    ) -> HealthResult:
        def _record(result: ProbeResult) -> None:
            self.metrics.record_health_probe(env.name, healthy=result.healthy)

        result = await self.verifier.verify(self.probe_for(env), cancel=cancel, on_probe=_record)
        run.attempts[env.name] = result.attempts
        return result

    def probe_for(self, env: Environment) -> HealthProbe:
        """Pick the probe for an environment.

        Environments probed from the host run curl there against
        localhost; the rest are probed from the controller.
        """
        if env.probe_from_host:
            return HostCommandProbe(
                self.driver.executor(env),
                env.local_health_url,
                timeout=self.probe_timeout,
            )
        return HttpProbe(env.health_url, timeout=self.probe_timeout, client=self._http_client)

    @staticmethod
    def _deploy_reason(error: DeployError) -> FailureReason:
        return FailureReason.PULL_ERROR if isinstance(error, PullError) else FailureReason.DEPLOY_ERROR

    async def _finalize(self, run: PromotionRun) -> PromotionReport:
        """Build the report, inspecting what now runs in each touched environment."""
        environments: dict[str, str | None] = {}
        inspect_errors: dict[str, str] = {}
        for env in run.touched:
            environments[env.name], error = await self._inspect(env)
            if error is not None:
                inspect_errors[env.name] = error
        return self._report(run, environments=environments, inspect_errors=inspect_errors)

    async def _inspect(self, env: Environment) -> tuple[str | None, str | None]:
        """Image running in ``env`` and the inspection error, if any."""
        try:
            current = await self.driver.current_image(env)
        except DeployError as e:
            log.error("post_run_inspection_failed", environment=env.name, error=e.message)
            return None, e.message
        return (str(current) if current else None), None

    @staticmethod
    def _report(
        run: PromotionRun,
        *,
        environments: dict[str, str | None] | None = None,
        inspect_errors: dict[str, str] | None = None,
    ) -> PromotionReport:
        outcome = run.outcome or PromotionOutcome.FAILED
        restore = run.restore.value if isinstance(run.restore, RestoreOutcome) else run.restore
        return PromotionReport(
            run_id=run.run_id,
            image=str(run.image),
            target=run.target.name,
            outcome=outcome,
            final_state=run.state,
            reason=run.reason,
            trigger=run.trigger,
            restore=restore,
            error=run.error.to_dict() if run.error else None,
            attempts=dict(run.attempts),
            environments=environments or {},
            inspect_errors=inspect_errors or {},
            transitions=list(run.transitions),
            started_at=run.started_at,
            finished_at=datetime.now(UTC),
        )

    @staticmethod
    def _reason(report: PromotionReport) -> str:
        return report.reason.value if report.reason else ""


__all__ = [
    "PromotionController",
    "PromotionOutcome",
    "PromotionReport",
    "PromotionRun",
    "PromotionState",
    "RollbackReport",
    "StateTransition",
]
