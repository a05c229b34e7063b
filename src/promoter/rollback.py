"""Rollback Manager.

Captures the image running in an environment before it is replaced and
restores it on demand. Rollback is a pure function of the captured
reference: ``restore(env, previous)`` needs nothing beyond the snapshot,
which is also persisted so a restarted controller can finish the job.
"""

from __future__ import annotations

from enum import Enum

from promoter.driver.docker import DockerDriver
from promoter.environment import Environment
from promoter.image import ImageReference
from promoter.observability.logging import get_logger
from promoter.state import DeploymentRecord, DeploymentRecordStore


log = get_logger(__name__)


class RestoreOutcome(str, Enum):
    """Result of a restore that did not raise."""

    RESTORED = "restored"
    NO_PRIOR_IMAGE = "no_prior_image"


class RollbackManager:
    """Snapshot-before-replace plus explicit restore."""

    def __init__(self, driver: DockerDriver, store: DeploymentRecordStore) -> None:
        self.driver = driver
        self.store = store

    async def snapshot(
        self,
        env: Environment,
        candidate: ImageReference | None = None,
    ) -> ImageReference | None:
        """Record the running image as "previous" before a new deploy.

        Must be called, and its result kept, before ``deploy`` runs for the
        candidate; afterwards the previous reference is gone from the host.

        Returns:
            The image running now, or None when the environment is empty.

        Raises:
            DeployError: If the environment cannot be inspected.
            StateError: If the record cannot be read or written.
        """
        prior = await self.driver.current_image(env)

        record = self.store.get(env.name)
        record.previous = prior
        record.current = prior
        record.in_flight = candidate
        self.store.save(record)

        log.info(
            "deployment_snapshot_taken",
            environment=env.name,
            previous=str(prior) if prior else None,
            candidate=str(candidate) if candidate else None,
        )
        return prior

    def commit(self, env: Environment, image: ImageReference) -> DeploymentRecord:
        """Mark the replacement as complete: current ← image."""
        record = self.store.get(env.name)
        record.current = image
        record.in_flight = None
        self.store.save(record)
        return record

    def pending(self, env: Environment) -> DeploymentRecord | None:
        """Record of an interrupted replacement, if any."""
        record = self.store.get(env.name)
        return record if record.in_flight is not None else None

    async def restore(
        self,
        env: Environment,
        previous: ImageReference | None,
    ) -> RestoreOutcome:
        """Put ``previous`` back in place of the failed deployment.

        When there was nothing running before, the failed container is
        removed and the environment is left empty (NO_PRIOR_IMAGE).

        Raises:
            DeployError: If the failed container cannot be removed or the
                previous image cannot be deployed again.
            StateError: If the containers were restored but the record
                could not be updated.
        """
        log.warning(
            "rollback_started",
            environment=env.name,
            previous=str(previous) if previous else None,
        )

        await self.driver.remove(env)
        if previous is not None:
            await self.driver.deploy(env, previous)

        # The record follows the containers, never the other way round.
        record = self.store.get(env.name)
        record.in_flight = None
        record.current = previous
        self.store.save(record)

        if previous is None:
            log.warning("rollback_no_prior_image", environment=env.name)
            return RestoreOutcome.NO_PRIOR_IMAGE

        log.info("rollback_completed", environment=env.name, image=str(previous))
        return RestoreOutcome.RESTORED


__all__ = ["RestoreOutcome", "RollbackManager"]
