"""Per-environment single-flight locks.

At most one promotion run may hold an environment between snapshot and
restore. Within a process an ``asyncio.Lock`` per environment guards it;
across processes (two pipeline jobs on one controller host) a lock file
created with O_EXCL acts as the token. A second run is rejected rather
than queued.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from promoter.errors import EnvironmentLockedError
from promoter.observability.logging import get_logger


log = get_logger(__name__)


class EnvironmentLocks:
    """Registry of single-flight tokens keyed by environment name."""

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, environment: str) -> asyncio.Lock:
        if environment not in self._locks:
            self._locks[environment] = asyncio.Lock()
        return self._locks[environment]

    def lock_path(self, environment: str) -> Path | None:
        if self.state_dir is None:
            return None
        return self.state_dir / f"{environment}.lock"

    def holder(self, environment: str) -> dict[str, Any] | None:
        """Who holds the cross-process token, if anyone."""
        path = self.lock_path(environment)
        if path is None or not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def is_locked(self, environment: str) -> bool:
        lock = self._locks.get(environment)
        return (lock is not None and lock.locked()) or self.holder(environment) is not None

    def force_unlock(self, environment: str) -> bool:
        """Remove a stale cross-process token. Returns True if one existed."""
        path = self.lock_path(environment)
        if path is None or not path.exists():
            return False
        path.unlink(missing_ok=True)
        log.warning("environment_lock_forced_open", environment=environment)
        return True

    @asynccontextmanager
    async def hold(self, environment: str, run_id: str) -> AsyncIterator[None]:
        """Hold one environment for the duration of the block.

        Raises:
            EnvironmentLockedError: If another run holds the environment.
        """
        lock = self._lock_for(environment)
        if lock.locked():
            raise EnvironmentLockedError(
                f"Environment {environment!r} is held by another promotion in this process",
                phase="lock",
                details={"environment": environment},
            )

        await lock.acquire()
        try:
            self._acquire_token(environment, run_id)
        except BaseException:
            lock.release()
            raise

        log.debug("environment_locked", environment=environment, run_id=run_id)
        try:
            yield
        finally:
            self._release_token(environment)
            lock.release()
            log.debug("environment_unlocked", environment=environment, run_id=run_id)

    @asynccontextmanager
    async def hold_all(self, environments: Iterable[str], run_id: str) -> AsyncIterator[None]:
        """Hold several environments, acquired in name order."""
        async with AsyncExitStack() as stack:
            for environment in sorted(set(environments)):
                await stack.enter_async_context(self.hold(environment, run_id))
            yield

    def _acquire_token(self, environment: str, run_id: str) -> None:
        path = self.lock_path(environment)
        if path is None:
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise EnvironmentLockedError(
                f"Environment {environment!r} is held by another promotion",
                phase="lock",
                details={"environment": environment, "holder": self.holder(environment)},
            ) from e

        payload = {
            "run_id": run_id,
            "pid": os.getpid(),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)

    def _release_token(self, environment: str) -> None:
        path = self.lock_path(environment)
        if path is not None:
            path.unlink(missing_ok=True)


__all__ = ["EnvironmentLocks"]
