"""Production approval gate.

Approval is an external signal consumed once per production promotion.
Waiting for it is bounded by a timeout and can be cancelled, so the gate
never blocks a run indefinitely.

Channels:
- EventApprovalGate: in-process signal (embedding, tests)
- FileApprovalGate: signal file written by ``promoter approve|reject``
- AutoApprovalGate: pre-approved runs (``--yes``)
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from promoter.environment import Environment
from promoter.image import ImageReference
from promoter.observability.logging import get_logger


log = get_logger(__name__)

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 900.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0


class ApprovalStatus(str, Enum):
    """Approval workflow status."""

    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ApprovalDecision:
    """Outcome of waiting on the gate."""

    status: ApprovalStatus
    approver: str | None = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED


class ApprovalGate(Protocol):
    """Waits for an external approval signal."""

    async def wait(
        self,
        env: Environment,
        image: ImageReference,
        *,
        timeout: float,
        cancel: asyncio.Event | None = None,
    ) -> ApprovalDecision:
        """Wait for a decision on promoting ``image`` into ``env``."""
        ...


class AutoApprovalGate:
    """Approves immediately."""

    def __init__(self, approver: str = "auto") -> None:
        self.approver = approver

    async def wait(
        self,
        env: Environment,
        image: ImageReference,
        *,
        timeout: float,  # noqa: ARG002
        cancel: asyncio.Event | None = None,  # noqa: ARG002
    ) -> ApprovalDecision:
        log.info("approval_auto_granted", environment=env.name, image=str(image))
        return ApprovalDecision(status=ApprovalStatus.APPROVED, approver=self.approver)


class EventApprovalGate:
    """In-process approval channel.

    ``approve()``/``reject()`` may be called before or during ``wait``;
    a decision is consumed by the wait that observes it.
    """

    def __init__(self) -> None:
        self._signal = asyncio.Event()
        self._decision: ApprovalDecision | None = None

    def approve(self, approver: str | None = None) -> None:
        self._set(ApprovalDecision(status=ApprovalStatus.APPROVED, approver=approver))

    def reject(self, approver: str | None = None, reason: str | None = None) -> None:
        self._set(
            ApprovalDecision(status=ApprovalStatus.REJECTED, approver=approver, reason=reason)
        )

    def _set(self, decision: ApprovalDecision) -> None:
        self._decision = decision
        self._signal.set()

    async def wait(
        self,
        env: Environment,
        image: ImageReference,
        *,
        timeout: float,
        cancel: asyncio.Event | None = None,
    ) -> ApprovalDecision:
        log.info(
            "approval_requested",
            environment=env.name,
            image=str(image),
            timeout_seconds=timeout,
        )

        signal_task = asyncio.create_task(self._signal.wait())
        waiters: set[asyncio.Task[Any]] = {signal_task}
        cancel_task: asyncio.Task[Any] | None = None
        if cancel is not None:
            cancel_task = asyncio.create_task(cancel.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in waiters:
                task.cancel()

        if signal_task in done and self._decision is not None:
            decision = self._decision
            self._decision = None
            self._signal.clear()
            log.info(
                "approval_decided",
                environment=env.name,
                status=decision.status.value,
                approver=decision.approver,
            )
            return decision

        if cancel_task is not None and cancel_task in done:
            log.warning("approval_wait_cancelled", environment=env.name)
            return ApprovalDecision(status=ApprovalStatus.CANCELLED)

        log.warning("approval_timeout_expired", environment=env.name, timeout_seconds=timeout)
        return ApprovalDecision(status=ApprovalStatus.TIMEOUT)


class FileApprovalGate:
    """Approval signalled through a file in the state directory.

    The signal file names the image it approves and when it was decided.
    A signal for any other image, or one decided before the wait began, is
    discarded so a leftover approval cannot promote a later run.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.poll_interval = poll_interval

    def signal_path(self, environment: str) -> Path:
        return self.state_dir / f"approval-{environment}.json"

    def write_signal(
        self,
        environment: str,
        image: ImageReference,
        *,
        approved: bool,
        approver: str | None = None,
        reason: str | None = None,
    ) -> Path:
        """Record a decision for the run waiting on ``environment``."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.signal_path(environment)
        payload = {
            "image": str(image),
            "approved": approved,
            "approver": approver,
            "reason": reason,
            "decided_at": datetime.now(UTC).isoformat(),
        }
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)
        return path

    def _consume(
        self,
        env: Environment,
        image: ImageReference,
        since: datetime,
    ) -> ApprovalDecision | None:
        path = self.signal_path(env.name)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            log.warning("approval_signal_unreadable", path=str(path))
            path.unlink(missing_ok=True)
            return None
        path.unlink(missing_ok=True)

        if not isinstance(data, dict) or data.get("image") != str(image):
            log.warning(
                "approval_signal_ignored",
                environment=env.name,
                expected=str(image),
                got=data.get("image") if isinstance(data, dict) else None,
            )
            return None

        decided_at = _parse_timestamp(data.get("decided_at"))
        if decided_at is None or decided_at < since:
            log.warning(
                "approval_signal_stale",
                environment=env.name,
                decided_at=data.get("decided_at"),
                waiting_since=since.isoformat(),
            )
            return None

        status = ApprovalStatus.APPROVED if data.get("approved") is True else ApprovalStatus.REJECTED
        return ApprovalDecision(
            status=status,
            approver=data.get("approver"),
            reason=data.get("reason"),
        )

    async def wait(
        self,
        env: Environment,
        image: ImageReference,
        *,
        timeout: float,
        cancel: asyncio.Event | None = None,
    ) -> ApprovalDecision:
        log.info(
            "approval_requested",
            environment=env.name,
            image=str(image),
            timeout_seconds=timeout,
            signal_file=str(self.signal_path(env.name)),
        )

        since = datetime.now(UTC)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            decision = self._consume(env, image, since)
            if decision is not None:
                log.info(
                    "approval_decided",
                    environment=env.name,
                    status=decision.status.value,
                    approver=decision.approver,
                )
                return decision

            remaining = deadline - loop.time()
            if remaining <= 0:
                log.warning("approval_timeout_expired", environment=env.name, timeout_seconds=timeout)
                return ApprovalDecision(status=ApprovalStatus.TIMEOUT)

            pause = min(self.poll_interval, remaining)
            if cancel is None:
                await asyncio.sleep(pause)
                continue
            try:
                await asyncio.wait_for(cancel.wait(), timeout=pause)
            except TimeoutError:
                continue
            log.warning("approval_wait_cancelled", environment=env.name)
            return ApprovalDecision(status=ApprovalStatus.CANCELLED)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalStatus",
    "AutoApprovalGate",
    "EventApprovalGate",
    "FileApprovalGate",
]
