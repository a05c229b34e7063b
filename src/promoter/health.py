"""Health verification by bounded polling.

The verifier probes an endpoint until the first success, waiting a fixed
interval between failures, for at most ``max_attempts`` probes. Network
errors count as failed attempts and never propagate, so worst-case
latency is bounded by ``max_attempts * interval``.

Two probes are provided:
- HttpProbe: GET from the controller using httpx
- HostCommandProbe: curl run on the deployment host against localhost
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import httpx

from promoter.driver.executor import CommandExecutor
from promoter.errors import ExecutionError
from promoter.observability.logging import get_logger


log = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 5.0


class HealthStatus(str, Enum):
    """Verification outcome."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProbeResult:
    """Result of a single probe."""

    healthy: bool
    detail: str


@dataclass(frozen=True)
class HealthResult:
    """Result of a verification run."""

    status: HealthStatus
    attempts: int
    elapsed_seconds: float
    last_error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class HealthProbe(Protocol):
    """A single health check against one target."""

    target: str

    async def probe(self) -> ProbeResult:
        """Probe once. Must not raise for network failures."""
        ...


class HttpProbe:
    """Issues a GET from the controller; any 2xx is healthy."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.target = url
        self.timeout = timeout
        self._client = client

    async def probe(self) -> ProbeResult:
        try:
            if self._client is not None:
                response = await self._client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
        except httpx.HTTPError as e:
            return ProbeResult(healthy=False, detail=f"{type(e).__name__}: {e}")

        if response.is_success:
            return ProbeResult(healthy=True, detail=f"HTTP {response.status_code}")
        return ProbeResult(healthy=False, detail=f"HTTP {response.status_code}")


class HostCommandProbe:
    """Runs curl on the deployment host; a 2xx status code is healthy.

    curl prints only the status code, so redirects and errors are told
    apart from success without following them.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.executor = executor
        self.url = url
        self.target = f"{executor.target}:{url}"
        self.timeout = timeout

    def build_argv(self) -> list[str]:
        return [
            "curl",
            "--silent",
            "--show-error",
            "--output",
            "/dev/null",
            "--write-out",
            "%{http_code}",
            "--max-time",
            str(int(max(self.timeout, 1))),
            self.url,
        ]

    async def probe(self) -> ProbeResult:
        try:
            result = await self.executor.run(self.build_argv(), timeout=self.timeout + 10)
        except ExecutionError as e:
            return ProbeResult(healthy=False, detail=e.message)

        status = result.stdout.strip()
        if result.ok and status.startswith("2"):
            return ProbeResult(healthy=True, detail=f"HTTP {status}")
        if result.ok:
            return ProbeResult(healthy=False, detail=f"HTTP {status}")
        return ProbeResult(
            healthy=False,
            detail=result.stderr or f"curl exit {result.exit_code}",
        )


class HealthVerifier:
    """Bounded polling with fixed backoff; first success wins."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if interval < 0:
            msg = "interval must not be negative"
            raise ValueError(msg)
        self.max_attempts = max_attempts
        self.interval = interval

    async def verify(
        self,
        probe: HealthProbe,
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
        cancel: asyncio.Event | None = None,
        on_probe: Callable[[ProbeResult], None] | None = None,
    ) -> HealthResult:
        """Poll ``probe`` until it reports healthy or attempts run out.

        Args:
            probe: Probe to issue
            max_attempts: Override the configured attempt budget
            interval: Override the configured wait between failures
            cancel: When set, polling stops and the result is CANCELLED
            on_probe: Called with every probe result (metrics hook)

        Returns:
            HealthResult: HEALTHY on the first successful probe, UNHEALTHY
            after exactly ``max_attempts`` failures, CANCELLED if aborted.
        """
        attempts_budget = self.max_attempts if max_attempts is None else max_attempts
        if attempts_budget < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        wait = self.interval if interval is None else interval
        started = time.monotonic()
        last_error: str | None = None

        for attempt in range(1, attempts_budget + 1):
            if cancel is not None and cancel.is_set():
                return self._finish(HealthStatus.CANCELLED, attempt - 1, started, last_error)

            result = await probe.probe()
            if on_probe is not None:
                on_probe(result)

            if result.healthy:
                log.info("health_check_passed", target=probe.target, attempt=attempt)
                return self._finish(HealthStatus.HEALTHY, attempt, started, None)

            last_error = result.detail
            log.info(
                "health_probe_failed",
                target=probe.target,
                attempt=attempt,
                max_attempts=attempts_budget,
                detail=result.detail,
            )

            if attempt == attempts_budget:
                break
            if await self._wait(wait, cancel):
                return self._finish(HealthStatus.CANCELLED, attempt, started, last_error)

        log.warning(
            "health_check_exhausted",
            target=probe.target,
            attempts=attempts_budget,
            last_error=last_error,
        )
        return self._finish(HealthStatus.UNHEALTHY, attempts_budget, started, last_error)

    @staticmethod
    async def _wait(seconds: float, cancel: asyncio.Event | None) -> bool:
        """Sleep between attempts; returns True if cancelled meanwhile."""
        if cancel is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    @staticmethod
    def _finish(
        status: HealthStatus,
        attempts: int,
        started: float,
        last_error: str | None,
    ) -> HealthResult:
        return HealthResult(
            status=status,
            attempts=attempts,
            elapsed_seconds=round(time.monotonic() - started, 3),
            last_error=last_error,
        )


__all__ = [
    "HealthProbe",
    "HealthResult",
    "HealthStatus",
    "HealthVerifier",
    "HostCommandProbe",
    "HttpProbe",
    "ProbeResult",
]
