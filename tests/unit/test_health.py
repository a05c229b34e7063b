"""Unit tests for health verification."""

from __future__ import annotations

import asyncio

import pytest

from promoter.errors import ExecutionError
from promoter.health import (
    HealthStatus,
    HealthVerifier,
    HostCommandProbe,
    HttpProbe,
    ProbeResult,
)


class ScriptedProbe:
    """Probe returning a fixed sequence of results, then failures."""

    target = "scripted"

    def __init__(self, results: list[bool]) -> None:
        self.results = list(results)
        self.calls = 0

    async def probe(self) -> ProbeResult:
        self.calls += 1
        healthy = self.results.pop(0) if self.results else False
        return ProbeResult(healthy=healthy, detail="ok" if healthy else "HTTP 503")


class TestHealthVerifier:
    """Tests for bounded polling."""

    def test_rejects_invalid_policy(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            HealthVerifier(max_attempts=0)
        with pytest.raises(ValueError, match="interval"):
            HealthVerifier(interval=-1)

    @pytest.mark.asyncio
    async def test_first_success_returns_without_waiting(self) -> None:
        """A healthy first probe returns well before one interval elapses."""
        verifier = HealthVerifier(max_attempts=30, interval=3.0)
        probe = ScriptedProbe([True])

        result = await asyncio.wait_for(verifier.verify(probe), timeout=1.0)

        assert result.status == HealthStatus.HEALTHY
        assert result.healthy
        assert result.attempts == 1
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_success_after_failures(self) -> None:
        verifier = HealthVerifier(max_attempts=30, interval=0)
        probe = ScriptedProbe([False, False, True])

        result = await verifier.verify(probe)

        assert result.healthy
        assert result.attempts == 3
        assert probe.calls == 3

    @pytest.mark.asyncio
    async def test_exhausts_exactly_max_attempts(self) -> None:
        verifier = HealthVerifier(max_attempts=30, interval=0)
        probe = ScriptedProbe([])

        result = await verifier.verify(probe)

        assert result.status == HealthStatus.UNHEALTHY
        assert result.attempts == 30
        assert probe.calls == 30
        assert result.last_error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_no_wait_after_final_attempt(self) -> None:
        """A single-attempt budget fails immediately even with a long interval."""
        verifier = HealthVerifier(max_attempts=1, interval=60)

        result = await asyncio.wait_for(verifier.verify(ScriptedProbe([])), timeout=1.0)

        assert result.status == HealthStatus.UNHEALTHY
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_overrides_apply_per_call(self) -> None:
        verifier = HealthVerifier(max_attempts=30, interval=60)
        probe = ScriptedProbe([])

        result = await verifier.verify(probe, max_attempts=3, interval=0)

        assert result.attempts == 3
        assert probe.calls == 3

    @pytest.mark.asyncio
    async def test_zero_attempt_override_is_rejected(self) -> None:
        verifier = HealthVerifier(max_attempts=30, interval=0)
        probe = ScriptedProbe([])

        with pytest.raises(ValueError, match="max_attempts"):
            await verifier.verify(probe, max_attempts=0)

        assert probe.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        verifier = HealthVerifier(max_attempts=30, interval=0)
        cancel = asyncio.Event()
        cancel.set()
        probe = ScriptedProbe([True])

        result = await verifier.verify(probe, cancel=cancel)

        assert result.status == HealthStatus.CANCELLED
        assert result.attempts == 0
        assert probe.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_wait(self) -> None:
        verifier = HealthVerifier(max_attempts=30, interval=60)
        cancel = asyncio.Event()
        probe = ScriptedProbe([])

        task = asyncio.create_task(verifier.verify(probe, cancel=cancel))
        await asyncio.sleep(0.05)
        cancel.set()
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.status == HealthStatus.CANCELLED
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_on_probe_sees_every_result(self) -> None:
        verifier = HealthVerifier(max_attempts=5, interval=0)
        seen: list[bool] = []

        await verifier.verify(ScriptedProbe([False, True]), on_probe=lambda r: seen.append(r.healthy))

        assert seen == [False, True]


class TestHttpProbe:
    """Tests for controller-side HTTP probing."""

    @pytest.mark.asyncio
    async def test_2xx_is_healthy(self, http_health) -> None:
        async with http_health.client() as client:
            result = await HttpProbe("http://staging.example.com/healthz", client=client).probe()

        assert result.healthy
        assert result.detail == "HTTP 200"

    @pytest.mark.asyncio
    async def test_error_status_is_unhealthy(self, http_health) -> None:
        http_health.statuses = [503]

        async with http_health.client() as client:
            result = await HttpProbe("http://staging.example.com/healthz", client=client).probe()

        assert not result.healthy
        assert result.detail == "HTTP 503"

    @pytest.mark.asyncio
    async def test_connection_error_counts_as_failure(self, http_health) -> None:
        """Network errors are failed attempts, not exceptions."""
        http_health.statuses = [0, 0, 200]
        verifier = HealthVerifier(max_attempts=30, interval=0)

        async with http_health.client() as client:
            result = await verifier.verify(HttpProbe("http://staging.example.com/healthz", client=client))

        assert result.healthy
        assert result.attempts == 3
        assert http_health.requests == 3


class TestHostCommandProbe:
    """Tests for in-host probing over the executor."""

    def test_build_argv(self, docker_host) -> None:
        probe = HostCommandProbe(docker_host, "http://localhost:8080/healthz", timeout=5.0)

        argv = probe.build_argv()

        assert argv[0] == "curl"
        assert argv[-1] == "http://localhost:8080/healthz"
        assert "%{http_code}" in argv
        assert argv[argv.index("--max-time") + 1] == "5"
        assert probe.target == "fake-host:http://localhost:8080/healthz"

    @pytest.mark.asyncio
    async def test_2xx_is_healthy(self, docker_host) -> None:
        result = await HostCommandProbe(docker_host, "http://localhost:8080/healthz").probe()

        assert result.healthy

    @pytest.mark.asyncio
    async def test_redirect_is_unhealthy(self, docker_host) -> None:
        docker_host.health = lambda url: 302  # noqa: ARG005

        result = await HostCommandProbe(docker_host, "http://localhost:8080/healthz").probe()

        assert not result.healthy
        assert result.detail == "HTTP 302"

    @pytest.mark.asyncio
    async def test_unreachable_host_is_unhealthy(self, docker_host) -> None:
        docker_host.unreachable = True

        result = await HostCommandProbe(docker_host, "http://localhost:8080/healthz").probe()

        assert not result.healthy
        assert "Connection refused" in result.detail

    @pytest.mark.asyncio
    async def test_execution_error_is_unhealthy(self) -> None:
        class TimingOut:
            target = "slow-host"

            async def run(self, argv, *, timeout=None):  # noqa: ANN001, ANN202, ARG002
                raise ExecutionError("Command timed out after 15.0s")

        result = await HostCommandProbe(TimingOut(), "http://localhost:8080/healthz").probe()

        assert not result.healthy
        assert "timed out" in result.detail
