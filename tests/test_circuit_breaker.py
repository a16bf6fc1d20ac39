"""Tests for the per-resource circuit breaker."""

from __future__ import annotations

import asyncio

import pytest

from app.errors import CircuitOpenFailure, PermanentProviderFailure, TransientProviderFailure
from app.services.circuit_breaker import BreakerRegistry, CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Resource:
    def __init__(self) -> None:
        self.calls = 0
        self.fail_with: BaseException | None = TransientProviderFailure("boom", resource="x")

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return "ok"


async def _attempt(breaker: CircuitBreaker, resource: Resource) -> str | BaseException:
    try:
        return await breaker.call(resource)
    except Exception as exc:
        return exc


def test_opens_after_threshold_and_rejects_without_calling() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("x", failure_threshold=5, cooldown_seconds=60, clock=clock)
    resource = Resource()

    async def runner() -> None:
        for _ in range(5):
            outcome = await _attempt(breaker, resource)
            assert isinstance(outcome, TransientProviderFailure)
        assert breaker.state is CircuitState.OPEN

        sixth = await _attempt(breaker, resource)
        assert isinstance(sixth, CircuitOpenFailure)
        assert sixth.retryable is True

    asyncio.run(runner())

    assert resource.calls == 5


def test_half_open_allows_single_trial_that_closes_on_success() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("x", failure_threshold=2, cooldown_seconds=60, clock=clock)
    resource = Resource()
    release = asyncio.Event()

    async def slow_success() -> str:
        resource.calls += 1
        await release.wait()
        return "ok"

    async def runner() -> None:
        await _attempt(breaker, resource)
        await _attempt(breaker, resource)
        clock.now = 59.0
        assert isinstance(await _attempt(breaker, resource), CircuitOpenFailure)

        clock.now = 60.0
        trial = asyncio.create_task(breaker.call(slow_success))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN
        assert isinstance(await _attempt(breaker, resource), CircuitOpenFailure)

        release.set()
        assert await trial == "ok"
        assert breaker.state is CircuitState.CLOSED

    asyncio.run(runner())

    assert resource.calls == 3


def test_failed_trial_reopens_and_restarts_cooldown() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("x", failure_threshold=1, cooldown_seconds=30, clock=clock)
    resource = Resource()

    async def runner() -> None:
        await _attempt(breaker, resource)
        clock.now = 30.0
        assert isinstance(await _attempt(breaker, resource), TransientProviderFailure)
        assert breaker.state is CircuitState.OPEN

        clock.now = 59.0
        assert isinstance(await _attempt(breaker, resource), CircuitOpenFailure)
        clock.now = 60.0
        resource.fail_with = None
        assert await _attempt(breaker, resource) == "ok"

    asyncio.run(runner())

    assert breaker.state is CircuitState.CLOSED
    assert resource.calls == 3


def test_permanent_failures_do_not_trip_the_breaker() -> None:
    breaker = CircuitBreaker("x", failure_threshold=2, clock=FakeClock())
    resource = Resource()
    resource.fail_with = PermanentProviderFailure("not found", status_code=404)

    async def runner() -> None:
        for _ in range(5):
            with pytest.raises(PermanentProviderFailure):
                await breaker.call(resource)

    asyncio.run(runner())

    assert breaker.state is CircuitState.CLOSED
    assert resource.calls == 5


def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker("x", failure_threshold=2, clock=FakeClock())
    resource = Resource()

    async def runner() -> None:
        await _attempt(breaker, resource)
        resource.fail_with = None
        await _attempt(breaker, resource)
        resource.fail_with = TransientProviderFailure("boom")
        await _attempt(breaker, resource)

    asyncio.run(runner())

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats()["consecutive_failures"] == 1


def test_registry_isolates_resources() -> None:
    registry = BreakerRegistry(failure_threshold=1, clock=FakeClock())

    registry.get("tmdb").record_failure()

    assert registry.get("tmdb").is_open()
    assert not registry.get("fanart").is_open()
    assert registry.get("tmdb") is registry.get("tmdb")
    assert {entry["name"] for entry in registry.stats()} == {"tmdb", "fanart"}
