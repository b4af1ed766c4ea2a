# tests/test_circuit_breaker.py

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from persyste.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from persyste.services.errors import CircuitOpenError, NetworkError
from persyste.services.result import Failure, Success

from .fakes import ManualClock


async def failing():
    return Failure(NetworkError())


async def succeeding():
    return Success("ok")


async def trip(cb: CircuitBreaker) -> None:
    for _ in range(cb.config.failure_threshold):
        await cb.call(failing)


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 2, 3, 4])
async def test_stays_closed_below_threshold(failures: int, clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    for _ in range(failures):
        await cb.call(failing)

    assert cb.state == CircuitState.CLOSED
    assert cb.consecutive_failures == failures


@pytest.mark.asyncio
async def test_opens_at_threshold_and_rejects_without_calling(clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    await trip(cb)
    assert cb.state == CircuitState.OPEN

    called = False

    async def operation():
        nonlocal called
        called = True
        return Success("ok")

    outcome = await cb.call(operation)

    assert isinstance(outcome, Failure)
    assert isinstance(outcome.error, CircuitOpenError)
    assert outcome.error.reset_after_seconds == pytest.approx(60.0)
    assert not called


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures(clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    for _ in range(4):
        await cb.call(failing)
    await cb.call(succeeding)
    for _ in range(4):
        await cb.call(failing)

    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_after_reset_timeout(clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    await trip(cb)

    clock.advance(59)
    assert cb.state == CircuitState.OPEN
    clock.advance(1)
    assert cb.state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_half_open_allows_exactly_one_probe(clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    await trip(cb)
    clock.advance(60)

    release = asyncio.Event()

    async def slow_probe():
        await release.wait()
        return Success("ok")

    probe = asyncio.create_task(cb.call(slow_probe))
    await asyncio.sleep(0)

    rejected = await cb.call(succeeding)
    assert isinstance(rejected, Failure)
    assert isinstance(rejected.error, CircuitOpenError)

    release.set()
    assert await probe == Success("ok")
    assert cb.state == CircuitState.CLOSED
    assert cb.consecutive_failures == 0


@pytest.mark.asyncio
async def test_failed_probe_reopens_and_refreshes_last_failure(clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    await trip(cb)
    first_failure = cb.last_failure_time

    clock.advance(61)
    await cb.call(failing)

    assert cb.state == CircuitState.OPEN
    assert cb.last_failure_time > first_failure
    assert cb.get_time_until_reset() == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_cancelled_probe_releases_half_open_slot(clock: ManualClock) -> None:
    cb = CircuitBreaker(clock=clock)
    await trip(cb)
    clock.advance(60)

    async def hanging():
        await asyncio.Event().wait()

    probe = asyncio.create_task(cb.call(hanging))
    await asyncio.sleep(0)
    probe.cancel()
    with pytest.raises(asyncio.CancelledError):
        await probe

    assert cb.state == CircuitState.HALF_OPEN
    assert await cb.call(succeeding) == Success("ok")
    assert cb.state == CircuitState.CLOSED


def test_custom_config_and_manual_reset(clock: ManualClock) -> None:
    cb = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=2, reset_timeout=timedelta(seconds=5)),
        clock=clock,
    )
    cb.record_failure()
    cb.record_failure()
    assert cb.state == CircuitState.OPEN

    cb.reset()
    status = cb.get_status()
    assert status["state"] == "CLOSED"
    assert status["consecutive_failures"] == 0
    assert status["last_failure"] is None
