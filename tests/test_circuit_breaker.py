"""
Circuit breaker state machine tests.
"""
import asyncio

import pytest

from polytrade.services.circuit_breaker import CircuitBreaker, CircuitState
from polytrade.services.messaging_errors import CircuitBreakerOpenError, NetworkError


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Operations:
    """Counts how often the protected call actually runs."""

    def __init__(self):
        self.calls = 0

    async def succeed(self):
        self.calls += 1
        return "ok"

    async def fail(self):
        self.calls += 1
        raise NetworkError("Server error: 500")


async def trip(breaker: CircuitBreaker, ops: Operations, times: int):
    for _ in range(times):
        with pytest.raises(NetworkError):
            await breaker.execute(ops.fail)


async def test_opens_after_failure_threshold():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()

    await trip(breaker, ops, 2)
    assert breaker.state == CircuitState.CLOSED

    await trip(breaker, ops, 1)
    assert breaker.state == CircuitState.OPEN


async def test_open_breaker_rejects_without_calling():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    await trip(breaker, ops, 3)

    clock.advance(299)
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.execute(ops.succeed)

    assert ops.calls == 3
    assert exc_info.value.next_attempt_at is not None


async def test_trial_success_closes_and_resets_counters():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    await trip(breaker, ops, 3)

    clock.advance(300)
    assert await breaker.execute(ops.succeed) == "ok"

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0
    assert breaker.requests == 0


async def test_trial_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    await trip(breaker, ops, 3)

    clock.advance(300)
    await trip(breaker, ops, 1)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.execute(ops.succeed)


async def test_half_open_admits_a_single_trial():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    await trip(breaker, ops, 3)
    clock.advance(300)

    release = asyncio.Event()

    async def slow_trial():
        await release.wait()
        return "trial"

    trial = asyncio.create_task(breaker.execute(slow_trial))
    await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN

    with pytest.raises(CircuitBreakerOpenError):
        await breaker.execute(ops.succeed)
    assert ops.calls == 3

    release.set()
    assert await trial == "trial"
    assert breaker.state == CircuitState.CLOSED


async def test_cancelled_trial_frees_the_slot():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    await trip(breaker, ops, 3)
    clock.advance(300)

    async def hang():
        await asyncio.Event().wait()

    trial = asyncio.create_task(breaker.execute(hang))
    await asyncio.sleep(0)
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.execute(ops.succeed) == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_straggler_success_does_not_close_half_open_breaker():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    release_straggler = asyncio.Event()
    release_trial = asyncio.Event()

    async def straggler():
        await release_straggler.wait()
        return "late"

    async def failing_trial():
        await release_trial.wait()
        raise NetworkError("Server error: 503")

    late = asyncio.create_task(breaker.execute(straggler))
    await asyncio.sleep(0)
    await trip(breaker, ops, 3)
    clock.advance(300)

    trial = asyncio.create_task(breaker.execute(failing_trial))
    await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN

    release_straggler.set()
    assert await late == "late"
    assert breaker.state == CircuitState.HALF_OPEN

    release_trial.set()
    with pytest.raises(NetworkError):
        await trial
    assert breaker.state == CircuitState.OPEN


async def test_straggler_failure_does_not_reopen_half_open_breaker():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, timeout=300, clock=clock)
    ops = Operations()
    release_straggler = asyncio.Event()
    release_trial = asyncio.Event()

    async def straggler():
        await release_straggler.wait()
        raise NetworkError("Server error: 500")

    async def slow_trial():
        await release_trial.wait()
        return "trial"

    late = asyncio.create_task(breaker.execute(straggler))
    await asyncio.sleep(0)
    await trip(breaker, ops, 3)
    clock.advance(300)

    trial = asyncio.create_task(breaker.execute(slow_trial))
    await asyncio.sleep(0)

    release_straggler.set()
    with pytest.raises(NetworkError):
        await late
    assert breaker.state == CircuitState.HALF_OPEN

    release_trial.set()
    assert await trial == "trial"
    assert breaker.state == CircuitState.CLOSED


async def test_counters_reset_after_request_limit():
    breaker = CircuitBreaker(failure_threshold=100, counter_reset_after=5, clock=FakeClock())
    ops = Operations()

    for _ in range(5):
        await breaker.execute(ops.succeed)
    assert breaker.requests == 5

    await breaker.execute(ops.succeed)
    assert breaker.requests == 0
    assert breaker.successes == 0


async def test_failure_rate_needs_minimum_requests():
    breaker = CircuitBreaker(failure_threshold=100, clock=FakeClock())
    ops = Operations()

    await trip(breaker, ops, 2)
    assert breaker.get_metrics()["failure_rate"] == 0.0

    for _ in range(3):
        await breaker.execute(ops.succeed)
    assert breaker.get_metrics()["failure_rate"] == 40.0


async def test_metrics_show_next_attempt_only_while_open():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, timeout=300, clock=clock)
    ops = Operations()

    metrics = breaker.get_metrics()
    assert metrics["state"] == "CLOSED"
    assert metrics["next_attempt_time"] is None

    await trip(breaker, ops, 1)
    metrics = breaker.get_metrics()
    assert metrics["state"] == "OPEN"
    assert metrics["failures"] == 1
    assert metrics["threshold"] == 1
    assert metrics["next_attempt_time"] is not None


async def test_force_open_and_reset():
    clock = FakeClock()
    breaker = CircuitBreaker(timeout=300, clock=clock)
    ops = Operations()

    breaker.force_open()
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.execute(ops.succeed)

    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert await breaker.execute(ops.succeed) == "ok"
