"""Circuit breaker state machine tests."""

import asyncio

import pytest

from youthauth.service.circuit_breaker import CircuitBreaker, CircuitState
from youthauth.service.errors import CircuitOpenError, DependencyUnavailable
from youthauth.storage.errors import CredentialStoreUnavailable, IdentityNotFound


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FlakyDependency:
    def __init__(self):
        self.calls = 0
        self.fail_with = None

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return value


def _breaker(clock, **kwargs):
    kwargs.setdefault("minimum_calls", 5)
    kwargs.setdefault("failure_rate_threshold", 0.5)
    kwargs.setdefault("window_seconds", 60)
    kwargs.setdefault("cooldown_seconds", 30)
    return CircuitBreaker("credential_store", clock=clock, **kwargs)


async def _fail_times(breaker, dependency, n):
    dependency.fail_with = CredentialStoreUnavailable("down")
    for _ in range(n):
        with pytest.raises(CredentialStoreUnavailable):
            await breaker.call(dependency)


async def test_consecutive_unavailable_opens_and_short_circuits():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()

    await _fail_times(breaker, dependency, 5)
    assert breaker.state == CircuitState.OPEN

    for _ in range(3):
        with pytest.raises(CircuitOpenError):
            await breaker.call(dependency)
    assert dependency.calls == 5


async def test_fallback_is_distinct_from_authentication_failures():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 5)

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(dependency)
    err = excinfo.value
    assert isinstance(err, DependencyUnavailable)
    assert err.status_code == 503
    assert err.error_code == "dependency_unavailable"
    assert err.retry_after == pytest.approx(30)


async def test_not_found_never_counts_as_failure():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()
    dependency.fail_with = IdentityNotFound("nobody@example.com")

    for _ in range(20):
        with pytest.raises(IdentityNotFound):
            await breaker.call(dependency)

    assert breaker.state == CircuitState.CLOSED
    assert dependency.calls == 20


async def test_below_minimum_calls_stays_closed():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 4)
    assert breaker.state == CircuitState.CLOSED


async def test_failure_rate_below_threshold_stays_closed():
    clock = FakeClock()
    breaker = _breaker(clock, failure_rate_threshold=0.5)
    dependency = FlakyDependency()
    for _ in range(6):
        dependency.fail_with = None
        await breaker.call(dependency)
    await _fail_times(breaker, dependency, 5)
    # 5 failures out of 11 calls
    assert breaker.state == CircuitState.CLOSED
    await _fail_times(breaker, dependency, 1)
    assert breaker.state == CircuitState.OPEN


async def test_old_outcomes_slide_out_of_the_window():
    clock = FakeClock()
    breaker = _breaker(clock, window_seconds=60)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 4)
    clock.now += 61
    await _fail_times(breaker, dependency, 1)
    assert breaker.state == CircuitState.CLOSED


async def test_half_open_trial_success_closes():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 5)

    clock.now += 30
    assert breaker.state == CircuitState.HALF_OPEN
    dependency.fail_with = None
    assert await breaker.call(dependency, "recovered") == "recovered"
    assert breaker.state == CircuitState.CLOSED
    assert dependency.calls == 6


async def test_half_open_trial_failure_reopens():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 5)

    clock.now += 30
    await _fail_times(breaker, dependency, 1)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(dependency)
    assert dependency.calls == 6


async def test_half_open_admits_only_limited_trials():
    clock = FakeClock()
    breaker = _breaker(clock, half_open_max_calls=1)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 5)
    clock.now += 30

    release = asyncio.Event()

    async def slow_trial():
        await release.wait()
        return "done"

    trial = asyncio.create_task(breaker.call(slow_trial))
    await asyncio.sleep(0)
    with pytest.raises(CircuitOpenError):
        await breaker.call(dependency)
    release.set()
    assert await trial == "done"
    assert breaker.state == CircuitState.CLOSED


async def test_cancelled_half_open_trial_frees_its_slot():
    clock = FakeClock()
    breaker = _breaker(clock, half_open_max_calls=1)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 5)
    clock.now += 30

    async def hanging_trial():
        await asyncio.Event().wait()

    trial = asyncio.create_task(breaker.call(hanging_trial))
    await asyncio.sleep(0)
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    clock.now += 3600
    dependency.fail_with = None
    assert await breaker.call(dependency, "recovered") == "recovered"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_state()["rejected_calls"] == 0


async def test_get_state_reports_counts():
    clock = FakeClock()
    breaker = _breaker(clock)
    dependency = FlakyDependency()
    await _fail_times(breaker, dependency, 2)
    state = breaker.get_state()
    assert state["state"] == "closed"
    assert state["failures_in_window"] == 2
    assert state["calls_in_window"] == 2
