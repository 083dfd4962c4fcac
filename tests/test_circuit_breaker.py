"""Tests for per-provider circuit breakers."""

import asyncio

import pytest

from ai_gateway.core import (
    CircuitOpenError,
    InputTooLargeError,
    ProviderTransientError,
)
from ai_gateway.routing import CircuitBreaker, CircuitBreakerRegistry, CircuitState


async def _fail():
    raise ProviderTransientError("upstream 503", provider="openai")


async def _ok():
    return "ok"


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("openai", failure_threshold=3, recovery_timeout=30.0, clock=clock)


async def _trip(breaker, times=3):
    for _ in range(times):
        with pytest.raises(ProviderTransientError):
            await breaker.call(_fail)


@pytest.mark.asyncio
async def test_opens_after_threshold_failures(breaker):
    """Test CLOSED -> OPEN after consecutive failures."""
    await _trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 2

    await _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.is_open()


@pytest.mark.asyncio
async def test_open_circuit_rejects_without_calling(breaker, mocker):
    """Test an OPEN breaker never invokes the provider."""
    await _trip(breaker)
    provider_call = mocker.AsyncMock(return_value="ok")

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call(provider_call)

    provider_call.assert_not_called()
    assert exc_info.value.retry_in == pytest.approx(30.0)


@pytest.mark.asyncio
async def test_half_open_probe_success_closes(breaker, clock):
    """Test recovery admits one probe whose success resets the count."""
    await _trip(breaker)
    clock.advance(30.0)

    assert not breaker.is_open()
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_probe_failure_reopens(breaker, clock):
    """Test a failed probe re-opens and restarts the recovery timer."""
    await _trip(breaker)
    clock.advance(31.0)

    with pytest.raises(ProviderTransientError):
        await breaker.call(_fail)

    assert breaker.state == CircuitState.OPEN
    clock.advance(29.0)
    assert breaker.is_open()
    clock.advance(1.0)
    assert not breaker.is_open()


@pytest.mark.asyncio
async def test_only_one_probe_in_half_open(breaker, clock):
    """Test concurrent calls during the probe are rejected."""
    await _trip(breaker)
    clock.advance(30.0)

    release = asyncio.Event()

    async def slow_probe():
        await release.wait()
        return "probe"

    probe = asyncio.create_task(breaker.call(slow_probe))
    await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)

    release.set()
    assert await probe == "probe"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_probe_releases_slot(breaker, clock):
    """Test cancellation does not count as a verdict on the provider."""
    await _trip(breaker)
    clock.advance(30.0)

    async def hang():
        await asyncio.Event().wait()

    probe = asyncio.create_task(breaker.call(hang))
    await asyncio.sleep(0)
    probe.cancel()
    with pytest.raises(asyncio.CancelledError):
        await probe

    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker):
    """Test failures must be consecutive to open the circuit."""
    await _trip(breaker, 2)
    await breaker.call(_ok)
    await _trip(breaker, 2)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 2


@pytest.mark.asyncio
async def test_request_shaped_errors_do_not_trip(breaker):
    """Test InputTooLargeError leaves the breaker untouched."""

    async def too_large():
        raise InputTooLargeError("prompt is too long", provider="openai")

    for _ in range(5):
        with pytest.raises(InputTooLargeError):
            await breaker.call(too_large)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_force_open_and_close(breaker):
    """Test manual intervention."""
    breaker.force_open()
    assert breaker.is_open()
    assert breaker.get_stats().state == CircuitState.OPEN

    breaker.force_close()
    stats = breaker.get_stats()
    assert stats.state == CircuitState.CLOSED
    assert stats.failure_count == 0
    assert stats.retry_in is None


@pytest.mark.asyncio
async def test_registry_keeps_one_breaker_per_provider(clock):
    """Test registry isolation between providers."""
    registry = CircuitBreakerRegistry(failure_threshold=1, recovery_timeout=10.0, clock=clock)

    with pytest.raises(ProviderTransientError):
        await registry.call("openai", _fail)

    assert registry.get("openai") is registry.get("openai")
    assert registry.get("openai").is_open()
    assert not registry.get("claude").is_open()
    assert await registry.call("claude", _ok) == "ok"

    snapshot = registry.snapshot()
    assert snapshot["openai"].state == CircuitState.OPEN
    assert snapshot["claude"].state == CircuitState.CLOSED
