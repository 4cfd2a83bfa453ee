"""Tests for the keyed circuit breaker."""

import pytest

from tests.conftest import FakeClock
from vector_indexer.server.services.vector.circuit_breaker import CircuitBreaker
from vector_indexer.server.services.vector.exceptions import CircuitOpenError, ProviderError
from vector_indexer.server.services.vector.models import CircuitBreakerConfig, CircuitState

CONFIG = CircuitBreakerConfig(failure_threshold=3, reset_timeout=60000)


async def _fail():
    raise ProviderError("boom", provider="openai", status_code=503)


async def _ok():
    return "ok"


async def _trip(breaker: CircuitBreaker, key: str = "openai") -> None:
    for _ in range(CONFIG.failure_threshold):
        with pytest.raises(ProviderError):
            await breaker.execute(key, _fail, CONFIG)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_success_keeps_closed(self):
        breaker = CircuitBreaker(clock=FakeClock())

        assert await breaker.execute("openai", _ok, CONFIG) == "ok"

        stats = breaker.get_stats("openai")
        assert stats.state == CircuitState.CLOSED
        assert stats.success_count == 1
        assert stats.failure_count == 0

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self):
        clock = FakeClock(now=500.0)
        breaker = CircuitBreaker(clock=clock)

        await _trip(breaker)

        stats = breaker.get_stats("openai")
        assert stats.state == CircuitState.OPEN
        assert stats.failure_count == 3
        assert stats.last_failure_time == 500.0
        assert stats.next_attempt_time == 560.0

    @pytest.mark.asyncio
    async def test_below_threshold_stays_closed(self):
        breaker = CircuitBreaker(clock=FakeClock())

        for _ in range(CONFIG.failure_threshold - 1):
            with pytest.raises(ProviderError):
                await breaker.execute("openai", _fail, CONFIG)

        assert breaker.get_state("openai") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_fails_fast_without_calling_fn(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)

        calls = []

        async def fn():
            calls.append(1)
            return "ok"

        clock.advance(59.999)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute("openai", fn, CONFIG)

        assert calls == []
        assert exc_info.value.is_retryable is False
        assert exc_info.value.key == "openai"

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)

        clock.advance(60)
        assert await breaker.execute("openai", _ok, CONFIG) == "ok"

        stats = breaker.get_stats("openai")
        assert stats.state == CircuitState.CLOSED
        assert stats.failure_count == 0
        assert stats.next_attempt_time is None

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)

        clock.advance(61)
        with pytest.raises(ProviderError):
            await breaker.execute("openai", _fail, CONFIG)

        stats = breaker.get_stats("openai")
        assert stats.state == CircuitState.OPEN
        assert stats.next_attempt_time == clock.now + 60

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(clock=FakeClock())

        for _ in range(2):
            with pytest.raises(ProviderError):
                await breaker.execute("openai", _fail, CONFIG)
        await breaker.execute("openai", _ok, CONFIG)

        assert breaker.get_stats("openai").failure_count == 0

    @pytest.mark.asyncio
    async def test_failures_outside_monitoring_period_are_forgotten(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        config = CircuitBreakerConfig(failure_threshold=3, reset_timeout=60000, monitoring_period=10000)

        for _ in range(2):
            with pytest.raises(ProviderError):
                await breaker.execute("openai", _fail, config)
        clock.advance(10.5)
        with pytest.raises(ProviderError):
            await breaker.execute("openai", _fail, config)

        stats = breaker.get_stats("openai")
        assert stats.state == CircuitState.CLOSED
        assert stats.failure_count == 1

    @pytest.mark.asyncio
    async def test_failures_within_monitoring_period_accumulate(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        config = CircuitBreakerConfig(failure_threshold=3, reset_timeout=60000, monitoring_period=10000)

        for _ in range(3):
            with pytest.raises(ProviderError):
                await breaker.execute("openai", _fail, config)
            clock.advance(9)

        assert breaker.get_state("openai") == CircuitState.OPEN


class TestKeysAndReset:
    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        breaker = CircuitBreaker(clock=FakeClock())
        await _trip(breaker, "openai")

        assert await breaker.execute("cohere", _ok, CONFIG) == "ok"
        assert breaker.get_state("openai") == CircuitState.OPEN
        assert breaker.get_state("cohere") == CircuitState.CLOSED

    def test_unknown_key(self):
        breaker = CircuitBreaker()
        assert breaker.get_stats("never-used") is None
        assert breaker.get_state("never-used") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self):
        breaker = CircuitBreaker(clock=FakeClock())
        await _trip(breaker)

        breaker.reset("openai")

        stats = breaker.get_stats("openai")
        assert stats.state == CircuitState.CLOSED
        assert stats.failure_count == 0
        assert await breaker.execute("openai", _ok, CONFIG) == "ok"

    @pytest.mark.asyncio
    async def test_stats_are_copies(self):
        breaker = CircuitBreaker(clock=FakeClock())
        await breaker.execute("openai", _ok, CONFIG)

        snapshot = breaker.get_stats("openai")
        snapshot.failure_count = 99

        assert breaker.get_stats("openai").failure_count == 0
        assert set(breaker.get_all_stats()) == {"openai"}
