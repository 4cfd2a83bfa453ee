"""Keyed circuit breaker guarding calls to embedding providers.

One breaker instance is created per service process and injected into the
components that need it. State is kept per key (typically the provider
name) and only changes inside ``execute`` or an explicit ``reset``.
"""

import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import CircuitOpenError
from .models import CircuitBreakerConfig, CircuitBreakerStats, CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """CLOSED -> OPEN after repeated failures, HALF_OPEN trial call after a cooldown.

    Example:
        >>> breaker = CircuitBreaker()
        >>> await breaker.execute("openai", lambda: provider.embed(text), config)
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        """Initialize breaker.

        Args:
            clock: Returns the current time in seconds (defaults to time.monotonic)
        """
        self._clock = clock or time.monotonic
        self._stats: dict[str, CircuitBreakerStats] = {}

    def _get_or_create(self, key: str) -> CircuitBreakerStats:
        stats = self._stats.get(key)
        if stats is None:
            stats = CircuitBreakerStats()
            self._stats[key] = stats
        return stats

    async def execute(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig,
    ) -> T:
        """Run ``fn`` through the breaker for ``key``.

        Args:
            key: Breaker key (provider or operation name)
            fn: Zero-argument coroutine factory
            config: Threshold and reset timeout (ms)

        Returns:
            Whatever ``fn`` returns

        Raises:
            CircuitOpenError: If the circuit is open and the cooldown has not elapsed
            Exception: Any error raised by ``fn``, unchanged
        """
        stats = self._get_or_create(key)

        if stats.state == CircuitState.OPEN:
            now = self._clock()
            if stats.next_attempt_time is not None and now < stats.next_attempt_time:
                raise CircuitOpenError(key, stats.next_attempt_time)
            stats.state = CircuitState.HALF_OPEN
            logger.info("circuit_breaker_half_open", extra={"key": key})

        try:
            result = await fn()
        except Exception:
            self._on_failure(key, stats, config)
            raise

        self._on_success(key, stats)
        return result

    def _on_success(self, key: str, stats: CircuitBreakerStats) -> None:
        stats.success_count += 1
        stats.failure_count = 0
        if stats.state == CircuitState.HALF_OPEN:
            stats.state = CircuitState.CLOSED
            stats.next_attempt_time = None
            logger.info("circuit_breaker_closed", extra={"key": key})

    def _on_failure(
        self,
        key: str,
        stats: CircuitBreakerStats,
        config: CircuitBreakerConfig,
    ) -> None:
        now = self._clock()
        # Failures older than the monitoring period no longer count toward the threshold
        if (
            stats.state == CircuitState.CLOSED
            and stats.last_failure_time is not None
            and now - stats.last_failure_time > config.monitoring_period / 1000
        ):
            stats.failure_count = 0
        stats.failure_count += 1
        stats.last_failure_time = now

        if stats.failure_count >= config.failure_threshold:
            stats.state = CircuitState.OPEN
            stats.next_attempt_time = now + config.reset_timeout / 1000
            logger.warning(
                "circuit_breaker_opened",
                extra={
                    "key": key,
                    "failure_count": stats.failure_count,
                    "reset_timeout_ms": config.reset_timeout,
                },
            )

    def get_stats(self, key: str) -> Optional[CircuitBreakerStats]:
        """Return a copy of the stats for ``key``, or None if never used."""
        stats = self._stats.get(key)
        return stats.model_copy() if stats else None

    def get_state(self, key: str) -> CircuitState:
        stats = self._stats.get(key)
        return stats.state if stats else CircuitState.CLOSED

    def get_all_stats(self) -> dict[str, CircuitBreakerStats]:
        return {key: stats.model_copy() for key, stats in self._stats.items()}

    def reset(self, key: str) -> None:
        """Clear counters for ``key`` and force it CLOSED."""
        self._stats[key] = CircuitBreakerStats()
        logger.info("circuit_breaker_reset", extra={"key": key})
