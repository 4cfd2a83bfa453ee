"""Retry with exponential backoff and per-call timeouts.

Built on tenacity's ``AsyncRetrying`` with a custom wait and retry predicate
so the delay schedule and error classification match the embedding
pipeline's policy. Delays and durations are expressed in milliseconds.
"""

import asyncio
import logging
import random
import socket
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .exceptions import EmbeddingTimeoutError
from .models import ApiCallResult, RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

# Transport failures that are worth another attempt
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.NetworkError,
    httpx.TimeoutException,
    httpx.RemoteProtocolError,
    ConnectionResetError,
    ConnectionRefusedError,
    TimeoutError,
    socket.gaierror,
)


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as retryable.

    An explicit ``is_retryable`` attribute wins; otherwise known transient
    network errors and HTTP 429/502/503/504 are retryable. Everything else
    aborts the retry loop immediately.
    """
    flag = getattr(error, "is_retryable", None)
    if flag is not None:
        return bool(flag)

    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True

    return _status_code(error) in RETRYABLE_STATUS_CODES


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    uniform: Callable[[float, float], float] = random.uniform,
) -> int:
    """Delay in ms before retry ``attempt`` (1-based).

    ``min(base_delay * backoff_multiplier ** attempt, max_delay)``, jittered
    by up to +/-25% when enabled, floored at zero and truncated to an int.
    """
    delay = min(config.base_delay * config.backoff_multiplier ** attempt, config.max_delay)

    if config.jitter:
        delay += delay * 0.25 * uniform(-1, 1)

    return int(max(0, delay))


class RetryService:
    """Executes coroutines with bounded retries and reports an outcome envelope."""

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        """Initialize retry service.

        Args:
            sleep: Coroutine used between attempts (seconds); injectable for tests
            uniform: Random source for jitter
        """
        self._sleep = sleep
        self._uniform = uniform

    def _wait(self, config: RetryConfig) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            return calculate_delay(retry_state.attempt_number, config, self._uniform) / 1000

        return wait

    @staticmethod
    def _log_retry(context: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retrying_operation",
                extra={
                    "context": context,
                    "attempt": retry_state.attempt_number,
                    "delay_ms": int((retry_state.next_action.sleep if retry_state.next_action else 0) * 1000),
                    "error": str(error),
                },
            )

        return before_sleep

    async def execute_with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        config: RetryConfig,
        context: str = "operation",
    ) -> ApiCallResult[T]:
        """Call ``fn`` up to ``max_retries + 1`` times.

        Never raises for failures of ``fn``; the last error is preserved on
        the returned envelope together with the number of calls made.

        Args:
            fn: Zero-argument coroutine factory
            config: Retry policy
            context: Label used in logs

        Returns:
            ApiCallResult with success flag, data or error, attempts and total_duration (ms)
        """
        start = time.monotonic()
        attempts = 0

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return await fn()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_retries + 1),
            wait=self._wait(config),
            retry=retry_if_exception(is_retryable_error),
            sleep=self._sleep,
            before_sleep=self._log_retry(context),
            reraise=True,
        )

        try:
            data = await retrying(attempt)
        except Exception as e:
            duration = (time.monotonic() - start) * 1000
            logger.error(
                "operation_failed_after_retries",
                extra={
                    "context": context,
                    "attempts": attempts,
                    "retryable": is_retryable_error(e),
                    "error": str(e),
                },
            )
            return ApiCallResult(
                success=False, error=e, attempts=attempts, total_duration=duration
            )

        duration = (time.monotonic() - start) * 1000
        if attempts > 1:
            logger.info(
                "operation_succeeded_after_retry",
                extra={"context": context, "attempts": attempts},
            )
        return ApiCallResult(
            success=True, data=data, attempts=attempts, total_duration=duration
        )

    async def with_timeout(
        self,
        operation: Awaitable[T],
        timeout_ms: int,
        context: str = "operation",
    ) -> T:
        """Await ``operation`` with a deadline.

        The operation is cancelled when the deadline passes rather than left
        running in the background, so a timed-out provider request cannot
        finish later and hold its connection. The caller only ever sees the
        timeout, same as if the request were abandoned.

        Raises:
            EmbeddingTimeoutError: If the deadline passes first (retryable)
        """
        try:
            return await asyncio.wait_for(operation, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(
                "operation_timed_out",
                extra={"context": context, "timeout_ms": timeout_ms},
            )
            raise EmbeddingTimeoutError(context, timeout_ms) from None
