"""Exception hierarchy for the vector indexing pipeline."""

from typing import Optional


class VectorServiceError(Exception):
    """Base exception for all vector indexer errors."""


class ConfigurationError(VectorServiceError):
    """Raised at startup when credentials are missing or tunables are out of range."""


class RetryableError(VectorServiceError):
    """Error carrying an explicit retryability flag for the retry service."""

    def __init__(
        self,
        message: str,
        is_retryable: bool = True,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.is_retryable = is_retryable
        self.status_code = status_code
        self.retry_after = retry_after


class ProviderError(RetryableError):
    """Raised when an embedding provider call fails.

    HTTP failures are retryable only for 5xx and 429 responses; transport
    failures (connection reset, DNS, timeouts) are always retryable.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        is_retryable: Optional[bool] = None,
    ) -> None:
        if is_retryable is None:
            is_retryable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(message, is_retryable=is_retryable, status_code=status_code)
        self.provider = provider


class MalformedResponseError(ProviderError):
    """Raised when a provider response does not contain a usable embedding."""

    def __init__(self, message: str, provider: str) -> None:
        super().__init__(message, provider=provider, is_retryable=False)


class CircuitOpenError(RetryableError):
    """Raised without calling the provider while its circuit is open."""

    def __init__(self, key: str, next_attempt_time: Optional[float] = None) -> None:
        super().__init__(f"Circuit breaker is open for {key}", is_retryable=False)
        self.key = key
        self.next_attempt_time = next_attempt_time


class EmbeddingTimeoutError(RetryableError):
    """Raised when an operation exceeds its per-call timeout."""

    def __init__(self, context: str, timeout_ms: int) -> None:
        super().__init__(
            f"Operation {context} timed out after {timeout_ms}ms", is_retryable=True
        )
        self.context = context
        self.timeout_ms = timeout_ms


class NotFoundError(VectorServiceError):
    """Raised when a business entity referenced by an event no longer exists."""

    def __init__(self, table: str, entity_id: str) -> None:
        super().__init__(f"{table} not found: {entity_id}")
        self.table = table
        self.entity_id = entity_id


class StorageError(VectorServiceError):
    """Raised on vector store or entity store I/O failures."""
