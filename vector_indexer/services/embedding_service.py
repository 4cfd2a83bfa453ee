"""Embedding service for generating vector representations of aggregated text.

Supports five fixed providers (OpenAI, Google, Cohere, Ollama, Azure OpenAI),
each with its own endpoint, auth and payload shape. The provider is chosen
once from configuration; every call runs through the injected circuit
breaker, the retry service and a per-call timeout, and is reported to
monitoring whether it succeeds or fails.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, List, Optional

import httpx

from ..server.config.settings import EmbeddingProviderConfig, ProviderName
from ..server.services.vector.circuit_breaker import CircuitBreaker
from ..server.services.vector.exceptions import MalformedResponseError, ProviderError
from ..server.services.vector.models import ErrorHandlingConfig
from ..server.services.vector.retry_service import RetryService

if TYPE_CHECKING:
    from ..server.services.vector.monitoring_service import MonitoringService

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    name: str = "base"

    def __init__(
        self,
        model: str,
        dimension: int,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self._dimension = dimension
        self._transport = transport

    @property
    def dimension(self) -> int:
        """Return the embedding dimension for this provider."""
        return self._dimension

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Generate embedding vector for text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector (list of floats)

        Raises:
            ProviderError: On HTTP or transport failure
            MalformedResponseError: If the response carries no vector
        """
        pass

    async def _post(self, url: str, payload: dict[str, Any], headers: Optional[dict[str, str]] = None) -> Any:
        """POST JSON and return the decoded body, mapping failures to ProviderError."""
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, headers=request_headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                f"{self.name} embedding request failed with status {status}: {e.response.text[:200]}",
                provider=self.name,
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"{self.name} embedding request failed: {e}",
                provider=self.name,
                is_retryable=True,
            ) from e
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.name} returned a non-JSON response", provider=self.name
            ) from e

        return data

    def _require_vector(self, value: Any) -> List[float]:
        if not isinstance(value, list) or not value:
            raise MalformedResponseError(
                f"Invalid response format from {self.name}", provider=self.name
            )
        try:
            return [float(x) for x in value]
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(
                f"Non-numeric embedding from {self.name}", provider=self.name
            ) from e


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embedding provider using text-embedding-3-small (1536 dimensions)."""

    name = "openai"
    API_URL = "https://api.openai.com/v1/embeddings"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize OpenAI embedding provider.

        Args:
            api_key: OpenAI API key
            model: Model name (default: text-embedding-3-small for 1536d)
            dimension: Expected vector length
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        super().__init__(model, dimension, timeout, transport)
        self.api_key = api_key

        logger.info(
            "openai_embedding_provider_initialized",
            extra={"model": model, "dimension": dimension}
        )

    async def embed(self, text: str) -> List[float]:
        data = await self._post(
            self.API_URL,
            {"input": text, "model": self.model, "encoding_format": "float"},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            vector = None
        return self._require_vector(vector)


class GoogleEmbeddingProvider(EmbeddingProvider):
    """Google Generative Language embedding provider (text-embedding-004, 768 dimensions)."""

    name = "google"
    API_BASE = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: str,
        model: str = "models/text-embedding-004",
        dimension: int = 768,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(model, dimension, timeout, transport)
        self.api_key = api_key

        logger.info(
            "google_embedding_provider_initialized",
            extra={"model": model, "dimension": dimension}
        )

    async def embed(self, text: str) -> List[float]:
        url = f"{self.API_BASE}/{self.model}:embedContent?key={self.api_key}"
        data = await self._post(url, {"content": {"parts": [{"text": text}]}})
        try:
            vector = data["embedding"]["values"]
        except (KeyError, TypeError):
            vector = None
        return self._require_vector(vector)


class CohereEmbeddingProvider(EmbeddingProvider):
    """Cohere embedding provider using embed-english-v3.0 (1024 dimensions)."""

    name = "cohere"
    API_URL = "https://api.cohere.ai/v1/embed"

    def __init__(
        self,
        api_key: str,
        model: str = "embed-english-v3.0",
        dimension: int = 1024,
        input_type: str = "search_document",
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(model, dimension, timeout, transport)
        self.api_key = api_key
        self.input_type = input_type

        logger.info(
            "cohere_embedding_provider_initialized",
            extra={"model": model, "dimension": dimension, "input_type": input_type}
        )

    async def embed(self, text: str) -> List[float]:
        data = await self._post(
            self.API_URL,
            {"texts": [text], "model": self.model, "input_type": self.input_type},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            vector = data["embeddings"][0]
        except (KeyError, IndexError, TypeError):
            vector = None
        return self._require_vector(vector)


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Self-hosted Ollama embedding provider (nomic-embed-text, 768 dimensions)."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(model, dimension, timeout, transport)
        self.base_url = base_url.rstrip("/")

        logger.info(
            "ollama_embedding_provider_initialized",
            extra={"url": self.base_url, "model": model, "dimension": dimension}
        )

    async def embed(self, text: str) -> List[float]:
        data = await self._post(
            f"{self.base_url}/api/embeddings",
            {"model": self.model, "prompt": text},
        )
        vector = data.get("embedding") if isinstance(data, dict) else None
        return self._require_vector(vector)


class AzureOpenAIEmbeddingProvider(EmbeddingProvider):
    """Azure OpenAI deployment embedding provider (1536 dimensions by default)."""

    name = "azure"

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        deployment_name: str,
        api_version: str = "2024-02-01",
        dimension: int = 1536,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(deployment_name, dimension, timeout, transport)
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.deployment_name = deployment_name
        self.api_version = api_version

        logger.info(
            "azure_embedding_provider_initialized",
            extra={"deployment": deployment_name, "dimension": dimension}
        )

    async def embed(self, text: str) -> List[float]:
        url = (
            f"{self.endpoint}/openai/deployments/{self.deployment_name}"
            f"/embeddings?api-version={self.api_version}"
        )
        data = await self._post(url, {"input": text}, {"api-key": self.api_key})
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            vector = None
        return self._require_vector(vector)


def create_embedding_provider(
    config: EmbeddingProviderConfig,
    timeout: float = 30,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    """Factory function selecting the configured provider.

    Args:
        config: Validated provider configuration
        timeout: Per-request HTTP timeout in seconds
        transport: Optional httpx transport shared by the provider (tests)

    Returns:
        Provider instance for ``config.provider``

    Example:
        >>> provider = create_embedding_provider(load_config().embedding)
    """
    if config.provider == ProviderName.OPENAI:
        return OpenAIEmbeddingProvider(
            api_key=config.api_key, model=config.model, dimension=config.dimensions,
            timeout=timeout, transport=transport,
        )
    if config.provider == ProviderName.GOOGLE:
        return GoogleEmbeddingProvider(
            api_key=config.api_key, model=config.model, dimension=config.dimensions,
            timeout=timeout, transport=transport,
        )
    if config.provider == ProviderName.COHERE:
        return CohereEmbeddingProvider(
            api_key=config.api_key, model=config.model, dimension=config.dimensions,
            input_type=config.input_type or "search_document",
            timeout=timeout, transport=transport,
        )
    if config.provider == ProviderName.OLLAMA:
        return OllamaEmbeddingProvider(
            base_url=config.base_url or "http://localhost:11434", model=config.model,
            dimension=config.dimensions, timeout=timeout, transport=transport,
        )
    return AzureOpenAIEmbeddingProvider(
        api_key=config.api_key, endpoint=config.endpoint,
        deployment_name=config.deployment_name,
        api_version=config.api_version or "2024-02-01",
        dimension=config.dimensions, timeout=timeout, transport=transport,
    )


class EmbeddingService:
    """Resilient embedding client used by the aggregation and search services.

    Example:
        >>> service = EmbeddingService(provider, CircuitBreaker(), RetryService(), monitoring)
        >>> vector = await service.generate_embedding("Ticket #42: Fix login bug")
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        circuit_breaker: CircuitBreaker,
        retry_service: RetryService,
        monitoring: Optional["MonitoringService"] = None,
        error_handling: Optional[ErrorHandlingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize embedding service.

        Args:
            provider: Provider selected at startup
            circuit_breaker: Shared breaker, keyed by provider name
            retry_service: Retry/timeout executor
            monitoring: Optional metrics sink
            error_handling: Retry, breaker and timeout policy
            clock: Seconds clock used for durations
        """
        self.provider = provider
        self.circuit_breaker = circuit_breaker
        self.retry_service = retry_service
        self.monitoring = monitoring
        self.error_handling = error_handling or ErrorHandlingConfig()
        self._clock = clock

        logger.info(
            "embedding_service_initialized",
            extra={
                "provider": provider.name,
                "model": provider.model,
                "dimension": provider.dimension
            }
        )

    @property
    def dimension(self) -> int:
        """Return the embedding dimension."""
        return self.provider.dimension

    async def _call_provider(self, text: str) -> List[float]:
        vector = await self.retry_service.with_timeout(
            self.provider.embed(text),
            self.error_handling.timeout,
            f"{self.provider.name}_embedding",
        )
        if len(vector) != self.provider.dimension:
            raise MalformedResponseError(
                f"{self.provider.name} returned {len(vector)} dimensions, "
                f"expected {self.provider.dimension}",
                provider=self.provider.name,
            )
        return vector

    async def _with_retry(self, text: str, attempts: list[int]) -> List[float]:
        result = await self.retry_service.execute_with_retry(
            lambda: self._call_provider(text),
            self.error_handling.retry,
            f"{self.provider.name}_embedding",
        )
        attempts.append(result.attempts)
        if not result.success:
            raise result.error
        return result.data

    async def generate_embedding(
        self,
        text: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> List[float]:
        """Generate an embedding through breaker -> retry -> timeout -> provider.

        Args:
            text: Text to embed
            entity_type: Document type for metrics
            entity_id: Entity id for metrics
            workspace_id: Workspace for metrics

        Returns:
            Embedding vector of ``dimension`` floats

        Raises:
            CircuitOpenError: If the provider circuit is open
            ProviderError: When retries are exhausted or the error is not retryable
        """
        start = self._clock()
        attempts: list[int] = []

        try:
            embedding = await self.circuit_breaker.execute(
                self.provider.name,
                lambda: self._with_retry(text, attempts),
                self.error_handling.circuit_breaker,
            )
        except Exception as e:
            duration = (self._clock() - start) * 1000
            logger.exception(
                "embedding_generation_failed",
                extra={
                    "provider": self.provider.name,
                    "error": str(e),
                    "text_length": len(text),
                    "attempts": sum(attempts),
                    "entity_id": entity_id,
                }
            )
            await self._record(
                text, duration, False, None, sum(attempts),
                entity_type, entity_id, workspace_id, e,
            )
            raise

        duration = (self._clock() - start) * 1000
        logger.debug(
            "embedding_generated",
            extra={
                "provider": self.provider.name,
                "dimensions": len(embedding),
                "attempts": sum(attempts),
                "duration_ms": round(duration, 2),
            }
        )
        await self._record(
            text, duration, True, len(embedding), sum(attempts),
            entity_type, entity_id, workspace_id,
        )
        return embedding

    async def _record(
        self,
        text: str,
        duration: float,
        success: bool,
        dimensions: Optional[int],
        attempts: int,
        entity_type: Optional[str],
        entity_id: Optional[str],
        workspace_id: Optional[str],
        error: Optional[BaseException] = None,
    ) -> None:
        if self.monitoring is None:
            return
        await self.monitoring.record_embedding_metric(
            provider=self.provider.name,
            model=self.provider.model,
            text_length=len(text),
            duration=duration,
            success=success,
            embedding_dimensions=dimensions,
            attempts=attempts,
            circuit_breaker_state=self.circuit_breaker.get_state(self.provider.name),
            error_type=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            entity_type=entity_type,
            entity_id=entity_id,
            workspace_id=workspace_id,
        )

    def get_circuit_breaker_stats(self):
        """Breaker stats for the configured provider (None before first call)."""
        return self.circuit_breaker.get_stats(self.provider.name)

    def reset_circuit_breaker(self) -> None:
        self.circuit_breaker.reset(self.provider.name)

    def get_config(self) -> dict[str, Any]:
        return {
            "provider": self.provider.name,
            "model": self.provider.model,
            "dimensions": self.provider.dimension,
            "timeout_ms": self.error_handling.timeout,
            "max_retries": self.error_handling.retry.max_retries,
        }
