"""Service layer for the vector indexer.

Provides the embedding client and its provider implementations. Providers
are selected once from configuration; the service wraps every call in the
circuit breaker, retry and timeout policy.
"""

from .embedding_service import (
    AzureOpenAIEmbeddingProvider,
    CohereEmbeddingProvider,
    EmbeddingProvider,
    EmbeddingService,
    GoogleEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)

__all__ = [
    "EmbeddingService",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "GoogleEmbeddingProvider",
    "CohereEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "AzureOpenAIEmbeddingProvider",
    "create_embedding_provider",
]
