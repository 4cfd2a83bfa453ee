"""
Service Factory Module

Wires the vector indexing services together from a validated
``VectorServiceConfig`` and picks the storage backend.

Usage:
    from .service_factory import build_vector_services

    services = build_vector_services(load_config())
    await services.start()
    ...
    await services.close()

Environment Variables:
    VECTOR_STORAGE_BACKEND: "postgres" (default) or "memory"
"""

import os
from typing import Optional

import httpx

from ....repositories.entity_source import EntitySource
from ....repositories.in_memory_entity_source import InMemoryEntitySource
from ....repositories.pg_client import PostgresClient
from ....repositories.postgres_entity_source import PostgresEntitySource
from ....repositories.vector_document_repository import (
    InMemoryVectorDocumentRepository,
    PgVectorDocumentRepository,
    VectorDocumentRepository,
)
from ....services.embedding_service import (
    EmbeddingProvider,
    EmbeddingService,
    create_embedding_provider,
)
from ...config.logfire_config import get_logger
from ...config.settings import VectorServiceConfig
from .aggregation_service import AggregationService
from .circuit_breaker import CircuitBreaker
from .dependency_tracker import DependencyTracker
from .event_dispatcher import EventDispatcher
from .monitoring_service import MonitoringService
from .retry_service import RetryService
from .rpc_service import VectorRpcService
from .search_service import VectorSearchService

logger = get_logger(__name__)

STORAGE_BACKENDS = ("postgres", "memory")


def get_storage_backend() -> str:
    """
    Get the configured storage backend.

    Returns:
        "postgres" or "memory"
    """
    backend = os.getenv("VECTOR_STORAGE_BACKEND", "postgres").lower()
    if backend not in STORAGE_BACKENDS:
        logger.warning(f"Invalid VECTOR_STORAGE_BACKEND '{backend}', defaulting to 'postgres'")
        return "postgres"
    return backend


class VectorServices:
    """Container for one process's vector services."""

    def __init__(
        self,
        config: VectorServiceConfig,
        backend: str,
        client: Optional[PostgresClient],
        entity_source: EntitySource,
        vector_store: VectorDocumentRepository,
        circuit_breaker: CircuitBreaker,
        monitoring: MonitoringService,
        embedding_service: EmbeddingService,
        dependency_tracker: DependencyTracker,
        aggregation: AggregationService,
        search: VectorSearchService,
        dispatcher: EventDispatcher,
        rpc: VectorRpcService,
    ) -> None:
        self.config = config
        self.backend = backend
        self.client = client
        self.entity_source = entity_source
        self.vector_store = vector_store
        self.circuit_breaker = circuit_breaker
        self.monitoring = monitoring
        self.embedding_service = embedding_service
        self.dependency_tracker = dependency_tracker
        self.aggregation = aggregation
        self.search = search
        self.dispatcher = dispatcher
        self.rpc = rpc

    async def start(self, ensure_schema: bool = False) -> None:
        """Open the pool, optionally create the vector table, start workers."""
        if self.client is not None:
            await self.client.connect()
            if ensure_schema and isinstance(self.vector_store, PgVectorDocumentRepository):
                await self.vector_store.ensure_schema(self.config.embedding.dimensions)

        self.dispatcher.start()
        if self.config.monitoring.enable_metrics:
            self.monitoring.start_periodic_collection()

        logger.info(
            "vector_services_started",
            extra={"backend": self.backend, **self.config.summary()["embedding"]},
        )

    async def close(self) -> None:
        await self.dispatcher.stop()
        await self.monitoring.stop_periodic_collection()
        if self.client is not None:
            await self.client.disconnect()
        logger.info("vector_services_stopped", extra={"backend": self.backend})


def build_vector_services(
    config: VectorServiceConfig,
    backend: Optional[str] = None,
    entity_source: Optional[EntitySource] = None,
    vector_store: Optional[VectorDocumentRepository] = None,
    provider: Optional[EmbeddingProvider] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> VectorServices:
    """
    Build the service graph. No I/O happens until ``start``.

    Args:
        config: Validated configuration
        backend: "postgres" or "memory" (defaults to VECTOR_STORAGE_BACKEND)
        entity_source: Override the business entity source
        vector_store: Override the vector document store
        provider: Override the embedding provider
        transport: httpx transport passed to the configured provider

    Returns:
        VectorServices container
    """
    backend = backend or get_storage_backend()

    client: Optional[PostgresClient] = None
    if backend == "postgres" and (entity_source is None or vector_store is None):
        client = PostgresClient(
            config.database.url,
            min_size=config.database.pool_min_size,
            max_size=config.database.pool_max_size,
        )

    if entity_source is None:
        entity_source = PostgresEntitySource(client) if client else InMemoryEntitySource()
    if vector_store is None:
        vector_store = PgVectorDocumentRepository(client) if client else InMemoryVectorDocumentRepository()

    error_handling = config.error_handling()
    circuit_breaker = CircuitBreaker()
    monitoring = MonitoringService(
        retention_period=config.monitoring.retention_period,
        metrics_interval=config.monitoring.metrics_interval,
        error_rate_threshold=config.monitoring.alert_thresholds.error_rate,
        response_time_threshold=config.monitoring.alert_thresholds.average_response_time,
        circuit_breaker=circuit_breaker,
    )

    if provider is None:
        provider = create_embedding_provider(
            config.embedding,
            timeout=error_handling.timeout / 1000,
            transport=transport,
        )
    embedding_service = EmbeddingService(
        provider,
        circuit_breaker,
        RetryService(),
        monitoring=monitoring,
        error_handling=error_handling,
    )

    dependency_tracker = DependencyTracker(entity_source)
    aggregation = AggregationService(
        entity_source,
        dependency_tracker,
        embedding_service,
        vector_store,
        monitoring,
        batch_size=config.database.batch_size,
        max_concurrent_operations=config.database.max_concurrent_operations,
    )
    search = VectorSearchService(
        embedding_service, vector_store, monitoring, max_results=config.database.search_limit,
    )
    dispatcher = EventDispatcher(
        aggregation,
        max_queue_size=config.event_queue_size,
        workers=config.database.max_concurrent_operations,
    )
    rpc = VectorRpcService(
        aggregation,
        search,
        embedding_service,
        monitoring,
        config_summary=config.summary(),
    )

    logger.info(
        "vector_services_built",
        extra={"backend": backend, "provider": provider.name, "dimensions": provider.dimension},
    )

    return VectorServices(
        config=config,
        backend=backend,
        client=client,
        entity_source=entity_source,
        vector_store=vector_store,
        circuit_breaker=circuit_breaker,
        monitoring=monitoring,
        embedding_service=embedding_service,
        dependency_tracker=dependency_tracker,
        aggregation=aggregation,
        search=search,
        dispatcher=dispatcher,
        rpc=rpc,
    )
