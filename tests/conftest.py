"""Shared fixtures for vector indexer tests."""

import hashlib
import math
import re
from typing import Optional

import pytest

from vector_indexer.repositories.in_memory_entity_source import InMemoryEntitySource
from vector_indexer.repositories.vector_document_repository import InMemoryVectorDocumentRepository
from vector_indexer.server.services.vector.aggregation_service import AggregationService
from vector_indexer.server.services.vector.circuit_breaker import CircuitBreaker
from vector_indexer.server.services.vector.dependency_tracker import DependencyTracker
from vector_indexer.server.services.vector.models import (
    CircuitBreakerConfig,
    EntityChangeEvent,
    ErrorHandlingConfig,
    RetryConfig,
)
from vector_indexer.server.services.vector.monitoring_service import MonitoringService
from vector_indexer.server.services.vector.retry_service import RetryService
from vector_indexer.server.services.vector.search_service import VectorSearchService
from vector_indexer.services.embedding_service import EmbeddingProvider, EmbeddingService

WORKSPACE = "w1"


class FakeClock:
    """Manually advanced seconds clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embeddings; queued errors are raised first."""

    name = "fake"

    def __init__(self, dimension: int = 64, model: str = "fake-embed") -> None:
        super().__init__(model, dimension)
        self.calls: list[str] = []
        self.errors: list[Exception] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.errors:
            raise self.errors.pop(0)
        return bag_of_words(text, self.dimension)


def bag_of_words(text: str, dimension: int) -> list[float]:
    vector = [0.0] * dimension
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    norm = math.sqrt(sum(x * x for x in vector)) or 1.0
    return [x / norm for x in vector]


async def no_sleep(_seconds: float) -> None:
    return None


def fast_error_handling(max_retries: int = 3, failure_threshold: int = 5) -> ErrorHandlingConfig:
    return ErrorHandlingConfig(
        retry=RetryConfig(max_retries=max_retries, base_delay=1000, max_delay=30000, jitter=False),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=failure_threshold, reset_timeout=60000),
        timeout=5000,
    )


def seed_workspace(source: InMemoryEntitySource, workspace_id: str = WORKSPACE) -> InMemoryEntitySource:
    """Website project with one sprint, one epic, two dependent tickets and a task."""
    source.add_workspace(workspace_id, "Acme")
    source.add_profile("u1", "Ada", "Lovelace", "ada")
    source.add_project(
        "p1", workspace_id,
        name="Website", slug="web", description="Public marketing site",
        status="active", priority="high", project_manager_id="u1",
    )
    source.add_sprint(
        "S1", workspace_id,
        name="Sprint 1", status="active", project_id="p1",
    )
    source.add_epic(
        "E1", workspace_id,
        title="Auth revamp", status="in_progress", priority="high", project_id="p1",
    )
    source.add_ticket(
        "42", workspace_id,
        ticket_number=42, title="Fix login bug", description="Users cannot log in with SSO",
        status="open", priority="high", category="bug", story_points=3,
        project_id="p1", sprint_id="S1", epic_id="E1", assigned_to="u1",
    )
    source.add_ticket(
        "7", workspace_id,
        ticket_number=7, title="Upgrade OAuth library", status="done", priority="medium",
        category="chore", project_id="p1", sprint_id="S1",
    )
    source.add_task(
        "T9", workspace_id,
        title="Write regression test", status="todo", priority="medium",
    )
    source.add_ticket_dependency("42", "7")
    source.link_task_ticket("T9", "42")
    source.add_label("L1", "auth", ticket_ids=("42",))
    return source


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def entity_source() -> InMemoryEntitySource:
    return seed_workspace(InMemoryEntitySource())


@pytest.fixture
def vector_store() -> InMemoryVectorDocumentRepository:
    return InMemoryVectorDocumentRepository()


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def circuit_breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(clock=clock)


@pytest.fixture
def monitoring(circuit_breaker: CircuitBreaker) -> MonitoringService:
    return MonitoringService(circuit_breaker=circuit_breaker)


@pytest.fixture
def embedding_service(
    provider: FakeEmbeddingProvider,
    circuit_breaker: CircuitBreaker,
    monitoring: MonitoringService,
) -> EmbeddingService:
    return EmbeddingService(
        provider,
        circuit_breaker,
        RetryService(sleep=no_sleep),
        monitoring=monitoring,
        error_handling=fast_error_handling(),
    )


@pytest.fixture
def tracker(entity_source: InMemoryEntitySource) -> DependencyTracker:
    return DependencyTracker(entity_source)


@pytest.fixture
def aggregation(
    entity_source: InMemoryEntitySource,
    tracker: DependencyTracker,
    embedding_service: EmbeddingService,
    vector_store: InMemoryVectorDocumentRepository,
    monitoring: MonitoringService,
) -> AggregationService:
    return AggregationService(
        entity_source,
        tracker,
        embedding_service,
        vector_store,
        monitoring,
        batch_size=2,
        max_concurrent_operations=2,
    )


@pytest.fixture
def search(
    embedding_service: EmbeddingService,
    vector_store: InMemoryVectorDocumentRepository,
    monitoring: MonitoringService,
) -> VectorSearchService:
    return VectorSearchService(embedding_service, vector_store, monitoring)


def ticket_event(
    event_type: str = "UPDATE", ticket_id: str = "42", metadata: Optional[dict] = None
) -> EntityChangeEvent:
    return EntityChangeEvent(
        event_type=event_type,
        source_table="tickets",
        source_id=ticket_id,
        workspace_id=WORKSPACE,
        metadata=metadata,
    )
