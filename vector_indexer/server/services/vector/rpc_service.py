"""Request/response facade over the vector services.

Failure semantics per operation:

- process_entity / remove_entity: never raise, return ``success=False``
- search_vector / search_similar: never raise, return empty results
- generate_embedding: re-raises so callers see the raw failure
- get_health: never raises, reports ``unhealthy`` on internal failure
- get_metrics: never raises, returns a JSON error object on failure
"""

import json
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from ....repositories.vector_document_repository import VectorSearchResult
from ....services.embedding_service import EmbeddingService
from .aggregation_service import AggregationService
from .models import EntityChangeEvent, HealthStatus, utc_now
from .monitoring_service import MonitoringService
from .search_service import VectorSearchService

logger = logging.getLogger(__name__)


# =============================================================================
# Requests
# =============================================================================


class SearchVectorRequest(BaseModel):
    query: str = Field(..., min_length=1)
    workspace_id: str
    project_id: Optional[str] = None
    document_types: Optional[list[str]] = None
    limit: int = Field(10, ge=1, le=500)
    similarity_threshold: float = Field(0.7, ge=0, le=1)


class SearchSimilarRequest(BaseModel):
    source_table: str
    source_id: str
    workspace_id: str
    limit: int = Field(5, ge=1, le=500)
    similarity_threshold: float = Field(0.8, ge=0, le=1)


class GenerateEmbeddingRequest(BaseModel):
    content: str = Field(..., min_length=1)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    workspace_id: Optional[str] = None


# =============================================================================
# Responses
# =============================================================================


class OperationResponse(BaseModel):
    success: bool
    message: str


class RemoveEntityResponse(OperationResponse):
    affected_entities: int = 0


class SearchResultItem(BaseModel):
    document: VectorSearchResult
    similarity_score: float


class SearchVectorResponse(BaseModel):
    results: list[SearchResultItem] = Field(default_factory=list)
    total_count: int = 0


class SearchSimilarResponse(BaseModel):
    results: list[SearchResultItem] = Field(default_factory=list)


class GenerateEmbeddingResponse(BaseModel):
    embedding: list[float]
    dimensions: int


class HealthResponse(BaseModel):
    status: HealthStatus
    service: str = "vector"
    timestamp: str


class MetricsResponse(BaseModel):
    metrics: str


def _items(results: list[VectorSearchResult]) -> list[SearchResultItem]:
    return [SearchResultItem(document=r, similarity_score=r.similarity) for r in results]


class VectorRpcService:
    """The vector service's public operations."""

    def __init__(
        self,
        aggregation: AggregationService,
        search: VectorSearchService,
        embedding_service: EmbeddingService,
        monitoring: MonitoringService,
        config_summary: Optional[dict[str, Any]] = None,
    ) -> None:
        self.aggregation = aggregation
        self.search = search
        self.embedding_service = embedding_service
        self.monitoring = monitoring
        self.config_summary = config_summary or {}

    async def process_entity(self, event: EntityChangeEvent) -> OperationResponse:
        try:
            await self.aggregation.process_entity_for_embedding(event)
        except Exception as e:
            logger.error(
                "process_entity_failed",
                extra={"source_table": event.source_table, "source_id": event.source_id, "error": str(e)},
            )
            return OperationResponse(success=False, message=f"Failed to process entity: {e}")
        return OperationResponse(
            success=True,
            message=f"Processed {event.source_table}/{event.source_id}",
        )

    async def remove_entity(self, event: EntityChangeEvent) -> RemoveEntityResponse:
        try:
            reprocessed = await self.aggregation.remove_entity_embedding(event)
        except Exception as e:
            logger.error(
                "remove_entity_failed",
                extra={"source_table": event.source_table, "source_id": event.source_id, "error": str(e)},
            )
            return RemoveEntityResponse(success=False, message=f"Failed to remove entity: {e}")
        return RemoveEntityResponse(
            success=True,
            message=f"Removed {event.source_table}/{event.source_id}",
            affected_entities=reprocessed,
        )

    async def search_vector(self, request: SearchVectorRequest) -> SearchVectorResponse:
        try:
            results = await self.search.search_by_query(
                request.query,
                request.workspace_id,
                project_id=request.project_id,
                document_types=request.document_types,
                limit=request.limit,
                similarity_threshold=request.similarity_threshold,
            )
        except Exception as e:
            logger.error("search_vector_failed", extra={"workspace_id": request.workspace_id, "error": str(e)})
            return SearchVectorResponse()
        return SearchVectorResponse(results=_items(results), total_count=len(results))

    async def search_similar(self, request: SearchSimilarRequest) -> SearchSimilarResponse:
        try:
            results = await self.search.find_similar_entities(
                request.source_table,
                request.source_id,
                request.workspace_id,
                limit=request.limit,
                similarity_threshold=request.similarity_threshold,
            )
        except Exception as e:
            logger.error(
                "search_similar_failed",
                extra={"source_table": request.source_table, "source_id": request.source_id, "error": str(e)},
            )
            return SearchSimilarResponse()
        return SearchSimilarResponse(results=_items(results))

    async def generate_embedding(self, request: GenerateEmbeddingRequest) -> GenerateEmbeddingResponse:
        """Embed arbitrary content.

        Raises:
            VectorServiceError: Any embedding failure, unchanged
        """
        embedding = await self.embedding_service.generate_embedding(
            request.content,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            workspace_id=request.workspace_id,
        )
        return GenerateEmbeddingResponse(embedding=embedding, dimensions=len(embedding))

    async def get_health(self) -> HealthResponse:
        try:
            status = self.monitoring.get_service_health_metrics().status
        except Exception as e:
            logger.error("health_check_failed", extra={"error": str(e)})
            status = HealthStatus.UNHEALTHY
        return HealthResponse(status=status, timestamp=utc_now().isoformat())

    async def get_metrics(self) -> MetricsResponse:
        try:
            performance = {
                key: stats.model_dump(mode="json")
                for key, stats in self.monitoring.get_performance_stats().items()
            }
            payload = {
                "performance": performance,
                "health": self.monitoring.get_service_health_metrics().model_dump(mode="json"),
                "vector_store": self.monitoring.get_vector_store_stats().model_dump(mode="json"),
                "config": self.config_summary,
                "timestamp": utc_now().isoformat(),
            }
            return MetricsResponse(metrics=json.dumps(payload, default=str))
        except Exception as e:
            logger.error("get_metrics_failed", extra={"error": str(e)})
            return MetricsResponse(metrics=json.dumps({
                "error": str(e),
                "timestamp": utc_now().isoformat(),
            }))
