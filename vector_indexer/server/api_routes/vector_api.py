"""
Vector indexing API endpoints

Exposes the vector service operations over HTTP/JSON:
- Entity processing and removal (synchronous)
- Event ingestion through the bounded dispatcher queue
- Semantic and more-like-this search
- Raw embedding generation
- Health, metrics and per-workspace document stats
"""

from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from ..config.logfire_config import get_logger, logfire
from ..services.vector.exceptions import CircuitOpenError, VectorServiceError
from ..services.vector.models import DependencyChangeEvent, EntityChangeEvent
from ..services.vector.rpc_service import (
    GenerateEmbeddingRequest,
    GenerateEmbeddingResponse,
    HealthResponse,
    MetricsResponse,
    OperationResponse,
    RemoveEntityResponse,
    SearchSimilarRequest,
    SearchSimilarResponse,
    SearchVectorRequest,
    SearchVectorResponse,
)
from ..services.vector.service_factory import VectorServices

logger = get_logger(__name__)

router = APIRouter(prefix="/api/vector", tags=["vector"])


class EventAccepted(BaseModel):
    """Response for queued events"""
    accepted: bool = True
    queue_depth: int


def get_vector_services(request: Request) -> VectorServices:
    services = getattr(request.app.state, "vector_services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Vector services not initialized")
    return services


@router.post("/entities/process")
async def process_entity(
    event: EntityChangeEvent,
    services: VectorServices = Depends(get_vector_services),
) -> OperationResponse:
    """
    Re-embed an entity and its directly related entities.

    Failures are reported in the body (``success: false``), not as HTTP errors.
    """
    logfire.info(
        f"Process entity | table={event.source_table} | id={event.source_id} | "
        f"workspace_id={event.workspace_id}"
    )
    return await services.rpc.process_entity(event)


@router.post("/entities/remove")
async def remove_entity(
    event: EntityChangeEvent,
    services: VectorServices = Depends(get_vector_services),
) -> RemoveEntityResponse:
    """
    Delete an entity's document and refresh the entities that referenced it.
    """
    logfire.info(
        f"Remove entity | table={event.source_table} | id={event.source_id} | "
        f"workspace_id={event.workspace_id}"
    )
    return await services.rpc.remove_entity(event)


@router.post("/events", status_code=202)
async def submit_event(
    event: Union[DependencyChangeEvent, EntityChangeEvent],
    services: VectorServices = Depends(get_vector_services),
) -> EventAccepted:
    """
    Queue a change event for background processing.

    Waits for queue space when the dispatcher is saturated.
    """
    await services.dispatcher.submit(event)
    return EventAccepted(queue_depth=services.dispatcher.queue_depth)


@router.post("/search")
async def search_vector(
    request: SearchVectorRequest,
    services: VectorServices = Depends(get_vector_services),
) -> SearchVectorResponse:
    """
    Semantic search over indexed documents in a workspace.

    Returns an empty result set when the search itself fails.
    """
    logfire.info(
        f"Vector search | query={request.query} | types={request.document_types} | "
        f"workspace_id={request.workspace_id}"
    )
    return await services.rpc.search_vector(request)


@router.post("/search/similar")
async def search_similar(
    request: SearchSimilarRequest,
    services: VectorServices = Depends(get_vector_services),
) -> SearchSimilarResponse:
    return await services.rpc.search_similar(request)


@router.post("/embeddings")
async def generate_embedding(
    request: GenerateEmbeddingRequest,
    services: VectorServices = Depends(get_vector_services),
) -> GenerateEmbeddingResponse:
    """
    Generate an embedding with the configured provider.

    Provider failures surface as HTTP errors: 503 while the circuit is open,
    502 for other embedding failures.
    """
    try:
        return await services.rpc.generate_embedding(request)
    except CircuitOpenError as e:
        logger.warning(f"Embedding circuit open: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except VectorServiceError as e:
        logger.error(f"Embedding generation failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/health")
async def vector_health(services: VectorServices = Depends(get_vector_services)) -> HealthResponse:
    return await services.rpc.get_health()


@router.get("/metrics")
async def vector_metrics(services: VectorServices = Depends(get_vector_services)) -> MetricsResponse:
    return await services.rpc.get_metrics()


@router.get("/stats/{workspace_id}")
async def workspace_stats(
    workspace_id: str,
    project_id: Optional[str] = Query(None),
    services: VectorServices = Depends(get_vector_services),
):
    """
    Document counts by type and source table for a workspace.
    """
    try:
        stats = await services.vector_store.get_stats(workspace_id, project_id)
        return {"workspace_id": workspace_id, "project_id": project_id, **stats.model_dump()}
    except Exception as e:
        logger.error(f"Failed to get vector stats: {e}")
        raise HTTPException(status_code=500, detail=str(e))
