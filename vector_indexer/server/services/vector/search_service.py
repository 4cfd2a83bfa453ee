"""Semantic search over vector documents."""

import logging
import time
from typing import Callable, Optional

from ....repositories.vector_document_repository import (
    SearchFilters,
    VectorDocumentRepository,
    VectorSearchResult,
)
from ....services.embedding_service import EmbeddingService
from .monitoring_service import MonitoringService

logger = logging.getLogger(__name__)


class VectorSearchService:
    """Query-text and more-like-this search within a workspace.

    Example:
        >>> search = VectorSearchService(embeddings, store, monitoring)
        >>> results = await search.search_by_query("login bug", "w1", document_types=["ticket"])
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorDocumentRepository,
        monitoring: MonitoringService,
        max_results: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize search.

        Args:
            embedding_service: Embeds query text
            vector_store: Vector document repository
            monitoring: Metrics sink
            max_results: Upper bound applied to every requested limit (VECTOR_DB_SEARCH_LIMIT)
            clock: Seconds clock used for durations
        """
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.monitoring = monitoring
        self.max_results = max_results
        self._clock = clock

    async def search_by_query(
        self,
        query: str,
        workspace_id: str,
        project_id: Optional[str] = None,
        document_types: Optional[list[str]] = None,
        limit: int = 10,
        similarity_threshold: float = 0.7,
    ) -> list[VectorSearchResult]:
        """Embed ``query`` and return the closest documents.

        When several document types are requested the store is searched
        once per type and the merged list is re-sorted and truncated.

        Args:
            query: Free text
            workspace_id: Tenant scope
            project_id: Optional project filter
            document_types: Optional document type filter (ticket, epic, ...)
            limit: Maximum results, capped at ``max_results``
            similarity_threshold: Minimum similarity

        Returns:
            Results sorted by descending similarity
        """
        limit = min(limit, self.max_results)
        start = self._clock()
        try:
            embedding = await self.embedding_service.generate_embedding(
                query, workspace_id=workspace_id
            )

            results: list[VectorSearchResult] = []
            for document_type in document_types or [None]:
                results.extend(await self.vector_store.semantic_search(
                    embedding,
                    SearchFilters(
                        workspace_id=workspace_id,
                        project_id=project_id,
                        document_type=document_type,
                        limit=limit,
                        similarity_threshold=similarity_threshold,
                    ),
                ))

            results.sort(key=lambda r: r.similarity, reverse=True)
            results = results[:limit]
        except Exception as e:
            logger.error(
                "vector_search_failed",
                extra={"workspace_id": workspace_id, "query_length": len(query), "error": str(e)},
            )
            await self._record(query, 0, start, False, limit, similarity_threshold, workspace_id, e)
            raise

        await self._record(query, len(results), start, True, limit, similarity_threshold, workspace_id)
        logger.info(
            "vector_search_completed",
            extra={
                "workspace_id": workspace_id,
                "results_count": len(results),
                "document_types": document_types,
            },
        )
        return results

    async def find_similar_entities(
        self,
        source_table: str,
        source_id: str,
        workspace_id: str,
        limit: int = 5,
        similarity_threshold: float = 0.8,
    ) -> list[VectorSearchResult]:
        """Neighbours of an indexed entity, excluding the entity itself.

        Returns an empty list when the entity has no stored document.
        ``limit`` is capped at ``max_results``.
        """
        limit = min(limit, self.max_results)
        start = self._clock()
        document = await self.vector_store.get_document(source_table, source_id, workspace_id)
        if document is None:
            logger.warning(
                "similar_search_source_not_indexed",
                extra={"source_table": source_table, "source_id": source_id, "workspace_id": workspace_id},
            )
            return []

        try:
            # One extra row so the source itself can be dropped
            candidates = await self.vector_store.semantic_search(
                document.embedding,
                SearchFilters(
                    workspace_id=workspace_id,
                    limit=limit + 1,
                    similarity_threshold=similarity_threshold,
                ),
            )
        except Exception as e:
            await self._record(document.content, 0, start, False, limit, similarity_threshold, workspace_id, e)
            raise

        results = [
            r for r in candidates
            if not (r.source_table == source_table and r.source_id == source_id)
        ][:limit]

        await self._record(document.content, len(results), start, True, limit, similarity_threshold, workspace_id)
        return results

    async def _record(
        self,
        query: str,
        results_count: int,
        start: float,
        success: bool,
        limit: int,
        similarity_threshold: float,
        workspace_id: str,
        error: Optional[BaseException] = None,
    ) -> None:
        await self.monitoring.record_search_metric(
            query_length=len(query),
            results_count=results_count,
            duration=(self._clock() - start) * 1000,
            success=success,
            search_limit=limit,
            similarity_threshold=similarity_threshold,
            error_type=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            workspace_id=workspace_id,
        )
