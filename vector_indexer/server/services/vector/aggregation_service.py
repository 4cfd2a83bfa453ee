"""Aggregation orchestrator for dependency-aware vector indexing.

Turns entity change events into vector document writes:

- Resolve the affected set (entity + one hop of relations)
- Read and aggregate each record into document text
- Embed through the resilient embedding service
- Upsert into the vector store and record database metrics

Entities in the affected set are processed sequentially and the first error
stops the event. The bulk ``reindex_workspace`` path instead collects
per-entity failures into a report.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ....repositories.entity_source import EntitySource
from ....repositories.vector_document_repository import VectorDocument, VectorDocumentRepository
from ....services.embedding_service import EmbeddingService
from . import content_builder
from .dependency_tracker import DependencyTracker
from .exceptions import NotFoundError
from .models import (
    SUPPORTED_TABLES,
    TABLE_DOCUMENT_TYPES,
    AffectedEntity,
    EntityChangeEvent,
    OperationType,
    utc_now,
)
from .monitoring_service import MonitoringService

logger = logging.getLogger(__name__)

# Document metadata key holding the entities whose documents mention this one
RELATED_ENTITIES_KEY = "related_entities"

# Event metadata keys that may name relations of an already-deleted row
FORMER_RELATION_KEYS: dict[str, str] = {
    "sprint_id": "sprints",
    "epic_id": "epics",
    "project_id": "projects",
    "depends_on_ticket_ids": "tickets",
    "dependent_ticket_ids": "tickets",
    "task_ids": "tasks",
    "ticket_ids": "tickets",
}


class ReindexError(BaseModel):
    table: str
    entity_id: str
    error: str
    error_type: str


class ReindexReport(BaseModel):
    """Outcome of a bulk workspace re-index."""
    workspace_id: str
    project_id: Optional[str] = None
    tables: list[str] = Field(default_factory=list)
    total: int = 0
    processed: int = 0
    failed: int = 0
    errors: list[ReindexError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class AggregationService:
    """Keeps vector documents in sync with business entities.

    Example:
        >>> service = AggregationService(source, tracker, embeddings, store, monitoring)
        >>> await service.process_entity_for_embedding(EntityChangeEvent(
        ...     event_type="UPDATE", source_table="tickets", source_id="42", workspace_id="w1"))
    """

    def __init__(
        self,
        entity_source: EntitySource,
        dependency_tracker: DependencyTracker,
        embedding_service: EmbeddingService,
        vector_store: VectorDocumentRepository,
        monitoring: MonitoringService,
        batch_size: int = 100,
        max_concurrent_operations: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            entity_source: Read access to business tables
            dependency_tracker: Affected-set and context lookups
            embedding_service: Resilient embedding client
            vector_store: Vector document repository
            monitoring: Metrics sink
            batch_size: Entities per batch in reindex_workspace
            max_concurrent_operations: In-flight entity limit in reindex_workspace
            clock: Seconds clock used for durations
        """
        self.entity_source = entity_source
        self.dependency_tracker = dependency_tracker
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.monitoring = monitoring
        self.batch_size = batch_size
        self.max_concurrent_operations = max_concurrent_operations
        self._clock = clock

        self._locks: dict[tuple[str, str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str, str], int] = {}

        self._builders: dict[str, tuple[Callable[[str, str], Awaitable[Any]], Callable[..., str]]] = {
            "projects": (entity_source.get_project, content_builder.build_project_content),
            "tickets": (entity_source.get_ticket, content_builder.build_ticket_content),
            "epics": (entity_source.get_epic, content_builder.build_epic_content),
            "tasks": (entity_source.get_task, content_builder.build_task_content),
            "sprints": (entity_source.get_sprint, content_builder.build_sprint_content),
        }

    @asynccontextmanager
    async def _entity_lock(self, table: str, entity_id: str, workspace_id: str) -> AsyncIterator[None]:
        """Serialize work on one (table, id, workspace) within this process."""
        key = (table, entity_id, workspace_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def process_entity_for_embedding(self, event: EntityChangeEvent) -> None:
        """Re-embed the changed entity and everything one hop from it.

        Args:
            event: CREATE or UPDATE event

        Raises:
            NotFoundError: If an affected entity no longer exists
            VectorServiceError: Embedding or storage failure (first error wins)
        """
        logger.info(
            "processing_entity_for_embedding",
            extra={
                "event_type": event.event_type.value,
                "source_table": event.source_table,
                "source_id": event.source_id,
                "workspace_id": event.workspace_id,
            },
        )

        affected = await self.dependency_tracker.get_affected_entities(
            event.source_table, event.source_id, event.workspace_id
        )

        for entity in affected:
            await self._process_individual_entity(
                entity.table,
                entity.id,
                event.workspace_id,
                entity.project_id or event.project_id,
            )

        logger.info(
            "entity_embedding_processed",
            extra={
                "source_table": event.source_table,
                "source_id": event.source_id,
                "affected_count": len(affected),
            },
        )

    async def remove_entity_embedding(self, event: EntityChangeEvent) -> int:
        """Delete the entity's document and re-embed its former neighbours.

        The relations stored on the document at its last upsert are read
        before the delete and merged with the relations recomputed afterwards,
        so neighbours are found even when the business row is already gone.
        Relation ids carried in ``event.metadata`` (sprint_id, epic_id, ...)
        are added as well.

        Returns:
            Number of other entities re-processed (missing neighbours are skipped)
        """
        logger.info(
            "removing_entity_embedding",
            extra={
                "source_table": event.source_table,
                "source_id": event.source_id,
                "workspace_id": event.workspace_id,
            },
        )

        document_type = TABLE_DOCUMENT_TYPES.get(event.source_table, event.source_table)
        start = self._clock()
        try:
            async with self._entity_lock(event.source_table, event.source_id, event.workspace_id):
                existing = await self.vector_store.get_document(
                    event.source_table, event.source_id, event.workspace_id
                )
                deleted = await self.vector_store.delete(
                    event.source_table, event.source_id, event.workspace_id
                )
        except Exception as e:
            await self._record_database_metric(
                OperationType.DELETE, 0, start, False,
                document_type, event.source_id, event.workspace_id, e,
            )
            raise
        await self._record_database_metric(
            OperationType.DELETE, 1 if deleted else 0, start, True,
            document_type, event.source_id, event.workspace_id,
        )

        affected = await self.dependency_tracker.get_affected_entities(
            event.source_table, event.source_id, event.workspace_id
        )
        known = {(e.table, e.id) for e in affected}
        former = self._stored_relations(existing) + self._former_relations(event)
        for entity in former:
            if (entity.table, entity.id) not in known:
                known.add((entity.table, entity.id))
                affected.append(entity)

        others = [
            e for e in affected
            if not (e.table == event.source_table and e.id == event.source_id)
        ]
        reprocessed = 0
        for entity in others:
            try:
                await self._process_individual_entity(
                    entity.table, entity.id, event.workspace_id, entity.project_id
                )
            except NotFoundError:
                # Stored relation to a row that is gone as well
                logger.warning(
                    "former_relation_missing",
                    extra={"source_table": entity.table, "source_id": entity.id},
                )
                continue
            reprocessed += 1

        logger.info(
            "entity_embedding_removed",
            extra={
                "source_table": event.source_table,
                "source_id": event.source_id,
                "document_deleted": deleted,
                "reprocessed_count": reprocessed,
            },
        )
        return reprocessed

    @staticmethod
    def _stored_relations(document: Optional[VectorDocument]) -> list[AffectedEntity]:
        if document is None:
            return []
        return [
            AffectedEntity(table=item["table"], id=str(item["id"]), project_id=item.get("project_id"))
            for item in document.metadata.get(RELATED_ENTITIES_KEY) or []
            if item.get("table") and item.get("id") is not None
        ]

    @staticmethod
    def _former_relations(event: EntityChangeEvent) -> list[AffectedEntity]:
        metadata = dict(event.metadata or {})
        if event.project_id and "project_id" not in metadata:
            metadata["project_id"] = event.project_id

        entities: list[AffectedEntity] = []
        for key, table in FORMER_RELATION_KEYS.items():
            value = metadata.get(key)
            if value is None or value == "":
                continue
            ids = value if isinstance(value, (list, tuple)) else [value]
            for related_id in ids:
                entities.append(AffectedEntity(
                    table=table,
                    id=str(related_id),
                    project_id=str(metadata["project_id"]) if metadata.get("project_id") else None,
                ))
        return entities

    # ------------------------------------------------------------------
    # Single entity
    # ------------------------------------------------------------------

    async def _process_individual_entity(
        self,
        source_table: str,
        source_id: str,
        workspace_id: str,
        project_id: Optional[str] = None,
    ) -> Optional[VectorDocument]:
        if source_table not in SUPPORTED_TABLES:
            logger.warning(
                "unsupported_entity_table",
                extra={"source_table": source_table, "source_id": source_id},
            )
            return None

        document_type = TABLE_DOCUMENT_TYPES[source_table]
        start = self._clock()

        try:
            async with self._entity_lock(source_table, source_id, workspace_id):
                content, related = await self._build_content(source_table, source_id, workspace_id)
                embedding = await self.embedding_service.generate_embedding(
                    content,
                    entity_type=document_type,
                    entity_id=source_id,
                    workspace_id=workspace_id,
                )
                stored = await self.vector_store.upsert(VectorDocument(
                    content=content,
                    embedding=embedding,
                    source_table=source_table,
                    source_id=source_id,
                    workspace_id=workspace_id,
                    project_id=project_id,
                    document_type=document_type,
                    metadata={
                        "last_updated": utc_now().isoformat(),
                        "content_length": len(content),
                        "embedding_dimensions": len(embedding),
                        RELATED_ENTITIES_KEY: related,
                    },
                ))
        except Exception as e:
            logger.error(
                "entity_processing_failed",
                extra={
                    "source_table": source_table,
                    "source_id": source_id,
                    "workspace_id": workspace_id,
                    "error": str(e),
                },
            )
            await self._record_database_metric(
                OperationType.INSERT, 0, start, False,
                document_type, source_id, workspace_id, e,
            )
            raise

        await self._record_database_metric(
            OperationType.INSERT, 1, start, True, document_type, source_id, workspace_id,
        )
        logger.debug(
            "entity_document_upserted",
            extra={
                "source_table": source_table,
                "source_id": source_id,
                "content_length": len(content),
            },
        )
        return stored

    async def _build_content(
        self, source_table: str, source_id: str, workspace_id: str
    ) -> tuple[str, list[dict[str, Optional[str]]]]:
        """Document text plus the related entities whose documents mention this one."""
        fetch, build = self._builders[source_table]
        record = await fetch(source_id, workspace_id)
        if record is None:
            raise NotFoundError(source_table, source_id)

        deps = await self.dependency_tracker.get_entity_dependencies(
            source_table, source_id, workspace_id
        )
        related = [
            {"table": e.table, "id": e.id, "project_id": e.project_id}
            for e in self.dependency_tracker.affected_from(deps)[1:]
        ]
        return build(record, self.dependency_tracker.format_context(deps)), related

    async def _owning_project(self, table: str, entity_id: str, workspace_id: str) -> Optional[str]:
        if table == "projects":
            return entity_id
        return await self.entity_source.get_entity_project(table, entity_id, workspace_id)

    async def _record_database_metric(
        self,
        operation_type: OperationType,
        records_affected: int,
        start: float,
        success: bool,
        entity_type: str,
        entity_id: Optional[str],
        workspace_id: str,
        error: Optional[BaseException] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        await self.monitoring.record_database_metric(
            operation_type=operation_type,
            records_affected=records_affected,
            duration=(self._clock() - start) * 1000,
            success=success,
            batch_size=batch_size,
            error_type=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            entity_type=entity_type,
            entity_id=entity_id,
            workspace_id=workspace_id,
        )

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def reindex_workspace(
        self,
        workspace_id: str,
        tables: Optional[list[str]] = None,
        project_id: Optional[str] = None,
    ) -> ReindexReport:
        """Rebuild documents for every entity in a workspace.

        Entities are processed without cascading (each one is visited
        anyway). Failures are collected instead of aborting the run.

        Args:
            workspace_id: Workspace to re-index
            tables: Subset of business tables (default: all supported)
            project_id: Restrict to one project

        Returns:
            ReindexReport with totals and per-entity errors
        """
        selected = [t for t in (tables or SUPPORTED_TABLES) if t in SUPPORTED_TABLES]
        report = ReindexReport(workspace_id=workspace_id, project_id=project_id, tables=selected)
        semaphore = asyncio.Semaphore(self.max_concurrent_operations)

        logger.info(
            "reindex_started",
            extra={"workspace_id": workspace_id, "project_id": project_id, "tables": selected},
        )

        async def run_one(table: str, entity_id: str) -> None:
            async with semaphore:
                try:
                    owner = project_id or await self._owning_project(table, entity_id, workspace_id)
                    await self._process_individual_entity(table, entity_id, workspace_id, owner)
                    report.processed += 1
                except Exception as e:
                    report.failed += 1
                    report.errors.append(ReindexError(
                        table=table,
                        entity_id=entity_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    ))

        for table in selected:
            ids = await self.entity_source.list_entity_ids(table, workspace_id, project_id)
            report.total += len(ids)

            for offset in range(0, len(ids), self.batch_size):
                batch = ids[offset:offset + self.batch_size]
                start = self._clock()
                failed_before = report.failed
                await asyncio.gather(*(run_one(table, entity_id) for entity_id in batch))
                batch_failures = report.failed - failed_before

                await self._record_database_metric(
                    OperationType.BATCH,
                    len(batch) - batch_failures,
                    start,
                    batch_failures == 0,
                    TABLE_DOCUMENT_TYPES[table],
                    None,
                    workspace_id,
                    batch_size=len(batch),
                )
                logger.info(
                    "reindex_batch_completed",
                    extra={
                        "workspace_id": workspace_id,
                        "table": table,
                        "batch_size": len(batch),
                        "failed": batch_failures,
                    },
                )

        report.completed_at = utc_now()
        logger.info(
            "reindex_completed",
            extra={
                "workspace_id": workspace_id,
                "total": report.total,
                "processed": report.processed,
                "failed": report.failed,
            },
        )
        return report
