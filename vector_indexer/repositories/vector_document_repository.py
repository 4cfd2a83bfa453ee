"""Vector document store backed by PostgreSQL + pgvector.

One row per (source_table, source_id, workspace_id); re-processing an entity
upserts in place. Similarity is ``1 - cosine distance``. An in-memory
implementation with identical semantics is provided for tests and local runs.
"""

import logging
import math
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from psycopg.types.json import Jsonb
from pydantic import BaseModel, Field

from ..server.services.vector.exceptions import StorageError
from .pg_client import PostgresClient

logger = logging.getLogger(__name__)

TABLE_NAME = "vector_documents"


def vector_documents_ddl(dimensions: int) -> list[str]:
    """DDL for the vector_documents table and its indexes."""
    return [
        "CREATE EXTENSION IF NOT EXISTS vector",
        f"""
        CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            content TEXT NOT NULL,
            embedding vector({int(dimensions)}) NOT NULL,
            source_table TEXT NOT NULL,
            source_id TEXT NOT NULL,
            workspace_id TEXT NOT NULL,
            project_id TEXT,
            document_type TEXT NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT vector_documents_source_key
                UNIQUE (source_table, source_id, workspace_id)
        )
        """,
        f"CREATE INDEX IF NOT EXISTS vector_documents_workspace_idx ON {TABLE_NAME} (workspace_id, project_id)",
        f"CREATE INDEX IF NOT EXISTS vector_documents_embedding_idx ON {TABLE_NAME} USING hnsw (embedding vector_cosine_ops)",
    ]


class VectorDocument(BaseModel):
    """Aggregated text and embedding for one business entity."""
    id: Optional[str] = None
    content: str
    embedding: list[float]
    source_table: str
    source_id: str
    workspace_id: str
    project_id: Optional[str] = None
    document_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VectorSearchResult(BaseModel):
    """Stored document (without its embedding) plus similarity to the query."""
    id: Optional[str] = None
    content: str
    source_table: str
    source_id: str
    workspace_id: str
    project_id: Optional[str] = None
    document_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SearchFilters(BaseModel):
    """Conjunctive equality filters plus ranking bounds."""
    workspace_id: Optional[str] = None
    project_id: Optional[str] = None
    source_table: Optional[str] = None
    document_type: Optional[str] = None
    limit: int = 10
    similarity_threshold: float = 0.7


class DocumentStats(BaseModel):
    total_documents: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_source: dict[str, int] = Field(default_factory=dict)


class VectorDocumentRepository(ABC):
    """Storage contract for vector documents."""

    @abstractmethod
    async def upsert(self, document: VectorDocument) -> VectorDocument:
        """Insert or replace the document keyed by (source_table, source_id, workspace_id)."""
        pass

    @abstractmethod
    async def delete(self, source_table: str, source_id: str, workspace_id: str) -> bool:
        """Delete one document. Returns True if a row was removed."""
        pass

    @abstractmethod
    async def exists(self, source_table: str, source_id: str, workspace_id: str) -> bool:
        pass

    @abstractmethod
    async def get_document(
        self, source_table: str, source_id: str, workspace_id: str
    ) -> Optional[VectorDocument]:
        pass

    @abstractmethod
    async def semantic_search(
        self, query_embedding: list[float], filters: SearchFilters
    ) -> list[VectorSearchResult]:
        """Rank documents by similarity, keeping only those >= the threshold.

        Args:
            query_embedding: Query vector
            filters: Equality filters, limit and similarity threshold

        Returns:
            Results sorted by descending similarity, at most ``filters.limit``
        """
        pass

    @abstractmethod
    async def bulk_delete_by_source(
        self, source_table: str, workspace_id: str, project_id: Optional[str] = None
    ) -> int:
        pass

    @abstractmethod
    async def list_by_source(
        self, source_table: str, workspace_id: str, project_id: Optional[str] = None
    ) -> list[VectorDocument]:
        pass

    @abstractmethod
    async def get_stats(self, workspace_id: str, project_id: Optional[str] = None) -> DocumentStats:
        pass


def _format_vector(embedding: list[float]) -> str:
    """pgvector text format: [1.0,2.0,3.0]"""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def _parse_vector(value: Any) -> list[float]:
    if isinstance(value, (list, tuple)):
        return [float(x) for x in value]
    vector_str = str(value).strip("[]")
    if not vector_str:
        return []
    return [float(x) for x in vector_str.split(",")]


class PgVectorDocumentRepository(VectorDocumentRepository):
    """pgvector implementation using the shared psycopg pool.

    Example:
        >>> repo = PgVectorDocumentRepository(PostgresClient(dsn))
        >>> await repo.upsert(document)
        >>> results = await repo.semantic_search(query, SearchFilters(workspace_id="w1"))
    """

    _COLUMNS = (
        "id::text AS id, content, source_table, source_id, workspace_id, "
        "project_id, document_type, metadata, created_at, updated_at"
    )

    def __init__(self, client: PostgresClient) -> None:
        self.client = client

    async def ensure_schema(self, dimensions: int) -> None:
        """Create the pgvector extension, table and indexes if missing."""
        for statement in vector_documents_ddl(dimensions):
            await self.client.execute(statement)
        logger.info("vector_schema_ensured", extra={"dimensions": dimensions})

    async def upsert(self, document: VectorDocument) -> VectorDocument:
        row = await self.client.fetch_one(
            f"""
            INSERT INTO {TABLE_NAME} (
                content, embedding, source_table, source_id, workspace_id,
                project_id, document_type, metadata
            ) VALUES (%s, %s::vector, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (source_table, source_id, workspace_id) DO UPDATE SET
                content = EXCLUDED.content,
                embedding = EXCLUDED.embedding,
                project_id = EXCLUDED.project_id,
                document_type = EXCLUDED.document_type,
                metadata = EXCLUDED.metadata,
                updated_at = now()
            RETURNING id::text AS id, created_at, updated_at
            """,
            (
                document.content,
                _format_vector(document.embedding),
                document.source_table,
                document.source_id,
                document.workspace_id,
                document.project_id,
                document.document_type,
                Jsonb(document.metadata),
            ),
        )

        logger.debug(
            "vector_document_upserted",
            extra={
                "source_table": document.source_table,
                "source_id": document.source_id,
                "workspace_id": document.workspace_id,
            }
        )

        if not row:
            return document
        return document.model_copy(
            update={"id": row["id"], "created_at": row["created_at"], "updated_at": row["updated_at"]}
        )

    async def delete(self, source_table: str, source_id: str, workspace_id: str) -> bool:
        count = await self.client.execute(
            f"DELETE FROM {TABLE_NAME} WHERE source_table = %s AND source_id = %s AND workspace_id = %s",
            (source_table, source_id, workspace_id),
        )
        logger.debug(
            "vector_document_deleted",
            extra={"source_table": source_table, "source_id": source_id, "deleted": count}
        )
        return count > 0

    async def exists(self, source_table: str, source_id: str, workspace_id: str) -> bool:
        row = await self.client.fetch_one(
            f"SELECT 1 AS found FROM {TABLE_NAME} "
            "WHERE source_table = %s AND source_id = %s AND workspace_id = %s",
            (source_table, source_id, workspace_id),
        )
        return row is not None

    async def get_document(
        self, source_table: str, source_id: str, workspace_id: str
    ) -> Optional[VectorDocument]:
        row = await self.client.fetch_one(
            f"SELECT {self._COLUMNS}, embedding::text AS embedding FROM {TABLE_NAME} "
            "WHERE source_table = %s AND source_id = %s AND workspace_id = %s",
            (source_table, source_id, workspace_id),
        )
        return self._to_document(row) if row else None

    async def semantic_search(
        self, query_embedding: list[float], filters: SearchFilters
    ) -> list[VectorSearchResult]:
        conditions: list[str] = []
        params: list[Any] = []
        for column in ("workspace_id", "project_id", "source_table", "document_type"):
            value = getattr(filters, column)
            if value is not None:
                conditions.append(f"{column} = %s")
                params.append(value)

        vector = _format_vector(query_embedding)
        conditions.append("1 - (embedding <=> %s::vector) >= %s")
        params.extend([vector, filters.similarity_threshold])

        query = f"""
            SELECT {self._COLUMNS}, 1 - (embedding <=> %s::vector) AS similarity
            FROM {TABLE_NAME}
            WHERE {" AND ".join(conditions)}
            ORDER BY embedding <=> %s::vector
            LIMIT %s
        """
        rows = await self.client.fetch_all(query, [vector, *params, vector, filters.limit])

        return [
            VectorSearchResult(
                **{k: v for k, v in row.items() if k != "similarity"},
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]

    async def bulk_delete_by_source(
        self, source_table: str, workspace_id: str, project_id: Optional[str] = None
    ) -> int:
        query = f"DELETE FROM {TABLE_NAME} WHERE source_table = %s AND workspace_id = %s"
        params: list[Any] = [source_table, workspace_id]
        if project_id is not None:
            query += " AND project_id = %s"
            params.append(project_id)

        count = await self.client.execute(query, params)
        logger.info(
            "vector_documents_bulk_deleted",
            extra={"source_table": source_table, "workspace_id": workspace_id, "deleted": count}
        )
        return count

    async def list_by_source(
        self, source_table: str, workspace_id: str, project_id: Optional[str] = None
    ) -> list[VectorDocument]:
        query = (
            f"SELECT {self._COLUMNS}, embedding::text AS embedding FROM {TABLE_NAME} "
            "WHERE source_table = %s AND workspace_id = %s"
        )
        params: list[Any] = [source_table, workspace_id]
        if project_id is not None:
            query += " AND project_id = %s"
            params.append(project_id)
        query += " ORDER BY updated_at DESC"

        rows = await self.client.fetch_all(query, params)
        return [self._to_document(row) for row in rows]

    async def get_stats(self, workspace_id: str, project_id: Optional[str] = None) -> DocumentStats:
        query = (
            f"SELECT document_type, source_table, COUNT(*) AS count FROM {TABLE_NAME} "
            "WHERE workspace_id = %s"
        )
        params: list[Any] = [workspace_id]
        if project_id is not None:
            query += " AND project_id = %s"
            params.append(project_id)
        query += " GROUP BY document_type, source_table"

        stats = DocumentStats()
        for row in await self.client.fetch_all(query, params):
            count = int(row["count"])
            stats.total_documents += count
            stats.by_type[row["document_type"]] = stats.by_type.get(row["document_type"], 0) + count
            stats.by_source[row["source_table"]] = stats.by_source.get(row["source_table"], 0) + count
        return stats

    @staticmethod
    def _to_document(row: dict[str, Any]) -> VectorDocument:
        data = dict(row)
        data["embedding"] = _parse_vector(data.get("embedding"))
        data["metadata"] = data.get("metadata") or {}
        return VectorDocument(**data)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """1 - cosine distance; 0.0 when either vector has zero norm."""
    if len(a) != len(b):
        raise StorageError(f"Dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorDocumentRepository(VectorDocumentRepository):
    """Dict-backed store with the same upsert and ranking semantics."""

    def __init__(self) -> None:
        self._documents: dict[tuple[str, str, str], VectorDocument] = {}

    @staticmethod
    def _key(source_table: str, source_id: str, workspace_id: str) -> tuple[str, str, str]:
        return (source_table, source_id, workspace_id)

    def __len__(self) -> int:
        return len(self._documents)

    async def upsert(self, document: VectorDocument) -> VectorDocument:
        now = datetime.now(timezone.utc)
        key = self._key(document.source_table, document.source_id, document.workspace_id)
        existing = self._documents.get(key)

        stored = document.model_copy(
            update={
                "id": existing.id if existing else str(uuid.uuid4()),
                "created_at": existing.created_at if existing else now,
                "updated_at": now,
                "embedding": list(document.embedding),
                "metadata": dict(document.metadata),
            }
        )
        self._documents[key] = stored
        return stored.model_copy()

    async def delete(self, source_table: str, source_id: str, workspace_id: str) -> bool:
        return self._documents.pop(self._key(source_table, source_id, workspace_id), None) is not None

    async def exists(self, source_table: str, source_id: str, workspace_id: str) -> bool:
        return self._key(source_table, source_id, workspace_id) in self._documents

    async def get_document(
        self, source_table: str, source_id: str, workspace_id: str
    ) -> Optional[VectorDocument]:
        document = self._documents.get(self._key(source_table, source_id, workspace_id))
        return document.model_copy() if document else None

    def _matches(self, document: VectorDocument, filters: SearchFilters) -> bool:
        for column in ("workspace_id", "project_id", "source_table", "document_type"):
            value = getattr(filters, column)
            if value is not None and getattr(document, column) != value:
                return False
        return True

    async def semantic_search(
        self, query_embedding: list[float], filters: SearchFilters
    ) -> list[VectorSearchResult]:
        scored: list[tuple[float, VectorDocument]] = []
        for document in self._documents.values():
            if not self._matches(document, filters):
                continue
            similarity = cosine_similarity(document.embedding, query_embedding)
            if similarity >= filters.similarity_threshold:
                scored.append((similarity, document))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            VectorSearchResult(
                **document.model_dump(exclude={"embedding"}), similarity=similarity
            )
            for similarity, document in scored[: filters.limit]
        ]

    def _select(
        self, source_table: str, workspace_id: str, project_id: Optional[str]
    ) -> list[tuple[str, str, str]]:
        return [
            key
            for key, document in self._documents.items()
            if document.source_table == source_table
            and document.workspace_id == workspace_id
            and (project_id is None or document.project_id == project_id)
        ]

    async def bulk_delete_by_source(
        self, source_table: str, workspace_id: str, project_id: Optional[str] = None
    ) -> int:
        keys = self._select(source_table, workspace_id, project_id)
        for key in keys:
            del self._documents[key]
        return len(keys)

    async def list_by_source(
        self, source_table: str, workspace_id: str, project_id: Optional[str] = None
    ) -> list[VectorDocument]:
        return [
            self._documents[key].model_copy()
            for key in self._select(source_table, workspace_id, project_id)
        ]

    async def get_stats(self, workspace_id: str, project_id: Optional[str] = None) -> DocumentStats:
        stats = DocumentStats()
        for document in self._documents.values():
            if document.workspace_id != workspace_id:
                continue
            if project_id is not None and document.project_id != project_id:
                continue
            stats.total_documents += 1
            stats.by_type[document.document_type] = stats.by_type.get(document.document_type, 0) + 1
            stats.by_source[document.source_table] = stats.by_source.get(document.source_table, 0) + 1
        return stats
