"""Repository layer for the vector indexer.

Provides the pgvector document store and read access to the business
tables the documents are built from. Both share one PostgreSQL pool.

Repository classes:
    - PostgresClient: Shared psycopg async connection pool
    - PgVectorDocumentRepository: vector_documents upsert/search/delete
    - PostgresEntitySource: Workspace-scoped reads of projects, tickets, epics, tasks, sprints
    - InMemoryVectorDocumentRepository / InMemoryEntitySource: in-process equivalents

Usage:
    >>> from vector_indexer.repositories import PostgresClient, PgVectorDocumentRepository
    >>> client = PostgresClient()
    >>> await client.connect()
    >>> store = PgVectorDocumentRepository(client)
    >>> await store.semantic_search(embedding, SearchFilters(workspace_id="w1"))

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
"""

from .entity_source import EntitySource
from .in_memory_entity_source import InMemoryEntitySource
from .pg_client import PostgresClient
from .postgres_entity_source import PostgresEntitySource
from .vector_document_repository import (
    InMemoryVectorDocumentRepository,
    PgVectorDocumentRepository,
    SearchFilters,
    VectorDocument,
    VectorDocumentRepository,
    VectorSearchResult,
)

__all__ = [
    "EntitySource",
    "InMemoryEntitySource",
    "PostgresClient",
    "PostgresEntitySource",
    "VectorDocumentRepository",
    "PgVectorDocumentRepository",
    "InMemoryVectorDocumentRepository",
    "VectorDocument",
    "VectorSearchResult",
    "SearchFilters",
]
