"""Tests for the vector document stores."""

from datetime import datetime, timezone

import pytest
from psycopg.types.json import Jsonb

from vector_indexer.repositories.vector_document_repository import (
    InMemoryVectorDocumentRepository,
    PgVectorDocumentRepository,
    SearchFilters,
    VectorDocument,
    cosine_similarity,
    vector_documents_ddl,
)
from vector_indexer.server.services.vector.exceptions import StorageError


def _doc(source_id: str, embedding, table: str = "tickets", workspace_id: str = "w1",
         project_id: str = "p1", content: str = None) -> VectorDocument:
    return VectorDocument(
        content=content or f"{table} {source_id}",
        embedding=embedding,
        source_table=table,
        source_id=source_id,
        workspace_id=workspace_id,
        project_id=project_id,
        document_type=table.rstrip("s"),
        metadata={"content_length": 10},
    )


class FakePostgresClient:
    """Captures SQL and params; replays canned rows."""

    def __init__(self, rows=None, one=None, rowcount: int = 1) -> None:
        self.rows = rows or []
        self.one = one
        self.rowcount = rowcount
        self.calls: list[tuple[str, str, list]] = []

    async def fetch_all(self, query, params=()):
        self.calls.append(("fetch_all", query, list(params)))
        return self.rows

    async def fetch_one(self, query, params=()):
        self.calls.append(("fetch_one", query, list(params)))
        return self.one

    async def execute(self, query, params=()):
        self.calls.append(("execute", query, list(params)))
        return self.rowcount


# ==================================================================
# cosine similarity
# ==================================================================


class TestCosineSimilarity:
    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(StorageError):
            cosine_similarity([1.0], [1.0, 0.0])


# ==================================================================
# In-memory store
# ==================================================================


class TestInMemoryUpsert:
    @pytest.mark.asyncio
    async def test_upsert_assigns_identity(self):
        store = InMemoryVectorDocumentRepository()

        stored = await store.upsert(_doc("42", [1.0, 0.0]))

        assert stored.id is not None
        assert stored.created_at is not None
        assert stored.updated_at == stored.created_at
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_upsert_replaces_in_place(self):
        store = InMemoryVectorDocumentRepository()
        first = await store.upsert(_doc("42", [1.0, 0.0], content="old"))

        second = await store.upsert(_doc("42", [0.0, 1.0], content="new"))

        assert len(store) == 1
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        stored = await store.get_document("tickets", "42", "w1")
        assert stored.content == "new"
        assert stored.embedding == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_same_source_in_other_workspace_is_separate(self):
        store = InMemoryVectorDocumentRepository()
        await store.upsert(_doc("42", [1.0, 0.0], workspace_id="w1"))
        await store.upsert(_doc("42", [1.0, 0.0], workspace_id="w2"))

        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_delete_and_exists(self):
        store = InMemoryVectorDocumentRepository()
        await store.upsert(_doc("42", [1.0, 0.0]))

        assert await store.exists("tickets", "42", "w1") is True
        assert await store.delete("tickets", "42", "w1") is True
        assert await store.delete("tickets", "42", "w1") is False
        assert await store.exists("tickets", "42", "w1") is False
        assert await store.get_document("tickets", "42", "w1") is None


class TestInMemorySearch:
    @pytest.fixture
    async def store(self):
        store = InMemoryVectorDocumentRepository()
        await store.upsert(_doc("1", [1.0, 0.0, 0.0]))
        await store.upsert(_doc("2", [0.9, 0.1, 0.0]))
        await store.upsert(_doc("3", [0.0, 1.0, 0.0]))
        await store.upsert(_doc("E1", [1.0, 0.0, 0.0], table="epics"))
        await store.upsert(_doc("9", [1.0, 0.0, 0.0], workspace_id="w2"))
        await store.upsert(_doc("8", [1.0, 0.0, 0.0], project_id="p2"))
        return store

    @pytest.mark.asyncio
    async def test_threshold_and_order(self, store):
        results = await store.semantic_search(
            [1.0, 0.0, 0.0],
            SearchFilters(workspace_id="w1", project_id="p1", document_type="ticket",
                          similarity_threshold=0.5),
        )

        assert [r.source_id for r in results] == ["1", "2"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[0].similarity >= results[1].similarity

    @pytest.mark.asyncio
    async def test_filters_are_conjunctive(self, store):
        results = await store.semantic_search(
            [1.0, 0.0, 0.0],
            SearchFilters(workspace_id="w1", source_table="epics", similarity_threshold=0.0),
        )

        assert [(r.source_table, r.source_id) for r in results] == [("epics", "E1")]

    @pytest.mark.asyncio
    async def test_workspace_isolation(self, store):
        results = await store.semantic_search(
            [1.0, 0.0, 0.0], SearchFilters(workspace_id="w2", similarity_threshold=0.0)
        )

        assert [r.source_id for r in results] == ["9"]

    @pytest.mark.asyncio
    async def test_limit(self, store):
        results = await store.semantic_search(
            [1.0, 0.0, 0.0], SearchFilters(workspace_id="w1", limit=2, similarity_threshold=0.0)
        )

        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_results_have_no_embedding(self, store):
        results = await store.semantic_search([1.0, 0.0, 0.0], SearchFilters(workspace_id="w1"))

        assert results
        assert "embedding" not in results[0].model_dump()


class TestInMemoryBulk:
    @pytest.mark.asyncio
    async def test_bulk_delete_and_list(self):
        store = InMemoryVectorDocumentRepository()
        await store.upsert(_doc("1", [1.0, 0.0]))
        await store.upsert(_doc("2", [1.0, 0.0], project_id="p2"))
        await store.upsert(_doc("E1", [1.0, 0.0], table="epics"))

        assert {d.source_id for d in await store.list_by_source("tickets", "w1")} == {"1", "2"}
        assert [d.source_id for d in await store.list_by_source("tickets", "w1", "p2")] == ["2"]

        assert await store.bulk_delete_by_source("tickets", "w1", project_id="p1") == 1
        assert await store.bulk_delete_by_source("tickets", "w1") == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_stats(self):
        store = InMemoryVectorDocumentRepository()
        await store.upsert(_doc("1", [1.0, 0.0]))
        await store.upsert(_doc("2", [1.0, 0.0]))
        await store.upsert(_doc("E1", [1.0, 0.0], table="epics", project_id="p2"))
        await store.upsert(_doc("3", [1.0, 0.0], workspace_id="w2"))

        stats = await store.get_stats("w1")
        assert stats.total_documents == 3
        assert stats.by_type == {"ticket": 2, "epic": 1}
        assert stats.by_source == {"tickets": 2, "epics": 1}

        assert (await store.get_stats("w1", project_id="p2")).total_documents == 1


# ==================================================================
# pgvector store
# ==================================================================


class TestPgVectorStore:
    def test_ddl_uses_dimensions(self):
        statements = vector_documents_ddl(768)

        assert statements[0] == "CREATE EXTENSION IF NOT EXISTS vector"
        assert "vector(768)" in statements[1]
        assert "UNIQUE (source_table, source_id, workspace_id)" in statements[1]

    @pytest.mark.asyncio
    async def test_ensure_schema_runs_all_statements(self):
        client = FakePostgresClient()
        await PgVectorDocumentRepository(client).ensure_schema(1536)

        assert len(client.calls) == len(vector_documents_ddl(1536))

    @pytest.mark.asyncio
    async def test_upsert_uses_conflict_key(self):
        now = datetime.now(timezone.utc)
        client = FakePostgresClient(one={"id": "abc", "created_at": now, "updated_at": now})
        repo = PgVectorDocumentRepository(client)

        stored = await repo.upsert(_doc("42", [0.5, 0.25]))

        method, query, params = client.calls[0]
        assert method == "fetch_one"
        assert "ON CONFLICT (source_table, source_id, workspace_id) DO UPDATE" in query
        assert params[1] == "[0.5,0.25]"
        assert params[2:5] == ["tickets", "42", "w1"]
        assert isinstance(params[7], Jsonb)
        assert stored.id == "abc"
        assert stored.created_at == now

    @pytest.mark.asyncio
    async def test_delete_reports_rowcount(self):
        repo = PgVectorDocumentRepository(FakePostgresClient(rowcount=0))
        assert await repo.delete("tickets", "42", "w1") is False

        repo = PgVectorDocumentRepository(FakePostgresClient(rowcount=1))
        assert await repo.delete("tickets", "42", "w1") is True

    @pytest.mark.asyncio
    async def test_semantic_search_query(self):
        row = {
            "id": "abc", "content": "Ticket #42", "source_table": "tickets", "source_id": "42",
            "workspace_id": "w1", "project_id": "p1", "document_type": "ticket",
            "metadata": {}, "created_at": None, "updated_at": None, "similarity": 0.91,
        }
        client = FakePostgresClient(rows=[row])
        repo = PgVectorDocumentRepository(client)

        results = await repo.semantic_search(
            [1.0, 0.0], SearchFilters(workspace_id="w1", document_type="ticket", limit=5)
        )

        _, query, params = client.calls[0]
        assert "workspace_id = %s" in query
        assert "document_type = %s" in query
        assert "project_id = %s" not in query
        assert "ORDER BY embedding <=> %s::vector" in query
        assert params == ["[1.0,0.0]", "w1", "ticket", "[1.0,0.0]", 0.7, "[1.0,0.0]", 5]
        assert results[0].similarity == pytest.approx(0.91)
        assert results[0].source_id == "42"

    @pytest.mark.asyncio
    async def test_get_document_parses_vector_text(self):
        row = {
            "id": "abc", "content": "Ticket #42", "source_table": "tickets", "source_id": "42",
            "workspace_id": "w1", "project_id": None, "document_type": "ticket",
            "metadata": None, "created_at": None, "updated_at": None, "embedding": "[0.5,0.25]",
        }
        repo = PgVectorDocumentRepository(FakePostgresClient(one=row))

        document = await repo.get_document("tickets", "42", "w1")

        assert document.embedding == [0.5, 0.25]
        assert document.metadata == {}

    @pytest.mark.asyncio
    async def test_stats_aggregates_groups(self):
        client = FakePostgresClient(rows=[
            {"document_type": "ticket", "source_table": "tickets", "count": 3},
            {"document_type": "epic", "source_table": "epics", "count": 1},
        ])

        stats = await PgVectorDocumentRepository(client).get_stats("w1", project_id="p1")

        assert stats.total_documents == 4
        assert stats.by_type == {"ticket": 3, "epic": 1}
        assert client.calls[0][2] == ["w1", "p1"]
