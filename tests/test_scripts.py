"""Tests for the command line entry points."""

import pytest

from scripts import bootstrap_vector_schema, reindex_workspace
from vector_indexer.server.services.vector.aggregation_service import ReindexError, ReindexReport
from vector_indexer.server.services.vector.models import utc_now


class TestReindexWorkspace:
    def test_parse_args(self):
        args = reindex_workspace.parse_args(
            ["--workspace-id", "w1", "--tables", "tickets", "epics", "--ensure-schema"]
        )

        assert args.workspace_id == "w1"
        assert args.tables == ["tickets", "epics"]
        assert args.ensure_schema is True
        assert args.project_id is None

    def test_rejects_unknown_table(self):
        with pytest.raises(SystemExit):
            reindex_workspace.parse_args(["--workspace-id", "w1", "--tables", "labels"])

    def test_print_report(self, capsys):
        report = ReindexReport(
            workspace_id="w1",
            tables=["tickets"],
            total=3,
            processed=2,
            failed=1,
            errors=[ReindexError(table="tickets", entity_id="404", error="tickets not found: 404",
                                 error_type="NotFoundError")],
            completed_at=utc_now(),
        )

        reindex_workspace.print_report(report)

        out = capsys.readouterr().out
        assert "Processed: 2/3" in out
        assert "tickets/404: NotFoundError" in out

    def test_configuration_error_exit_code(self, monkeypatch):
        for name in ("EMBEDDING_PROVIDER", "OPENAI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("EMBEDDING_PROVIDER", "voyage")

        assert reindex_workspace.main(["--workspace-id", "w1"]) == 2


class TestBootstrapSchema:
    def test_print_only(self, capsys, monkeypatch):
        monkeypatch.setenv("EMBEDDING_PROVIDER", "voyage")

        assert bootstrap_vector_schema.main(["--print", "--dimensions", "8"]) == 0

        out = capsys.readouterr().out
        assert "CREATE EXTENSION IF NOT EXISTS vector;" in out
        assert "vector(8)" in out

    def test_requires_configuration(self, capsys, monkeypatch):
        monkeypatch.setenv("EMBEDDING_PROVIDER", "voyage")

        assert bootstrap_vector_schema.main([]) == 2
        assert "Unknown EMBEDDING_PROVIDER" in capsys.readouterr().out
