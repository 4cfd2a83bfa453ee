"""
Rebuild vector documents for a workspace.

Reads every project, ticket, epic, task and sprint of the workspace from
PostgreSQL, aggregates and embeds it, and upserts the result into the
vector_documents table. Entities are processed in batches; failures are
reported at the end instead of aborting the run.

Usage:
    vector-indexer-reindex --workspace-id w1
    vector-indexer-reindex --workspace-id w1 --tables tickets epics
    vector-indexer-reindex --workspace-id w1 --project-id 7 --ensure-schema

Environment:
    DATABASE_URL: PostgreSQL connection string
    EMBEDDING_PROVIDER (+ provider credentials): see vector_indexer.server.config.settings
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from vector_indexer.server.config.logfire_config import setup_logging
from vector_indexer.server.config.settings import load_config
from vector_indexer.server.services.vector.aggregation_service import ReindexReport
from vector_indexer.server.services.vector.exceptions import ConfigurationError
from vector_indexer.server.services.vector.models import SUPPORTED_TABLES
from vector_indexer.server.services.vector.service_factory import build_vector_services


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild vector documents for a workspace")
    parser.add_argument("--workspace-id", required=True, help="Workspace to re-index")
    parser.add_argument("--project-id", help="Only re-index one project")
    parser.add_argument(
        "--tables",
        nargs="+",
        choices=SUPPORTED_TABLES,
        help="Business tables to re-index (default: all)",
    )
    parser.add_argument("--ensure-schema", action="store_true", help="Create the vector table if missing")
    parser.add_argument("--env-file", type=Path, help="Path to a .env file")
    return parser.parse_args(argv)


def print_report(report: ReindexReport) -> None:
    print("\n" + "=" * 60)
    print("Re-index Summary")
    print("=" * 60)
    print(f"Workspace: {report.workspace_id}")
    if report.project_id:
        print(f"Project:   {report.project_id}")
    print(f"Tables:    {', '.join(report.tables)}")
    print(f"Processed: {report.processed}/{report.total}")
    print(f"Failed:    {report.failed}")
    if report.duration_seconds is not None:
        print(f"Duration:  {report.duration_seconds:.1f}s")

    if report.errors:
        print("\nErrors:")
        for error in report.errors[:10]:
            print(f"  - {error.table}/{error.entity_id}: {error.error_type}: {error.error}")
        if len(report.errors) > 10:
            print(f"  ... and {len(report.errors) - 10} more")


async def run(args: argparse.Namespace) -> ReindexReport:
    config = load_config(dotenv_path=str(args.env_file) if args.env_file else None)
    setup_logging(config.monitoring.log_level)

    services = build_vector_services(config, backend="postgres")
    await services.client.connect()
    try:
        if args.ensure_schema:
            await services.vector_store.ensure_schema(config.embedding.dimensions)
        return await services.aggregation.reindex_workspace(
            args.workspace_id,
            tables=args.tables,
            project_id=args.project_id,
        )
    finally:
        await services.client.disconnect()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file)

    print("=" * 60)
    print(f"Vector re-index | workspace={args.workspace_id}")
    print("=" * 60)

    try:
        report = asyncio.run(run(args))
    except ConfigurationError as e:
        print(f"Error: {e}")
        return 2

    print_report(report)
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
