"""
Create the pgvector extension and the vector_documents table.

The embedding column dimension follows the configured provider, so the
table must be created with the same EMBEDDING_PROVIDER settings the service
runs with.

Usage:
    python -m scripts.bootstrap_vector_schema
    python -m scripts.bootstrap_vector_schema --print     # only print the DDL
    python -m scripts.bootstrap_vector_schema --dimensions 768

Environment:
    DATABASE_URL: PostgreSQL connection string
"""

import argparse
import asyncio
import sys
from typing import Optional

from dotenv import load_dotenv

from vector_indexer.repositories.pg_client import PostgresClient
from vector_indexer.repositories.vector_document_repository import vector_documents_ddl
from vector_indexer.server.config.settings import load_config
from vector_indexer.server.services.vector.exceptions import ConfigurationError, StorageError


async def apply(conninfo: str, statements: list[str]) -> None:
    client = PostgresClient(conninfo)
    await client.connect()
    try:
        for statement in statements:
            await client.execute(statement)
            print(f"  applied: {statement.strip().splitlines()[0]}")
    finally:
        await client.disconnect()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Create the vector_documents table")
    parser.add_argument("--dimensions", type=int, help="Override the embedding dimension")
    parser.add_argument("--print", dest="print_only", action="store_true", help="Print DDL and exit")
    args = parser.parse_args(argv)

    load_dotenv()
    try:
        config = load_config()
    except ConfigurationError as e:
        if args.dimensions is None:
            print(f"Error: {e}")
            return 2
        config = None

    dimensions = args.dimensions or config.embedding.dimensions
    statements = vector_documents_ddl(dimensions)

    if args.print_only:
        for statement in statements:
            print(statement.strip() + ";\n")
        return 0

    if config is None:
        print("Error: DATABASE_URL and a valid embedding configuration are required to apply the schema")
        return 2

    print(f"Bootstrapping vector_documents (dimensions={dimensions})")
    try:
        asyncio.run(apply(config.database.url, statements))
    except StorageError as e:
        print(f"Error: {e}")
        return 1

    print("Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
