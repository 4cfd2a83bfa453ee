"""FastAPI application for the vector indexer.

Run with:
    uvicorn vector_indexer.server.main:app --host 0.0.0.0 --port 8052
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .api_routes.vector_api import router as vector_router
from .config.logfire_config import get_logger, setup_logging
from .config.settings import load_config
from .services.vector.service_factory import VectorServices, build_vector_services

logger = get_logger(__name__)


def create_app(services: Optional[VectorServices] = None) -> FastAPI:
    """Build the application.

    Args:
        services: Pre-built services (tests). When omitted, configuration is
            loaded from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        vector_services = services
        if vector_services is None:
            config = load_config()
            setup_logging(config.monitoring.log_level)
            vector_services = build_vector_services(config)
        await vector_services.start(
            ensure_schema=os.getenv("VECTOR_ENSURE_SCHEMA", "").lower() == "true"
        )
        app.state.vector_services = vector_services
        try:
            yield
        finally:
            await vector_services.close()
            app.state.vector_services = None

    app = FastAPI(title="Vector Indexer", lifespan=lifespan)
    app.include_router(vector_router)
    return app


app = create_app()


def main() -> None:
    uvicorn.run(
        "vector_indexer.server.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8052")),
    )


if __name__ == "__main__":
    main()
