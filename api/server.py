"""FastAPI server for billing sync.

Operator API: queue inspection and manual retries, operation log queries,
connection status, entity change events and metrics.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import (
    health,
    queue,
    logs,
    connections,
    events,
    metrics,
)
from core.config import get_settings
from core.observability.logging import configure_logging, get_logger
from sync_engine.runtime import SyncRuntime, get_runtime

logger = get_logger(__name__)


def create_app(runtime: Optional[SyncRuntime] = None, billing_client: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Stores and settings to serve (default: the process-wide runtime)
        billing_client: Client used by /events (default: one per request)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        app.state.runtime = runtime or get_runtime()
        app.state.billing_client = billing_client
        logger.info("Billing sync API starting up...")

        yield

        logger.info("Billing sync API shutting down...")

    app = FastAPI(
        title="Billing Sync API",
        description="Operator API for the ERP to billing platform synchronization engine",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(queue.router, prefix="/queue", tags=["Queue"])
    app.include_router(logs.router, prefix="/logs", tags=["Operation Log"])
    app.include_router(connections.router, prefix="/connections", tags=["Connections"])
    app.include_router(events.router, prefix="/events", tags=["Events"])
    app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
