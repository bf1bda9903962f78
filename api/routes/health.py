"""Health check endpoints."""

from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.dependencies import get_sync_runtime
from sync_engine.runtime import SyncRuntime


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(runtime: SyncRuntime = Depends(get_sync_runtime)) -> HealthResponse:
    """Health check endpoint.

    Reports the sync database and whether the configured connection holds a
    usable access token.
    """
    connection = runtime.connections.get(runtime.settings.connection_name)
    queue_stats = runtime.queue.stats()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat(),
        version="1.0.0",
        services={
            "api": "up",
            "storage": "up",
            "connection": "connected" if connection.connected else "disconnected",
            "access_token": "valid" if connection.is_access_token_valid() else "expired",
            "failed_queue_entries": str(queue_stats["failed"]),
        }
    )


@router.get("/ready")
async def readiness_check(response: Response, runtime: SyncRuntime = Depends(get_sync_runtime)) -> Dict[str, str]:
    """Readiness probe: the configured connection must be connected."""
    connection = runtime.connections.get(runtime.settings.connection_name)
    if not connection.connected:
        response.status_code = 503
        return {"status": "not_ready", "reason": f"connection '{connection.name}' is not connected"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}
