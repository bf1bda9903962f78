"""Connection status endpoints.

Secrets never leave the store: only presence flags and expiries are shown.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_sync_runtime
from sync_engine.runtime import SyncRuntime


router = APIRouter()


@router.get("/{name}")
async def get_connection(name: str, runtime: SyncRuntime = Depends(get_sync_runtime)) -> Dict[str, Any]:
    """Status of a connection."""
    connection = runtime.connections.get(name)
    if connection.id is None:
        raise HTTPException(status_code=404, detail=f"Connection '{name}' not found")
    return connection.to_status()


@router.post("/{name}/disconnect")
async def disconnect(name: str, runtime: SyncRuntime = Depends(get_sync_runtime)) -> Dict[str, Any]:
    """Mark a connection as disconnected and forget its tokens."""
    connection = runtime.connections.get(name)
    if connection.id is None:
        raise HTTPException(status_code=404, detail=f"Connection '{name}' not found")
    return runtime.connections.disconnect(name).to_status()
