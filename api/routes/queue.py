"""Sync queue endpoints.

Inspection and manual handling of the retry queue. Failed entries are
never retried automatically: an operator resets or removes them here.
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.dependencies import get_sync_runtime
from connectors.erp_base import EntityKind
from sync_queue.queue import QueueAction, QueueEntry, QueueStatus
from sync_engine.runtime import SyncRuntime


router = APIRouter()


class QueueEntryResponse(BaseModel):
    """One sync queue entry."""
    id: int
    entity_kind: str
    record_key: str
    action: str
    status: str
    retry_count: int
    last_error: Optional[str] = None
    revision: int
    created_at: str
    updated_at: str
    claimed_at: Optional[str] = None


class EnqueueRequest(BaseModel):
    """Manual request to (re)synchronize a record."""
    entity_kind: EntityKind
    record_key: str = Field(..., description="Local id, or remote id for deletes")
    action: QueueAction = QueueAction.CREATE_OR_UPDATE
    account_remote_id: Optional[str] = Field(None, description="Parent account remote id (contact deletes)")


def _to_response(entry: QueueEntry) -> QueueEntryResponse:
    return QueueEntryResponse(**entry.to_dict())


@router.get("", response_model=List[QueueEntryResponse])
async def list_queue(
    status: Optional[QueueStatus] = None,
    entity_kind: Optional[EntityKind] = None,
    limit: int = 100,
    runtime: SyncRuntime = Depends(get_sync_runtime),
) -> List[QueueEntryResponse]:
    """List queue entries, oldest first."""
    entries = runtime.queue.list_entries(
        status=status.value if status else None,
        entity_kind=entity_kind.value if entity_kind else None,
        limit=limit,
    )
    return [_to_response(e) for e in entries]


@router.get("/stats")
async def queue_stats(runtime: SyncRuntime = Depends(get_sync_runtime)) -> Dict[str, int]:
    """Entry counts by status."""
    return runtime.queue.stats()


@router.post("", response_model=QueueEntryResponse, status_code=201)
async def enqueue(request: EnqueueRequest, runtime: SyncRuntime = Depends(get_sync_runtime)) -> QueueEntryResponse:
    """Queue a record for the next drain."""
    if request.action == QueueAction.DELETE:
        try:
            entry = runtime.queue.enqueue_delete(
                request.entity_kind, request.record_key, account_remote_id=request.account_remote_id
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
    else:
        entry = runtime.queue.enqueue(request.entity_kind, request.record_key, request.action)
    return _to_response(entry)


@router.get("/{entry_id}", response_model=QueueEntryResponse)
async def get_entry(entry_id: int, runtime: SyncRuntime = Depends(get_sync_runtime)) -> QueueEntryResponse:
    """Get one queue entry."""
    entry = runtime.queue.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Queue entry {entry_id} not found")
    return _to_response(entry)


@router.post("/{entry_id}/reset", response_model=QueueEntryResponse)
async def reset_entry(entry_id: int, runtime: SyncRuntime = Depends(get_sync_runtime)) -> QueueEntryResponse:
    """Put an entry back to pending with a zero retry count."""
    entry = runtime.queue.reset_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Queue entry {entry_id} not found")
    return _to_response(entry)


@router.delete("/{entry_id}", status_code=204)
async def remove_entry(entry_id: int, runtime: SyncRuntime = Depends(get_sync_runtime)) -> None:
    """Drop an entry without processing it."""
    if not runtime.queue.remove_entry(entry_id):
        raise HTTPException(status_code=404, detail=f"Queue entry {entry_id} not found")
