"""Operation log endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import get_sync_runtime
from connectors.erp_base import EntityKind
from core.audit.operation_log import OperationStatus
from sync_engine.runtime import SyncRuntime


router = APIRouter()


class OperationLogResponse(BaseModel):
    """One synchronizer outcome."""
    id: int
    operation: str
    entity_kind: str
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: str


@router.get("", response_model=List[OperationLogResponse])
async def query_logs(
    entity_kind: Optional[EntityKind] = None,
    local_id: Optional[str] = None,
    status: Optional[OperationStatus] = None,
    operation: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
    runtime: SyncRuntime = Depends(get_sync_runtime),
) -> List[OperationLogResponse]:
    """Most recent operation log entries first."""
    entries = runtime.oplog.query(
        entity_kind=entity_kind.value if entity_kind else None,
        local_id=local_id,
        status=status.value if status else None,
        operation=operation,
        since=since,
        limit=limit,
    )
    return [OperationLogResponse(**e.to_dict()) for e in entries]
