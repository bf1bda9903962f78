"""ERP change events.

The ERP (or whatever watches it) posts here when a record changes. The
change is synchronized immediately; failures land in the sync queue.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from api.dependencies import get_sync_runtime
from connectors.erp_base import EntityKind
from sync_engine.runtime import SyncRuntime
from sync_engine.triggers import DeletedRecord, EntityEvent, handle_entity_event


router = APIRouter()


class EntityEventRequest(BaseModel):
    """A create, update or delete of one ERP record."""
    event: EntityEvent
    deleted: Optional[DeletedRecord] = None


@router.post("/{kind}/{local_id}")
async def post_event(
    kind: EntityKind,
    local_id: str,
    body: EntityEventRequest,
    request: Request,
    runtime: SyncRuntime = Depends(get_sync_runtime),
) -> Dict[str, Any]:
    """Synchronize one ERP change now.

    Returns the trigger outcome: synced, deleted, skipped or queued.
    """
    async with runtime.engine(request.app.state.billing_client) as engine:
        result = await handle_entity_event(
            engine, runtime.queue, kind, body.event, local_id, deleted=body.deleted
        )
    return result.to_dict()
