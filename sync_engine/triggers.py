"""Entity change triggers.

Called when a record is created, updated or deleted in the ERP (through
the operator API's /events route or any other hook). The trigger runs the
matching synchronizer right away; any failure is logged and turned into a
sync queue entry so the queue processor retries it later.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.erp_base import EntityKind, RecordNotFoundError
from core.observability.logging import get_logger, with_correlation
from sync_engine.base import LocalRecordMissingError, SyncEngine
from sync_queue.queue import QueueAction, SyncQueue, contact_delete_key, format_error

logger = get_logger(__name__)


class EntityEvent(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DeletedRecord(BaseModel):
    """What is left of a deleted ERP record: its remote keys.

    - remote_id: billing platform id of the record
    - account_id / account_remote_id: parent account (contacts)
    - invoice_ids: invoices a deleted payment was applied to
    """
    remote_id: Optional[str] = None
    account_id: Optional[str] = None
    account_remote_id: Optional[str] = None
    invoice_ids: List[str] = Field(default_factory=list)


@dataclass
class TriggerResult:
    """What a trigger did: "synced", "deleted", "skipped" or "queued"."""
    status: str
    remote_id: Optional[str] = None
    queue_entry_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "remote_id": self.remote_id,
            "queue_entry_id": self.queue_entry_id,
            "error": self.error,
        }


async def handle_entity_event(
    engine: SyncEngine,
    queue: SyncQueue,
    kind: EntityKind,
    event: EntityEvent,
    local_id: str,
    deleted: Optional[DeletedRecord] = None,
) -> TriggerResult:
    """Synchronize one ERP change.

    Create/update:
    - account: account, then its email contacts
    - contact / invoice: the record itself
    - credit note: the credit note, then its allocations
    - payment: the paid amounts of the invoices it is applied to

    Delete: remote delete with the keys in `deleted` (payments re-sync
    their invoices instead).
    """
    kind = EntityKind(kind)
    event = EntityEvent(event)

    with with_correlation(entity_kind=kind.value, local_id=local_id, operation=f"trigger.{event.value}"):
        if event == EntityEvent.DELETE:
            return await _handle_delete(engine, queue, kind, local_id, deleted or DeletedRecord())

        try:
            remote_id = await engine.sync_entity(kind, local_id)
        except LocalRecordMissingError as e:
            logger.warning(f"Skipping {kind.value} {local_id}: {e}")
            return TriggerResult("skipped", error=str(e))
        except Exception as e:
            logger.exception(f"Sync of {kind.value} {local_id} failed, queueing for retry: {e}")
            entry = queue.enqueue(kind, local_id, QueueAction.CREATE_OR_UPDATE, error=format_error(e))
            return TriggerResult("queued", queue_entry_id=entry.id, error=format_error(e))

        return TriggerResult("synced", remote_id=remote_id)


async def _handle_delete(
    engine: SyncEngine,
    queue: SyncQueue,
    kind: EntityKind,
    local_id: str,
    deleted: DeletedRecord,
) -> TriggerResult:
    if kind == EntityKind.PAYMENT:
        return await _handle_payment_delete(engine, queue, local_id, deleted)

    if not deleted.remote_id:
        logger.info(f"Deleted {kind.value} {local_id} was never synchronized, nothing to delete")
        return TriggerResult("skipped")

    remote_key = deleted.remote_id
    if kind == EntityKind.CONTACT:
        if deleted.account_id:
            try:
                engine.context.records.load(EntityKind.ACCOUNT, deleted.account_id)
            except RecordNotFoundError:
                logger.info(
                    f"Parent account {deleted.account_id} of contact {local_id} is gone; "
                    f"the remote account delete removes the contact"
                )
                return TriggerResult("skipped")
        if not deleted.account_remote_id:
            logger.warning(f"Deleted contact {local_id} has no remote account id, cannot delete remotely")
            return TriggerResult("skipped")
        remote_key = contact_delete_key(deleted.account_remote_id, deleted.remote_id)

    try:
        await engine.delete(kind, remote_key)
    except Exception as e:
        logger.exception(f"Remote delete of {kind.value} {local_id} failed, queueing for retry: {e}")
        entry = queue.enqueue_delete(
            kind, deleted.remote_id, account_remote_id=deleted.account_remote_id, error=format_error(e)
        )
        return TriggerResult("queued", remote_id=deleted.remote_id, queue_entry_id=entry.id, error=format_error(e))

    return TriggerResult("deleted", remote_id=deleted.remote_id)


async def _handle_payment_delete(
    engine: SyncEngine,
    queue: SyncQueue,
    local_id: str,
    deleted: DeletedRecord,
) -> TriggerResult:
    """A deleted payment raises the amount remaining of its invoices."""
    if not deleted.invoice_ids:
        logger.info(f"Deleted payment {local_id} was not applied to any invoice")
        return TriggerResult("skipped")

    payments = engine.synchronizer(EntityKind.PAYMENT)
    try:
        await payments.sync_paid_amounts(deleted.invoice_ids)
    except Exception as e:
        logger.exception(f"Invoice re-sync after deleting payment {local_id} failed, queueing: {e}")
        entry = None
        for invoice_id in deleted.invoice_ids:
            entry = queue.enqueue(EntityKind.INVOICE, invoice_id, QueueAction.CREATE_OR_UPDATE, error=format_error(e))
        return TriggerResult("queued", queue_entry_id=entry.id if entry else None, error=format_error(e))

    return TriggerResult("synced")
