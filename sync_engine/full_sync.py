"""Full reconciliation of one account and everything attached to it.

Order matters: documents need the account, allocations need both the
credit notes and the invoices.

    account -> contacts -> email contacts -> open invoices
            -> credit notes (open, or fully applied to an open invoice)
            -> credit allocations

A failing item is logged and queued for retry; the run continues.
"""

from typing import Awaitable, Callable, Optional

from connectors.erp_base import EntityKind
from core.observability.logging import get_logger, with_correlation
from sync_engine.base import FullSyncResult, SyncEngine
from sync_queue.queue import QueueAction

logger = get_logger(__name__)


async def _run_step(
    engine: SyncEngine,
    result: FullSyncResult,
    kind: EntityKind,
    local_id: str,
    step: Callable[[], Awaitable[object]],
    label: Optional[str] = None,
) -> bool:
    label = label or kind.value
    try:
        await step()
    except Exception as e:
        logger.exception(f"Full sync of account {result.account_id}: {label} {local_id} failed: {e}")
        result.failures.append({
            "kind": kind.value,
            "local_id": local_id,
            "step": label,
            "error": f"{type(e).__name__}: {e}",
        })
        if engine.queue is not None:
            engine.queue.enqueue(kind, local_id, QueueAction.CREATE_OR_UPDATE, error=f"{type(e).__name__}: {e}")
        return False
    result.count(label)
    return True


async def sync_full_account(engine: SyncEngine, account_id: str) -> FullSyncResult:
    """Reconcile an account, its contacts and its open documents.

    Returns:
        FullSyncResult with per-step counts and failures. When the account
        itself fails nothing else is attempted.
    """
    records = engine.context.records
    result = FullSyncResult(account_id=account_id)

    with with_correlation(entity_kind=EntityKind.ACCOUNT.value, local_id=account_id, operation="full-sync"):
        logger.info(f"Full sync of account {account_id} started")

        async def sync_account():
            result.account_remote_id = await engine.reconcile(EntityKind.ACCOUNT, account_id)

        if not await _run_step(engine, result, EntityKind.ACCOUNT, account_id, sync_account):
            return result

        for contact_id in records.contact_ids_for_account(account_id):
            await _run_step(
                engine, result, EntityKind.CONTACT, contact_id,
                lambda cid=contact_id: engine.reconcile(EntityKind.CONTACT, cid),
            )

        accounts = engine.synchronizer(EntityKind.ACCOUNT)
        await _run_step(
            engine, result, EntityKind.ACCOUNT, account_id,
            lambda: accounts.sync_email_contacts(account_id),
            label="email_contacts",
        )

        for invoice_id in records.open_invoice_ids_for_account(account_id):
            await _run_step(
                engine, result, EntityKind.INVOICE, invoice_id,
                lambda iid=invoice_id: engine.reconcile(EntityKind.INVOICE, iid),
            )

        credit_note_ids = records.credit_note_ids_for_full_sync(account_id)
        synced_credit_notes = []
        for credit_note_id in credit_note_ids:
            if await _run_step(
                engine, result, EntityKind.CREDIT_NOTE, credit_note_id,
                lambda cid=credit_note_id: engine.reconcile(EntityKind.CREDIT_NOTE, cid),
            ):
                synced_credit_notes.append(credit_note_id)

        credit_notes = engine.synchronizer(EntityKind.CREDIT_NOTE)
        for credit_note_id in synced_credit_notes:
            await _run_step(
                engine, result, EntityKind.CREDIT_NOTE, credit_note_id,
                lambda cid=credit_note_id: credit_notes.sync_credit_allocations(cid),
                label="credit_allocations",
            )

        logger.info(
            f"Full sync of account {account_id} finished: {result.synced}, "
            f"{len(result.failures)} failures"
        )
    return result
