"""Billing sync activities.

Thin Temporal wrappers around the sync engine, the queue, the token
refresh process and storage maintenance. Exceptions propagate so the
workflow's RetryPolicy decides what happens next.
"""

from dataclasses import dataclass
from typing import List, Optional

from temporalio import activity

from connectors.billing_platform.bp_oauth import refresh_all_connections
from core.observability.logging import get_logger, with_correlation
from sync_engine.runtime import get_runtime
from sync_queue.budget import Budget
from sync_queue.queue import DrainResult

logger = get_logger(__name__)


@dataclass
class DrainQueueInput:
    """Input for drain_sync_queue activity.

    Attributes:
        budget_seconds: Time allowance (defaults to QUEUE_BUDGET_SECONDS)
        max_entries: Stop after this many entries (optional)
    """
    budget_seconds: Optional[float] = None
    max_entries: Optional[int] = None


@dataclass
class SyncAccountInput:
    """Input for sync_account_full activity.

    Attributes:
        account_id: ERP id of the account to reconcile
    """
    account_id: str


@dataclass
class CleanupInput:
    """Input for cleanup_sync_storage activity.

    Attributes:
        log_retention_days: Operation log retention (defaults to LOG_RETENTION_DAYS)
        failed_retention_days: Failed queue entry retention (defaults to FAILED_QUEUE_RETENTION_DAYS)
    """
    log_retention_days: Optional[int] = None
    failed_retention_days: Optional[int] = None


def _activity_context() -> dict:
    """Correlation fields of the running activity (empty outside Temporal)."""
    if not activity.in_activity():
        return {}
    info = activity.info()
    return {"workflow_id": info.workflow_id, "activity_name": info.activity_type}


@activity.defn
async def drain_sync_queue(input: DrainQueueInput) -> dict:
    """Replay pending sync queue entries within a time budget.

    Returns:
        DrainResult as a dict
    """
    runtime = get_runtime()
    settings = runtime.settings
    connection = runtime.connections.get(settings.connection_name)
    if not connection.connected or not connection.has_organization:
        logger.info(
            "Connection not ready, leaving sync queue untouched",
            extra_fields={
                "connection": settings.connection_name,
                "connected": connection.connected,
                "has_organization": connection.has_organization,
            },
        )
        return DrainResult().to_dict()

    budget = Budget(
        time_limit_seconds=input.budget_seconds or settings.queue_budget_seconds,
        max_units=input.max_entries,
    )
    with with_correlation(connection=settings.connection_name, **_activity_context()):
        async with runtime.engine() as engine:
            result = await runtime.queue.drain(engine.dispatch, budget)
    return result.to_dict()


@activity.defn
async def list_full_sync_accounts() -> List[str]:
    """IDs of the accounts with at least one open invoice or credit note."""
    runtime = get_runtime()
    account_ids = runtime.records.accounts_with_open_documents()
    logger.info(f"{len(account_ids)} accounts selected for full sync")
    return account_ids


@activity.defn
async def sync_account_full(input: SyncAccountInput) -> dict:
    """Full reconciliation of one account.

    Returns:
        FullSyncResult as a dict
    """
    runtime = get_runtime()
    with with_correlation(connection=runtime.settings.connection_name, **_activity_context()):
        async with runtime.engine() as engine:
            result = await engine.sync_full_account(input.account_id)
    return result.to_dict()


@activity.defn
async def refresh_tokens() -> dict:
    """Rotate the OAuth tokens of every connected connection.

    Returns:
        RefreshSummary as a dict
    """
    runtime = get_runtime()
    with with_correlation(**_activity_context()):
        summary = await refresh_all_connections(runtime.connections, token_url=runtime.settings.token_url)
    return summary.to_dict()


@activity.defn
async def cleanup_sync_storage(input: CleanupInput) -> dict:
    """Prune old operation log entries and old failed queue entries."""
    runtime = get_runtime()
    settings = runtime.settings
    log_days = input.log_retention_days or settings.log_retention_days
    failed_days = input.failed_retention_days or settings.failed_queue_retention_days

    with with_correlation(**_activity_context()):
        pruned_logs = runtime.oplog.prune(retention_days=log_days)
        purged_entries = runtime.queue.purge_failed(older_than_days=failed_days)
        logger.info(
            f"Storage cleanup: {pruned_logs} log entries older than {log_days} days, "
            f"{purged_entries} failed queue entries older than {failed_days} days"
        )

    return {"pruned_log_entries": pruned_logs, "purged_queue_entries": purged_entries}
