"""Sync activity tests: the activities run outside a worker against the
temporary stores; the billing platform client is replaced by the
in-memory double."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from activities.sync_activities import (
    CleanupInput,
    DrainQueueInput,
    SyncAccountInput,
    cleanup_sync_storage,
    drain_sync_queue,
    list_full_sync_accounts,
    refresh_tokens,
    sync_account_full,
)
from connectors.billing_platform.bp_client import BillingPlatformClient
from connectors.billing_platform.bp_connection import Connection, ConnectionStore
from connectors.erp_base import EntityKind
from sync_engine.runtime import SyncRuntime, set_runtime
from sync_queue.queue import QueueStatus


def run(coro):
    return asyncio.run(coro)


class OpenedClient:
    """Async context manager standing in for an opened BillingPlatformClient."""

    def __init__(self, platform):
        self.platform = platform

    async def __aenter__(self):
        return self.platform

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def runtime(settings, records, documents, oplog, queue, ledger, platform):
    connections = ConnectionStore(settings.db_path)
    connections.save(Connection(name=settings.connection_name, organization_id="org-1", connected=True))
    runtime = SyncRuntime(
        settings=settings,
        connections=connections,
        records=records,
        documents=documents,
        oplog=oplog,
        queue=queue,
        ledger=ledger,
    )
    set_runtime(runtime)
    with patch.object(BillingPlatformClient, "from_settings", return_value=OpenedClient(platform)):
        yield runtime
    set_runtime(None)


class TestQueueAndFullSync:

    def test_drain_sync_queue(self, runtime, platform, account):
        runtime.queue.enqueue(EntityKind.ACCOUNT, account.id)

        result = run(drain_sync_queue(DrainQueueInput(budget_seconds=30)))

        assert result["succeeded"] == 1
        assert result["stopped_on_budget"] is False
        assert platform.count("accounts.create") == 1

    def test_drain_honors_entry_cap(self, runtime, account):
        runtime.queue.enqueue(EntityKind.ACCOUNT, account.id)
        runtime.queue.enqueue(EntityKind.ACCOUNT, "C200")

        result = run(drain_sync_queue(DrainQueueInput(max_entries=1)))

        assert result["processed"] == 1
        assert result["stopped_on_budget"] is True

    def test_drain_waits_for_a_connected_organization(self, runtime, platform, account):
        runtime.connections.disconnect(runtime.settings.connection_name)
        runtime.queue.enqueue(EntityKind.ACCOUNT, account.id)

        for _ in range(runtime.queue.max_retries):
            result = run(drain_sync_queue(DrainQueueInput()))

        entry = runtime.queue.find(EntityKind.ACCOUNT, account.id)
        assert result == {
            "processed": 0, "succeeded": 0, "failed": 0,
            "stopped_on_budget": False, "errors": [],
        }
        assert entry.status == QueueStatus.PENDING
        assert entry.retry_count == 0
        assert platform.calls == []

    def test_drain_needs_an_organization(self, settings, runtime, platform, account):
        runtime.connections = ConnectionStore(settings.db_path.with_name("other.db"))
        runtime.connections.save(Connection(name=settings.connection_name, connected=True))
        runtime.queue.enqueue(EntityKind.ACCOUNT, account.id)

        result = run(drain_sync_queue(DrainQueueInput()))

        assert result["processed"] == 0
        assert runtime.queue.find(EntityKind.ACCOUNT, account.id).retry_count == 0
        assert platform.calls == []

    def test_accounts_with_open_documents(self, runtime, invoice):
        assert run(list_full_sync_accounts()) == [invoice.account_id]

    def test_sync_account_full(self, runtime, platform, invoice):
        result = run(sync_account_full(SyncAccountInput(account_id=invoice.account_id)))

        assert result["ok"] is True
        assert result["account_remote_id"] in platform.accounts_by_id
        assert platform.count("invoices.create") == 1


class TestMaintenance:

    def test_refresh_tokens_delegates_to_the_refresh_process(self, runtime):
        summary = MagicMock()
        summary.to_dict.return_value = {"refreshed": 1, "failed": 0}
        refresh = AsyncMock(return_value=summary)

        with patch("activities.sync_activities.refresh_all_connections", refresh):
            result = run(refresh_tokens())

        assert result == {"refreshed": 1, "failed": 0}
        refresh.assert_awaited_once_with(runtime.connections, token_url=runtime.settings.token_url)

    def test_cleanup_uses_retention_settings(self, runtime):
        runtime.oplog.record("accounts.create", "account", "C1", status="success")

        result = run(cleanup_sync_storage(CleanupInput()))

        assert result == {"pruned_log_entries": 0, "purged_queue_entries": 0}
        assert len(runtime.oplog.query()) == 1

    def test_cleanup_prunes_old_entries(self, runtime):
        runtime.oplog.record(
            "accounts.create", "account", "C1", status="success",
            now=datetime.utcnow() - timedelta(days=10),
        )

        result = run(cleanup_sync_storage(CleanupInput(log_retention_days=7)))

        assert result["pruned_log_entries"] == 1
        assert runtime.oplog.query() == []
