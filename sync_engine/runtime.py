"""Process-wide wiring of the sync engine.

Builds the stores from SyncSettings once per process and hands out engines
bound to a fresh billing platform client. Used by the Temporal activities
and the operator API.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from connectors.billing_platform.bp_client import BillingPlatformClient
from connectors.billing_platform.bp_connection import ConnectionStore
from connectors.erp_base import DocumentSource, RecordStore
from connectors.erp_sqlite import FileDocumentSource, SQLiteRecordStore
from core.audit.operation_log import OperationLog
from core.config import SyncSettings, get_settings
from core.security.encryption import SecretCipher
from sync_engine.allocation_ledger import AllocationLedger
from sync_engine.base import SyncContext, SyncEngine
from sync_queue.queue import SyncQueue


@dataclass
class SyncRuntime:
    """Everything an engine needs, except the HTTP client."""
    settings: SyncSettings
    connections: ConnectionStore
    records: RecordStore
    documents: DocumentSource
    oplog: OperationLog
    queue: SyncQueue
    ledger: AllocationLedger

    @classmethod
    def from_settings(cls, settings: Optional[SyncSettings] = None) -> "SyncRuntime":
        settings = settings or get_settings()
        cipher = SecretCipher(settings.token_encryption_key) if settings.token_encryption_key else None
        return cls(
            settings=settings,
            connections=ConnectionStore(settings.db_path, cipher),
            records=SQLiteRecordStore(settings.erp_db_path),
            documents=FileDocumentSource(settings.documents_dir),
            oplog=OperationLog(settings.db_path),
            queue=SyncQueue(settings.db_path, max_retries=settings.max_queue_retries),
            ledger=AllocationLedger(settings.db_path),
        )

    def build_engine(self, client: BillingPlatformClient) -> SyncEngine:
        context = SyncContext(
            client=client,
            records=self.records,
            documents=self.documents,
            oplog=self.oplog,
            settings=self.settings,
            ledger=self.ledger,
        )
        return SyncEngine(context, self.queue)

    @asynccontextmanager
    async def engine(self, client: Optional[BillingPlatformClient] = None) -> AsyncIterator[SyncEngine]:
        """Engine bound to `client`, or to a client opened (and closed) here."""
        if client is not None:
            yield self.build_engine(client)
            return

        async with BillingPlatformClient.from_settings(self.settings, self.connections) as owned:
            yield self.build_engine(owned)


_runtime: Optional[SyncRuntime] = None


def get_runtime() -> SyncRuntime:
    """Get the process-wide runtime (built from the environment on first use)."""
    global _runtime
    if _runtime is None:
        _runtime = SyncRuntime.from_settings()
    return _runtime


def set_runtime(runtime: Optional[SyncRuntime]) -> None:
    """Replace the process-wide runtime (tests, alternate settings)."""
    global _runtime
    _runtime = runtime
