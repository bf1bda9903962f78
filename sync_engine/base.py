"""Synchronizer framework.

Defines:
- SyncContext: the collaborators every synchronizer shares
- Synchronizer: reconcile(local_id) / delete(remote_key) per entity kind
- register_synchronizer: fills the fixed EntityKind -> Synchronizer table
- SyncEngine: entry point used by triggers, the queue and the full sync
- the engine's error taxonomy

Key Design Principles:
- Synchronizers read frozen snapshots and write back only remote ids
- Every remote write is tracked: one operation-log entry plus a metric
- Nothing here knows how it is scheduled (triggers, queue or Temporal)
"""

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Type

from connectors.billing_platform.bp_client import BillingPlatformClient
from connectors.erp_base import (
    DocumentSource,
    EntityKind,
    LocalAccount,
    LocalEntity,
    RecordNotFoundError,
    RecordStore,
)
from core.audit.operation_log import OperationLog, OperationStatus
from core.config import SyncSettings
from core.observability.logging import get_logger
from core.observability.metrics import get_metrics
from sync_queue.queue import QueueAction, QueueEntry

logger = get_logger(__name__)


# =============================================================================
# Errors
# =============================================================================

class SyncError(Exception):
    """Base exception for synchronization failures."""
    pass


class LocalRecordMissingError(SyncError):
    """The ERP record vanished between the trigger and the sync."""
    def __init__(self, kind: EntityKind, local_id: str):
        super().__init__(f"Local {EntityKind(kind).value} {local_id} does not exist")
        self.kind = EntityKind(kind)
        self.local_id = local_id


class DependencyNotSyncedError(SyncError):
    """A parent record (usually the account) could not be linked remotely."""
    def __init__(self, kind: EntityKind, local_id: str, dependency: str):
        super().__init__(
            f"{EntityKind(kind).value} {local_id} depends on {dependency}, which is not synchronized"
        )
        self.kind = EntityKind(kind)
        self.local_id = local_id
        self.dependency = dependency


class PartialSyncError(SyncError):
    """Some of the remote writes of one sync failed; the others went through."""
    def __init__(self, message: str, failures: Optional[List[str]] = None):
        super().__init__(message)
        self.failures = failures or []


# =============================================================================
# Context
# =============================================================================

@dataclass
class SyncContext:
    """Collaborators shared by all synchronizers of one engine.

    Attributes:
        client: Billing platform client (or any object exposing the same resources)
        records: ERP record store
        documents: Source of rendered invoice/credit-note documents
        oplog: Operation log
        settings: Runtime settings
        ledger: Applied credit allocations (optional)
        organization_id: Remote organization; read from the connection when unset
    """
    client: BillingPlatformClient
    records: RecordStore
    documents: DocumentSource
    oplog: OperationLog
    settings: SyncSettings
    ledger: Any = None
    organization_id: Optional[str] = None

    def get_organization_id(self) -> str:
        if self.organization_id:
            return self.organization_id
        connection = self.client.ensure_valid_token()
        if not connection.organization_id:
            raise SyncError(f"Connection '{connection.name}' has no organization selected")
        return connection.organization_id


@dataclass
class TrackedOperation:
    """Filled in by the body of a Synchronizer.track() block."""
    remote_id: Optional[str] = None
    message: Optional[str] = None


# =============================================================================
# Synchronizer Registry
# =============================================================================

_synchronizer_registry: Dict[EntityKind, Type["Synchronizer"]] = {}


def register_synchronizer(kind: EntityKind):
    """Decorator to register the synchronizer of an entity kind."""
    def decorator(cls):
        cls.kind = EntityKind(kind)
        _synchronizer_registry[EntityKind(kind)] = cls
        return cls
    return decorator


def get_synchronizer_class(kind: EntityKind) -> Type["Synchronizer"]:
    kind = EntityKind(kind)
    if kind not in _synchronizer_registry:
        available = [k.value for k in _synchronizer_registry]
        raise ValueError(f"No synchronizer registered for {kind.value}. Available: {available}")
    return _synchronizer_registry[kind]


class Synchronizer(ABC):
    """Brings one kind of ERP record in line with the billing platform."""

    kind: EntityKind

    def __init__(self, context: SyncContext, engine: "SyncEngine"):
        self.context = context
        self.engine = engine

    @property
    def client(self) -> BillingPlatformClient:
        return self.context.client

    @property
    def records(self) -> RecordStore:
        return self.context.records

    @property
    def settings(self) -> SyncSettings:
        return self.context.settings

    @abstractmethod
    async def reconcile(self, local_id: str) -> Optional[str]:
        """Create, update or replace the remote counterpart.

        Returns:
            The remote id, or None when the record is skipped
        """
        pass

    @abstractmethod
    async def delete(self, remote_key: str) -> None:
        """Delete the remote counterpart. A missing remote object is success."""
        pass

    # =========================================================================
    # Helpers
    # =========================================================================

    def load(self, local_id: str, kind: Optional[EntityKind] = None) -> LocalEntity:
        kind = kind or self.kind
        try:
            return self.records.load(kind, local_id)
        except RecordNotFoundError:
            raise LocalRecordMissingError(kind, local_id)

    def clear_remote_id(self, local_id: str, kind: Optional[EntityKind] = None) -> None:
        """Forget a remote id that points at nothing."""
        kind = kind or self.kind
        logger.warning(f"Clearing dangling remote reference of {kind.value} {local_id}")
        self.records.set_remote_id(kind, local_id, None)

    @contextmanager
    def track(
        self,
        operation: str,
        local_id: Optional[str],
        remote_id: Optional[str] = None,
        kind: Optional[EntityKind] = None,
    ) -> Iterator[TrackedOperation]:
        """Time a remote write and record its outcome.

        Usage:
            with self.track("accounts.create", account.id) as op:
                response = await self.client.accounts.create(payload)
                op.remote_id = response.data["id"]
        """
        kind = kind or self.kind
        tracked = TrackedOperation(remote_id=remote_id)
        start = time.perf_counter()
        try:
            yield tracked
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self.context.oplog.record(
                operation,
                kind.value,
                local_id,
                remote_id=tracked.remote_id,
                status=OperationStatus.ERROR,
                message=f"{type(e).__name__}: {e}",
                duration_ms=duration_ms,
            )
            get_metrics().record_sync_outcome(operation, success=False, duration_ms=duration_ms)
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        self.context.oplog.record(
            operation,
            kind.value,
            local_id,
            remote_id=tracked.remote_id,
            status=OperationStatus.SUCCESS,
            message=tracked.message,
            duration_ms=duration_ms,
        )
        get_metrics().record_sync_outcome(operation, success=True, duration_ms=duration_ms)
        logger.info(
            f"{operation} {kind.value} {local_id} -> {tracked.remote_id or '-'} ({duration_ms:.0f}ms)"
        )


# =============================================================================
# Engine
# =============================================================================

@dataclass
class FullSyncResult:
    """Outcome of sync_full_account()."""
    account_id: str
    account_remote_id: Optional[str] = None
    synced: Dict[str, int] = field(default_factory=dict)
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def count(self, kind: str) -> None:
        self.synced[kind] = self.synced.get(kind, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "account_remote_id": self.account_remote_id,
            "synced": dict(self.synced),
            "failures": list(self.failures),
            "ok": self.ok,
        }


class SyncEngine:
    """Entry point of the synchronization engine.

    Usage:
        engine = SyncEngine(context, queue)
        remote_id = await engine.reconcile(EntityKind.INVOICE, "1042")
        await engine.delete(EntityKind.CREDIT_NOTE, remote_id)
        result = await engine.sync_full_account("42")
    """

    def __init__(self, context: SyncContext, queue: Any = None):
        self.context = context
        self.queue = queue
        self._synchronizers: Dict[EntityKind, Synchronizer] = {
            kind: cls(context, self) for kind, cls in _synchronizer_registry.items()
        }

    def synchronizer(self, kind: EntityKind) -> Synchronizer:
        kind = EntityKind(kind)
        if kind not in self._synchronizers:
            get_synchronizer_class(kind)
        return self._synchronizers[kind]

    async def reconcile(self, kind: EntityKind, local_id: str) -> Optional[str]:
        return await self.synchronizer(kind).reconcile(local_id)

    async def delete(self, kind: EntityKind, remote_key: str) -> None:
        await self.synchronizer(kind).delete(remote_key)

    async def sync_entity(self, kind: EntityKind, local_id: str) -> Optional[str]:
        """Reconcile a record together with what hangs off it.

        Accounts also get their email contacts; credit notes also get their
        allocations.
        """
        kind = EntityKind(kind)
        remote_id = await self.reconcile(kind, local_id)
        if kind == EntityKind.ACCOUNT and remote_id:
            await self.synchronizer(kind).sync_email_contacts(local_id)
        elif kind == EntityKind.CREDIT_NOTE and remote_id:
            await self.synchronizer(kind).sync_credit_allocations(local_id)
        return remote_id

    async def ensure_account_linked(self, account_id: str) -> str:
        """Remote id of an account, creating the remote account when needed.

        Raises:
            DependencyNotSyncedError: If the account could not be linked
        """
        try:
            account: LocalAccount = self.context.records.load(EntityKind.ACCOUNT, account_id)
        except RecordNotFoundError:
            raise LocalRecordMissingError(EntityKind.ACCOUNT, account_id)
        if account.remote_id:
            return account.remote_id

        remote_id = await self.reconcile(EntityKind.ACCOUNT, account_id)
        if not remote_id:
            raise DependencyNotSyncedError(EntityKind.ACCOUNT, account_id, f"account {account_id}")
        return remote_id

    async def sync_full_account(self, account_id: str) -> FullSyncResult:
        from sync_engine.full_sync import sync_full_account

        return await sync_full_account(self, account_id)

    async def dispatch(self, entry: QueueEntry) -> None:
        """Replay one sync queue entry. Raising marks the entry failed."""
        kind = EntityKind(entry.entity_kind)
        if entry.action == QueueAction.DELETE:
            await self.delete(kind, entry.record_key)
        elif entry.action == QueueAction.FULL_SYNC:
            result = await self.sync_full_account(entry.record_key)
            if result.account_remote_id is None:
                raise PartialSyncError(
                    f"Full sync of account {entry.record_key} could not link the account",
                    [f["error"] for f in result.failures],
                )
        else:
            await self.sync_entity(kind, entry.record_key)
