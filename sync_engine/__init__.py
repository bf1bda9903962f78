"""Synchronization engine.

Importing the package registers every synchronizer:
- accounts: AccountSynchronizer, ContactSynchronizer
- documents: InvoiceSynchronizer, CreditNoteSynchronizer, PaymentSynchronizer
"""

from sync_engine.base import (
    DependencyNotSyncedError,
    FullSyncResult,
    LocalRecordMissingError,
    PartialSyncError,
    SyncContext,
    SyncEngine,
    SyncError,
    Synchronizer,
    register_synchronizer,
)
from sync_engine.accounts import AccountSynchronizer, ContactSynchronizer
from sync_engine.documents import (
    CreditNoteSynchronizer,
    InvoiceSynchronizer,
    PaymentSynchronizer,
)
from sync_engine.allocation_ledger import AllocationLedger
from sync_engine.full_sync import sync_full_account
from sync_engine.triggers import DeletedRecord, EntityEvent, TriggerResult, handle_entity_event

__all__ = [
    # Engine
    "SyncContext",
    "SyncEngine",
    "Synchronizer",
    "register_synchronizer",
    "FullSyncResult",
    "sync_full_account",
    "AllocationLedger",
    # Synchronizers
    "AccountSynchronizer",
    "ContactSynchronizer",
    "InvoiceSynchronizer",
    "CreditNoteSynchronizer",
    "PaymentSynchronizer",
    # Triggers
    "EntityEvent",
    "DeletedRecord",
    "TriggerResult",
    "handle_entity_event",
    # Errors
    "SyncError",
    "LocalRecordMissingError",
    "DependencyNotSyncedError",
    "PartialSyncError",
]
