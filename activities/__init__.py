"""Activity definitions module."""

from activities.sync_activities import (
    drain_sync_queue,
    list_full_sync_accounts,
    sync_account_full,
    refresh_tokens,
    cleanup_sync_storage,
    DrainQueueInput,
    SyncAccountInput,
    CleanupInput,
)

__all__ = [
    # Sync activities
    "drain_sync_queue",
    "list_full_sync_accounts",
    "sync_account_full",
    "refresh_tokens",
    "cleanup_sync_storage",
    # Inputs
    "DrainQueueInput",
    "SyncAccountInput",
    "CleanupInput",
]
