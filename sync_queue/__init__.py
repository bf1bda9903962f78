"""Durable retry queue in front of the synchronizers."""

from sync_queue.budget import Budget
from sync_queue.queue import (
    DrainResult,
    QueueAction,
    QueueEntry,
    QueueStatus,
    SyncQueue,
    contact_delete_key,
    init_sync_queue_db,
    parse_contact_delete_key,
)

__all__ = [
    "Budget",
    "DrainResult",
    "QueueAction",
    "QueueEntry",
    "QueueStatus",
    "SyncQueue",
    "contact_delete_key",
    "init_sync_queue_db",
    "parse_contact_delete_key",
]
