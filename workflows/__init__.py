"""Workflow definitions module."""

from workflows.sync_workflows import (
    QueueDrainWorkflow,
    FullSyncWorkflow,
    TokenRefreshWorkflow,
    StorageCleanupWorkflow,
    QueueDrainInput,
    FullSyncInput,
    TASK_QUEUE,
)

__all__ = [
    "QueueDrainWorkflow",
    "FullSyncWorkflow",
    "TokenRefreshWorkflow",
    "StorageCleanupWorkflow",
    "QueueDrainInput",
    "FullSyncInput",
    "TASK_QUEUE",
]
