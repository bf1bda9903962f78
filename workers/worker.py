"""Worker for billing sync.

Polls the `billing-sync` task queue and runs the sync workflows and
activities. Connects to Temporal Cloud when TEMPORAL_API_KEY is set,
otherwise to a local development server.

Run with --log-level DEBUG for per-entity detail, --json for structured logs.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from core.observability.logging import configure_logging, get_logger
from temporal_client import get_temporal_client
from workflows.sync_workflows import (
    QueueDrainWorkflow,
    FullSyncWorkflow,
    TokenRefreshWorkflow,
    StorageCleanupWorkflow,
    TASK_QUEUE,
)
from activities.sync_activities import (
    drain_sync_queue,
    list_full_sync_accounts,
    sync_account_full,
    refresh_tokens,
    cleanup_sync_storage,
)

logger = get_logger(__name__)

WORKFLOWS = [QueueDrainWorkflow, FullSyncWorkflow, TokenRefreshWorkflow, StorageCleanupWorkflow]

ACTIVITIES = [
    drain_sync_queue,
    list_full_sync_accounts,
    sync_account_full,
    refresh_tokens,
    cleanup_sync_storage,
]


async def run_worker(task_queue: str = TASK_QUEUE):
    """Start a worker listening on the task queue.

    Raises:
        Exception: If connection to Temporal fails
    """
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal namespace: {client.namespace}")

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=WORKFLOWS,
        activities=ACTIVITIES,
    )
    logger.info(
        f"Worker created for queue '{task_queue}': "
        f"{len(WORKFLOWS)} workflows, {len(ACTIVITIES)} activities"
    )
    logger.info("Worker running... (Ctrl+C to stop)")
    await worker.run()


def main():
    """Entry point for worker with CLI args."""
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Billing Sync Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=TASK_QUEUE,
        help=f"Task queue to poll (default: {TASK_QUEUE})",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        default=settings.log_json,
        help="Emit JSON log lines",
    )

    args = parser.parse_args()
    configure_logging(level=args.log_level, json_format=args.json)
    try:
        asyncio.run(run_worker(task_queue=args.queue))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
