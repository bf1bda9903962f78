"""Start a billing sync workflow on Temporal.

Usage:
    python scripts/start_sync.py drain
    python scripts/start_sync.py full-sync --account 42 --account 43
    python scripts/start_sync.py refresh-tokens
    python scripts/start_sync.py cleanup
"""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.observability.logging import configure_logging, get_logger
from temporal_client import get_temporal_client
from workflows.sync_workflows import (
    QueueDrainWorkflow,
    QueueDrainInput,
    FullSyncWorkflow,
    FullSyncInput,
    TokenRefreshWorkflow,
    StorageCleanupWorkflow,
    TASK_QUEUE,
)

logger = get_logger(__name__)


async def start_workflow(command: str, account_ids=None, budget_seconds: float = 240.0) -> dict:
    """Start one workflow and wait for its result."""
    client = await get_temporal_client()
    workflow_id = f"{command}-{uuid.uuid4().hex[:8]}"

    if command == "drain":
        handle = await client.start_workflow(
            QueueDrainWorkflow.run,
            QueueDrainInput(budget_seconds=budget_seconds),
            id=workflow_id,
            task_queue=TASK_QUEUE,
        )
    elif command == "full-sync":
        handle = await client.start_workflow(
            FullSyncWorkflow.run,
            FullSyncInput(account_ids=list(account_ids or [])),
            id=workflow_id,
            task_queue=TASK_QUEUE,
        )
    elif command == "refresh-tokens":
        handle = await client.start_workflow(TokenRefreshWorkflow.run, id=workflow_id, task_queue=TASK_QUEUE)
    else:
        handle = await client.start_workflow(StorageCleanupWorkflow.run, id=workflow_id, task_queue=TASK_QUEUE)

    logger.info(f"Workflow started: {handle.id}")
    return await handle.result()


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Start a billing sync workflow")
    parser.add_argument("command", choices=["drain", "full-sync", "refresh-tokens", "cleanup"])
    parser.add_argument(
        "--account",
        action="append",
        dest="account_ids",
        help="Account to reconcile (full-sync; repeatable, default: all with open documents)",
    )
    parser.add_argument(
        "--budget",
        type=float,
        default=240.0,
        help="Queue drain time budget in seconds (default: 240)",
    )
    args = parser.parse_args()
    configure_logging()

    try:
        result = asyncio.run(start_workflow(args.command, args.account_ids, args.budget))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print("\n=== WORKFLOW RESULT ===")
    for key, value in result.items():
        print(f"  {key}: {value}")
    print("=======================\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
