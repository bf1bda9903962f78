"""Billing sync workflows.

Scheduled by operators (Temporal schedules); each workflow is one run:
- QueueDrainWorkflow: replay the sync queue within a time budget
- FullSyncWorkflow: reconcile every account with open documents
- TokenRefreshWorkflow: rotate OAuth tokens before they expire
- StorageCleanupWorkflow: prune the operation log and stale failed entries
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
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


TASK_QUEUE = "billing-sync"

# Billing platform calls: rate limits and token rotation heal with time
API_RETRY_POLICY = RetryPolicy(
    maximum_attempts=3,
    initial_interval=timedelta(seconds=10),
    maximum_interval=timedelta(minutes=2),
    backoff_coefficient=2.0,
    non_retryable_error_types=["LocalRecordMissingError", "ValueError"],
)

# Local database maintenance
DB_RETRY_POLICY = RetryPolicy(
    maximum_attempts=3,
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=30),
    backoff_coefficient=2.0,
    non_retryable_error_types=["IntegrityError"],
)


@dataclass
class QueueDrainInput:
    """Input for QueueDrainWorkflow.

    Attributes:
        budget_seconds: Time allowance of the drain (kept under the activity timeout)
        max_entries: Optional cap on processed entries
    """
    budget_seconds: float = 240.0
    max_entries: Optional[int] = None


@dataclass
class FullSyncInput:
    """Input for FullSyncWorkflow.

    Attributes:
        account_ids: Accounts to reconcile; all accounts with open documents when empty
    """
    account_ids: List[str] = field(default_factory=list)


@workflow.defn
class QueueDrainWorkflow:
    """Replays the sync queue once."""

    @workflow.run
    async def run(self, input: QueueDrainInput) -> dict:
        result = await workflow.execute_activity(
            drain_sync_queue,
            DrainQueueInput(budget_seconds=input.budget_seconds, max_entries=input.max_entries),
            start_to_close_timeout=timedelta(seconds=input.budget_seconds + 60),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        workflow.logger.info(
            f"Queue drain: {result['processed']} processed, {result['succeeded']} succeeded, "
            f"{result['failed']} failed"
        )
        return result


@workflow.defn
class FullSyncWorkflow:
    """Reconciles accounts one activity at a time.

    A failing account is reported and the run moves on to the next one.
    """

    @workflow.run
    async def run(self, input: FullSyncInput) -> dict:
        account_ids = input.account_ids
        if not account_ids:
            account_ids = await workflow.execute_activity(
                list_full_sync_accounts,
                start_to_close_timeout=timedelta(seconds=60),
                retry_policy=DB_RETRY_POLICY,
            )

        workflow.logger.info(f"Full sync of {len(account_ids)} accounts")

        synced = []
        with_failures = []
        failed = []
        for account_id in account_ids:
            try:
                result = await workflow.execute_activity(
                    sync_account_full,
                    SyncAccountInput(account_id=account_id),
                    start_to_close_timeout=timedelta(minutes=10),
                    retry_policy=API_RETRY_POLICY,
                )
            except ActivityError as e:
                workflow.logger.error(f"Full sync of account {account_id} failed: {e.cause or e}")
                failed.append(account_id)
                continue

            if result.get("ok"):
                synced.append(account_id)
            else:
                with_failures.append(account_id)

        return {
            "accounts": len(account_ids),
            "synced": synced,
            "with_failures": with_failures,
            "failed": failed,
        }


@workflow.defn
class TokenRefreshWorkflow:
    """Rotates the OAuth tokens of every connection."""

    @workflow.run
    async def run(self) -> dict:
        return await workflow.execute_activity(
            refresh_tokens,
            start_to_close_timeout=timedelta(minutes=2),
            retry_policy=API_RETRY_POLICY,
        )


@workflow.defn
class StorageCleanupWorkflow:
    """Prunes the operation log and failed queue entries past retention."""

    @workflow.run
    async def run(self, input: Optional[CleanupInput] = None) -> dict:
        return await workflow.execute_activity(
            cleanup_sync_storage,
            input or CleanupInput(),
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=DB_RETRY_POLICY,
        )
