"""Durable sync queue.

SQLite table `sync_queue` holding the entities whose last synchronization
failed (or that a trigger could not process right away):

- one row per (entity_kind, record_key); a new request updates the action
- `pending` rows are replayed by drain(), `processing` while claimed
- a row is deleted when its replay succeeds
- on failure retry_count is incremented; at the ceiling the row becomes
  `failed` and waits for an operator (reset_entry) or a new request

Delivery is at-least-once: a row claimed by a processor that died is
picked up again once its claim is stale.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import DEFAULT_DB_PATH
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from sync_queue.budget import Budget

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 5
STALE_CLAIM_MINUTES = 15
MAX_ERROR_LENGTH = 4000


# =============================================================================
# Enums and Models
# =============================================================================

class QueueAction(str, Enum):
    CREATE_OR_UPDATE = "create-or-update"
    DELETE = "delete"
    FULL_SYNC = "full-sync"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


@dataclass
class QueueEntry:
    """One row of the sync queue.

    For deletes, `record_key` is the remote id (a JSON key holding both
    remote ids for contacts, see contact_delete_key()).
    """
    id: int
    entity_kind: str
    record_key: str
    action: QueueAction
    status: QueueStatus
    retry_count: int
    last_error: Optional[str]
    revision: int
    created_at: datetime
    updated_at: datetime
    claimed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_kind": self.entity_kind,
            "record_key": self.record_key,
            "action": self.action.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "revision": self.revision,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }


@dataclass
class DrainResult:
    """Outcome of one drain() call."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    stopped_on_budget: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "stopped_on_budget": self.stopped_on_budget,
            "errors": self.errors,
        }


def contact_delete_key(account_remote_id: str, contact_remote_id: str) -> str:
    """Record key of a contact delete: both remote ids as JSON."""
    return json.dumps({"accountId": account_remote_id, "contactId": contact_remote_id})


def parse_contact_delete_key(record_key: str) -> Tuple[str, str]:
    """Inverse of contact_delete_key(). Returns (account_remote_id, contact_remote_id).

    Raises:
        ValueError: If the key is not a contact delete key
    """
    try:
        data = json.loads(record_key)
    except ValueError:
        raise ValueError(f"Not a contact delete key: {record_key!r}")
    if not isinstance(data, dict) or not data.get("accountId") or not data.get("contactId"):
        raise ValueError(f"Not a contact delete key: {record_key!r}")
    return data["accountId"], data["contactId"]


def format_error(error: BaseException) -> str:
    """`"{ExceptionType}: {message}"`, truncated for storage."""
    return f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]


# =============================================================================
# Database
# =============================================================================

def init_sync_queue_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize the sync_queue table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_kind TEXT NOT NULL,
                record_key TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                revision INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                claimed_at TEXT,

                UNIQUE(entity_kind, record_key)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_queue_status
            ON sync_queue(status)
        """)
        conn.commit()
    finally:
        conn.close()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_entry(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        id=row["id"],
        entity_kind=row["entity_kind"],
        record_key=row["record_key"],
        action=QueueAction(row["action"]),
        status=QueueStatus(row["status"]),
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        revision=row["revision"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        claimed_at=_parse_dt(row["claimed_at"]),
    )


def _kind_value(kind: Any) -> str:
    return str(getattr(kind, "value", kind))


# =============================================================================
# Queue
# =============================================================================

class SyncQueue:
    """SQLite-backed retry queue.

    Usage:
        queue = SyncQueue(settings.db_path, max_retries=settings.max_queue_retries)
        queue.enqueue(EntityKind.INVOICE, "1042", QueueAction.CREATE_OR_UPDATE)
        result = await queue.drain(engine.dispatch, Budget(time_limit_seconds=240))
    """

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        max_retries: int = DEFAULT_MAX_RETRIES,
        stale_claim_minutes: int = STALE_CLAIM_MINUTES,
        initialize: bool = True,
    ):
        self.db_path = Path(db_path)
        self.max_retries = max_retries
        self.stale_claim_minutes = stale_claim_minutes
        if initialize:
            init_sync_queue_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        kind: Any,
        record_key: str,
        action: QueueAction = QueueAction.CREATE_OR_UPDATE,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QueueEntry:
        """Insert or update the entry for (kind, record_key) in one statement.

        An existing entry takes the new action, goes back to pending and gets
        a new revision; a failed entry re-armed this way starts over with a
        zero retry count.
        """
        timestamp = (now or datetime.utcnow()).isoformat()
        kind_value = _kind_value(kind)
        action_value = QueueAction(action).value
        if error is not None:
            error = error[:MAX_ERROR_LENGTH]

        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO sync_queue
                    (entity_kind, record_key, action, status, retry_count, last_error,
                     revision, created_at, updated_at)
                VALUES (?, ?, ?, 'pending', 0, ?, 1, ?, ?)
                ON CONFLICT(entity_kind, record_key) DO UPDATE SET
                    action = excluded.action,
                    status = 'pending',
                    retry_count = CASE WHEN sync_queue.status = 'failed'
                                       THEN 0 ELSE sync_queue.retry_count END,
                    last_error = COALESCE(excluded.last_error, sync_queue.last_error),
                    revision = sync_queue.revision + 1,
                    updated_at = excluded.updated_at
                """,
                (kind_value, record_key, action_value, error, timestamp, timestamp),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE entity_kind = ? AND record_key = ?",
                (kind_value, record_key),
            ).fetchone()
        finally:
            conn.close()

        entry = _row_to_entry(row)
        logger.info(
            f"Queued {kind_value} {record_key} ({action_value})",
            extra_fields={"queue_entry_id": entry.id, "revision": entry.revision},
        )
        return entry

    def enqueue_delete(
        self,
        kind: Any,
        remote_id: str,
        account_remote_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> QueueEntry:
        """Queue a remote delete, keyed by the remote identifier.

        Contacts need their parent account's remote id as well.
        """
        if _kind_value(kind) == "contact":
            if not account_remote_id:
                raise ValueError("Contact deletes need the remote account id")
            record_key = contact_delete_key(account_remote_id, remote_id)
        else:
            record_key = remote_id
        return self.enqueue(kind, record_key, QueueAction.DELETE, error=error)

    # =========================================================================
    # Drain
    # =========================================================================

    def _candidate_ids(self, now: datetime) -> List[int]:
        stale_before = (now - timedelta(minutes=self.stale_claim_minutes)).isoformat()
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT id FROM sync_queue
                WHERE status = 'pending'
                   OR (status = 'failed' AND retry_count < ?)
                   OR (status = 'processing' AND (claimed_at IS NULL OR claimed_at < ?))
                ORDER BY id
                """,
                (self.max_retries, stale_before),
            ).fetchall()
        finally:
            conn.close()
        return [row["id"] for row in rows]

    def _claim(self, entry_id: int, now: datetime) -> Optional[QueueEntry]:
        """Mark an entry as processing, unless it changed or was taken meanwhile."""
        stale_before = (now - timedelta(minutes=self.stale_claim_minutes)).isoformat()
        timestamp = now.isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                UPDATE sync_queue
                SET status = 'processing', claimed_at = ?, updated_at = ?
                WHERE id = ?
                  AND (status = 'pending'
                       OR (status = 'failed' AND retry_count < ?)
                       OR (status = 'processing' AND (claimed_at IS NULL OR claimed_at < ?)))
                """,
                (timestamp, timestamp, entry_id, self.max_retries, stale_before),
            )
            conn.commit()
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_entry(row) if row else None

    def _complete(self, entry: QueueEntry, now: datetime) -> None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE id = ? AND revision = ?",
                (entry.id, entry.revision),
            )
            if cursor.rowcount == 0:
                # Re-requested while processing: keep it for the next drain
                conn.execute(
                    "UPDATE sync_queue SET claimed_at = NULL, updated_at = ? WHERE id = ?",
                    (now.isoformat(), entry.id),
                )
                logger.info(
                    f"Queue entry {entry.id} was re-requested while processing; kept",
                    extra_fields={"queue_entry_id": entry.id},
                )
            conn.commit()
        finally:
            conn.close()

    def _fail(self, entry: QueueEntry, error: BaseException, now: datetime) -> QueueStatus:
        message = format_error(error)
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE sync_queue
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= ? THEN 'failed' ELSE 'pending' END,
                    last_error = ?,
                    claimed_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (self.max_retries, message, now.isoformat(), entry.id),
            )
            conn.commit()
            row = conn.execute("SELECT status FROM sync_queue WHERE id = ?", (entry.id,)).fetchone()
        finally:
            conn.close()
        return QueueStatus(row["status"]) if row else QueueStatus.PENDING

    async def drain(
        self,
        dispatch: Callable[[QueueEntry], Awaitable[Any]],
        budget: Optional[Budget] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> DrainResult:
        """Replay queued entries through `dispatch`, oldest first.

        Args:
            dispatch: Coroutine processing one entry; raising marks it failed
            budget: Checked before each entry; the drain stops when exhausted
            now: Clock returning naive UTC datetimes (for tests)

        Returns:
            DrainResult with per-drain counts
        """
        budget = budget or Budget.unlimited()
        clock = now or datetime.utcnow
        result = DrainResult()

        for entry_id in self._candidate_ids(clock()):
            if budget.exhausted():
                result.stopped_on_budget = True
                logger.info(
                    f"Queue drain stopped on budget after {result.processed} entries "
                    f"({budget.elapsed_seconds:.1f}s)"
                )
                break

            entry = self._claim(entry_id, clock())
            if entry is None:
                continue

            result.processed += 1
            with with_correlation(
                queue_entry_id=entry.id,
                entity_kind=entry.entity_kind,
                local_id=entry.record_key if entry.action != QueueAction.DELETE else None,
            ):
                try:
                    await dispatch(entry)
                except Exception as e:
                    status = self._fail(entry, e, clock())
                    result.failed += 1
                    result.errors.append({
                        "id": entry.id,
                        "entity_kind": entry.entity_kind,
                        "record_key": entry.record_key,
                        "error": format_error(e),
                        "status": status.value,
                    })
                    logger.warning(
                        f"Queue entry {entry.id} ({entry.entity_kind} {entry.record_key}) failed: "
                        f"{type(e).__name__}: {e}",
                        extra_fields={"retry_count": entry.retry_count + 1, "status": status.value},
                    )
                else:
                    self._complete(entry, clock())
                    result.succeeded += 1
            budget.charge()

        get_metrics().record_queue_drain(
            result.processed, result.succeeded, result.failed, result.stopped_on_budget
        )
        logger.info(
            f"Queue drain complete: {result.processed} processed, "
            f"{result.succeeded} succeeded, {result.failed} failed"
        )
        return result

    # =========================================================================
    # Operator functions
    # =========================================================================

    def list_entries(
        self,
        status: Optional[str] = None,
        entity_kind: Optional[str] = None,
        limit: int = 100,
    ) -> List[QueueEntry]:
        clauses = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(QueueStatus(status).value)
        if entity_kind:
            clauses.append("entity_kind = ?")
            params.append(_kind_value(entity_kind))

        sql = "SELECT * FROM sync_queue"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_entry(row) for row in rows]

    def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_entry(row) if row else None

    def find(self, kind: Any, record_key: str) -> Optional[QueueEntry]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE entity_kind = ? AND record_key = ?",
                (_kind_value(kind), record_key),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_entry(row) if row else None

    def stats(self) -> Dict[str, int]:
        """Entry counts by status, plus the total."""
        counts = {status.value: 0 for status in QueueStatus}
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"
            ).fetchall()
        finally:
            conn.close()
        for row in rows:
            counts[row["status"]] = row["n"]
        counts["total"] = sum(counts.values())
        return counts

    def reset_entry(self, entry_id: int) -> Optional[QueueEntry]:
        """Put an entry back to pending with a zero retry count."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                UPDATE sync_queue
                SET status = 'pending', retry_count = 0, claimed_at = NULL,
                    revision = revision + 1, updated_at = ?
                WHERE id = ?
                """,
                (datetime.utcnow().isoformat(), entry_id),
            )
            conn.commit()
        finally:
            conn.close()
        if cursor.rowcount == 0:
            return None
        logger.info(f"Queue entry {entry_id} reset to pending")
        return self.get_entry(entry_id)

    def remove_entry(self, entry_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
            conn.commit()
        finally:
            conn.close()
        return cursor.rowcount > 0

    def purge_failed(self, older_than_days: int = 7, now: Optional[datetime] = None) -> int:
        """Delete failed entries not updated within the retention window."""
        cutoff = (now or datetime.utcnow()) - timedelta(days=older_than_days)
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE status = 'failed' AND updated_at < ?",
                (cutoff.isoformat(),),
            )
            conn.commit()
            deleted = cursor.rowcount
        finally:
            conn.close()
        if deleted:
            logger.info(f"Purged {deleted} failed queue entries older than {older_than_days} days")
        return deleted
