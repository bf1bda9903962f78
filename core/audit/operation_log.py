"""Operation log persistence.

One row per synchronizer outcome, kept in the `operation_log` SQLite table:
- operation: "accounts.create", "invoices.delete+create", ...
- entity_kind / local_id / remote_id: the record involved
- status: "success" or "error"
- message: error text or short note (truncated to 4000 chars)
- duration_ms: wall time of the operation

Rows are pruned by age (see prune()).
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional

from core.config import DEFAULT_DB_PATH
from core.observability.logging import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4000


class OperationStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class OperationLogEntry:
    """One recorded synchronizer outcome."""
    id: int
    operation: str
    entity_kind: str
    local_id: Optional[str]
    remote_id: Optional[str]
    status: OperationStatus
    message: Optional[str]
    duration_ms: Optional[int]
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "entity_kind": self.entity_kind,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "status": self.status.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at.isoformat(),
        }


def init_operation_log_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize the operation_log table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS operation_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL,
                entity_kind TEXT NOT NULL,
                local_id TEXT,
                remote_id TEXT,
                status TEXT NOT NULL,
                message TEXT,
                duration_ms INTEGER,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_operation_log_entity
            ON operation_log(entity_kind, local_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_operation_log_created
            ON operation_log(created_at)
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_entry(row: sqlite3.Row) -> OperationLogEntry:
    return OperationLogEntry(
        id=row["id"],
        operation=row["operation"],
        entity_kind=row["entity_kind"],
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        status=OperationStatus(row["status"]),
        message=row["message"],
        duration_ms=row["duration_ms"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class OperationLog:
    """Append-only record of synchronizer outcomes.

    Usage:
        oplog = OperationLog(settings.db_path)
        oplog.record("accounts.create", "account", "42", remote_id="7f3c...",
                     status="success", duration_ms=212)
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, initialize: bool = True):
        self.db_path = Path(db_path)
        if initialize:
            init_operation_log_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def record(
        self,
        operation: str,
        entity_kind: str,
        local_id: Optional[str],
        remote_id: Optional[str] = None,
        status: str = OperationStatus.SUCCESS,
        message: Optional[str] = None,
        duration_ms: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Append one entry.

        Never raises: a failing write is reported to the application log and
        the sync carries on.
        """
        status_value = OperationStatus(status).value
        if message is not None and len(message) > MAX_MESSAGE_LENGTH:
            message = message[:MAX_MESSAGE_LENGTH]
        created_at = (now or datetime.utcnow()).isoformat()

        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO operation_log
                        (operation, entity_kind, local_id, remote_id, status, message, duration_ms, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        operation,
                        str(getattr(entity_kind, "value", entity_kind)),
                        local_id,
                        remote_id,
                        status_value,
                        message,
                        int(duration_ms) if duration_ms is not None else None,
                        created_at,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(
                f"Could not write operation log entry for {operation}: {e}",
                extra_fields={"entity_kind": str(entity_kind), "local_id": local_id},
            )

    def query(
        self,
        entity_kind: Optional[str] = None,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
        status: Optional[str] = None,
        operation: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[OperationLogEntry]:
        """Most recent entries first, filtered by the given fields."""
        clauses = []
        params: list = []
        if entity_kind:
            clauses.append("entity_kind = ?")
            params.append(str(getattr(entity_kind, "value", entity_kind)))
        if local_id:
            clauses.append("local_id = ?")
            params.append(local_id)
        if remote_id:
            clauses.append("remote_id = ?")
            params.append(remote_id)
        if status:
            clauses.append("status = ?")
            params.append(OperationStatus(status).value)
        if operation:
            clauses.append("operation = ?")
            params.append(operation)
        if since:
            clauses.append("created_at >= ?")
            params.append(since.isoformat())

        sql = "SELECT * FROM operation_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_entry(row) for row in rows]

    def prune(self, retention_days: int = 30, now: Optional[datetime] = None) -> int:
        """Delete entries older than the retention window.

        Returns:
            Number of deleted entries
        """
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM operation_log WHERE created_at < ?",
                (cutoff.isoformat(),),
            )
            conn.commit()
            deleted = cursor.rowcount
        finally:
            conn.close()

        if deleted:
            logger.info(f"Pruned {deleted} operation log entries older than {retention_days} days")
        return deleted
