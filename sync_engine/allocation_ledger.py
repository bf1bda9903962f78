"""Ledger of credit allocations already applied on the billing platform.

The platform has no read endpoint for allocations, so the engine remembers
what it applied, keyed by (credit note remote id, invoice remote id).
Recreating either document gives it a new remote id and therefore a fresh
ledger key; the rows of the old remote id are dropped when it is deleted.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from core.config import DEFAULT_DB_PATH


def init_allocation_ledger_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize the credit_allocation_ledger table."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credit_allocation_ledger (
                credit_note_remote_id TEXT NOT NULL,
                invoice_remote_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                applied_at TEXT NOT NULL,

                PRIMARY KEY (credit_note_remote_id, invoice_remote_id)
            )
        """)
        conn.commit()
    finally:
        conn.close()


class AllocationLedger:
    """SQLite-backed ledger of applied allocations."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, initialize: bool = True):
        self.db_path = Path(db_path)
        if initialize:
            init_allocation_ledger_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def applied_amount(self, credit_note_remote_id: str, invoice_remote_id: str) -> Optional[Decimal]:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT amount FROM credit_allocation_ledger
                WHERE credit_note_remote_id = ? AND invoice_remote_id = ?
                """,
                (credit_note_remote_id, invoice_remote_id),
            ).fetchone()
        finally:
            conn.close()
        return Decimal(row["amount"]) if row else None

    def record(self, credit_note_remote_id: str, invoice_remote_id: str, amount: Decimal) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO credit_allocation_ledger
                    (credit_note_remote_id, invoice_remote_id, amount, applied_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(credit_note_remote_id, invoice_remote_id) DO UPDATE SET
                    amount = excluded.amount,
                    applied_at = excluded.applied_at
                """,
                (credit_note_remote_id, invoice_remote_id, str(amount), datetime.utcnow().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def forget(self, credit_note_remote_id: str, invoice_remote_id: Optional[str] = None) -> int:
        """Drop the entries of a credit note (or of one of its allocations)."""
        conn = self._connect()
        try:
            if invoice_remote_id is None:
                cursor = conn.execute(
                    "DELETE FROM credit_allocation_ledger WHERE credit_note_remote_id = ?",
                    (credit_note_remote_id,),
                )
            else:
                cursor = conn.execute(
                    """
                    DELETE FROM credit_allocation_ledger
                    WHERE credit_note_remote_id = ? AND invoice_remote_id = ?
                    """,
                    (credit_note_remote_id, invoice_remote_id),
                )
            conn.commit()
        finally:
            conn.close()
        return cursor.rowcount

    def forget_invoice(self, invoice_remote_id: str) -> int:
        """Drop every allocation applied to an invoice."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM credit_allocation_ledger WHERE invoice_remote_id = ?",
                (invoice_remote_id,),
            )
            conn.commit()
        finally:
            conn.close()
        return cursor.rowcount
