"""SQLite ERP Mirror.

RecordStore implementation over a SQLite mirror of the ERP tables. An
export job (outside this repo) keeps the mirror current; the sync engine
reads snapshots from it and writes remote identifiers back into it.

Every statement uses `?` placeholders. The only identifiers that appear in
SQL text are table and column names taken from the fixed mappings below.
"""

import sqlite3
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from connectors.erp_base import (
    BillingAddress,
    CreditApplication,
    Document,
    DocumentSource,
    EntityKind,
    InvoicePaymentState,
    LocalAccount,
    LocalContact,
    LocalCreditNote,
    LocalEntity,
    LocalInvoice,
    LocalPayment,
    PaymentApplication,
    RecordNotFoundError,
    RecordStore,
)
from core.config import DEFAULT_ERP_DB_PATH


TABLES = {
    EntityKind.ACCOUNT: "erp_accounts",
    EntityKind.CONTACT: "erp_contacts",
    EntityKind.INVOICE: "erp_invoices",
    EntityKind.CREDIT_NOTE: "erp_credit_notes",
    EntityKind.PAYMENT: "erp_payments",
}

# Columns the sync engine is allowed to write through submit_fields()
WRITABLE_FIELDS = {
    EntityKind.ACCOUNT: {"remote_id"},
    EntityKind.CONTACT: {"remote_id", "remote_account_id"},
    EntityKind.INVOICE: {"remote_id"},
    EntityKind.CREDIT_NOTE: {"remote_id"},
    EntityKind.PAYMENT: set(),
}

ADDRESS_COLUMNS = "street TEXT, city TEXT, postal_code TEXT, state_or_province TEXT, country TEXT"


def init_erp_db(db_path: Path = DEFAULT_ERP_DB_PATH) -> None:
    """Initialize the ERP mirror tables.

    Amounts are stored as TEXT to keep exact decimal values; dates as ISO
    strings.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS erp_accounts (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                currency_code TEXT,
                email TEXT,
                dunning_email TEXT,
                {ADDRESS_COLUMNS},
                remote_id TEXT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS erp_contacts (
                id TEXT PRIMARY KEY,
                account_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                title TEXT,
                remote_id TEXT,
                remote_account_id TEXT
            )
        """)
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS erp_invoices (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                number TEXT NOT NULL,
                issued_date TEXT,
                due_date TEXT,
                po_number TEXT,
                total TEXT NOT NULL DEFAULT '0',
                tax_total TEXT NOT NULL DEFAULT '0',
                amount_remaining TEXT NOT NULL DEFAULT '0',
                {ADDRESS_COLUMNS},
                remote_id TEXT
            )
        """)
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS erp_credit_notes (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                number TEXT NOT NULL,
                issued_date TEXT,
                total TEXT NOT NULL DEFAULT '0',
                tax_total TEXT NOT NULL DEFAULT '0',
                amount_remaining TEXT NOT NULL DEFAULT '0',
                {ADDRESS_COLUMNS},
                remote_id TEXT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS erp_credit_applications (
                credit_note_id TEXT NOT NULL,
                invoice_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                PRIMARY KEY (credit_note_id, invoice_id)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS erp_payments (
                id TEXT PRIMARY KEY,
                account_id TEXT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS erp_payment_applications (
                payment_id TEXT NOT NULL,
                invoice_id TEXT NOT NULL,
                amount TEXT NOT NULL,
                PRIMARY KEY (payment_id, invoice_id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_erp_contacts_account ON erp_contacts(account_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_erp_invoices_account ON erp_invoices(account_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_erp_credit_notes_account ON erp_credit_notes(account_id)")

        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Row conversion
# =============================================================================

def _to_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _from_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _address_from_row(row: sqlite3.Row) -> BillingAddress:
    return BillingAddress(
        street=row["street"],
        city=row["city"],
        postal_code=row["postal_code"],
        state_or_province=row["state_or_province"],
        country=row["country"],
    )


def _address_values(address: BillingAddress) -> tuple:
    return (
        address.street,
        address.city,
        address.postal_code,
        address.state_or_province,
        address.country,
    )


def _row_to_account(row: sqlite3.Row) -> LocalAccount:
    return LocalAccount(
        id=row["id"],
        name=row["name"],
        currency_code=row["currency_code"],
        email=row["email"],
        dunning_email=row["dunning_email"],
        billing_address=_address_from_row(row),
        remote_id=row["remote_id"],
    )


def _row_to_contact(row: sqlite3.Row) -> LocalContact:
    return LocalContact(
        id=row["id"],
        account_id=row["account_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row["email"],
        title=row["title"],
        remote_id=row["remote_id"],
        remote_account_id=row["remote_account_id"],
    )


def _row_to_invoice(row: sqlite3.Row) -> LocalInvoice:
    return LocalInvoice(
        id=row["id"],
        account_id=row["account_id"],
        number=row["number"],
        issued_date=_to_date(row["issued_date"]),
        due_date=_to_date(row["due_date"]),
        po_number=row["po_number"],
        total=Decimal(row["total"]),
        tax_total=Decimal(row["tax_total"]),
        amount_remaining=Decimal(row["amount_remaining"]),
        billing_address=_address_from_row(row),
        remote_id=row["remote_id"],
    )


class SQLiteRecordStore(RecordStore):
    """RecordStore backed by the ERP mirror database.

    Usage:
        store = SQLiteRecordStore(settings.erp_db_path)
        invoice = store.load(EntityKind.INVOICE, "1042")
    """

    def __init__(self, db_path: Path = DEFAULT_ERP_DB_PATH, initialize: bool = True):
        self.db_path = Path(db_path)
        if initialize:
            init_erp_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # =========================================================================
    # Load / write
    # =========================================================================

    def load(self, kind: EntityKind, local_id: str) -> LocalEntity:
        kind = EntityKind(kind)
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT * FROM {TABLES[kind]} WHERE id = ?", (local_id,))
            row = cursor.fetchone()
            if row is None:
                raise RecordNotFoundError(kind, local_id)

            if kind == EntityKind.ACCOUNT:
                return _row_to_account(row)
            if kind == EntityKind.CONTACT:
                return _row_to_contact(row)
            if kind == EntityKind.INVOICE:
                return _row_to_invoice(row)

            if kind == EntityKind.CREDIT_NOTE:
                cursor.execute("""
                    SELECT invoice_id, amount FROM erp_credit_applications
                    WHERE credit_note_id = ?
                    ORDER BY invoice_id
                """, (local_id,))
                applications = [
                    CreditApplication(invoice_id=r["invoice_id"], amount=Decimal(r["amount"]))
                    for r in cursor.fetchall()
                ]
                return LocalCreditNote(
                    id=row["id"],
                    account_id=row["account_id"],
                    number=row["number"],
                    issued_date=_to_date(row["issued_date"]),
                    total=Decimal(row["total"]),
                    tax_total=Decimal(row["tax_total"]),
                    amount_remaining=Decimal(row["amount_remaining"]),
                    billing_address=_address_from_row(row),
                    applications=applications,
                    remote_id=row["remote_id"],
                )

            cursor.execute("""
                SELECT invoice_id, amount FROM erp_payment_applications
                WHERE payment_id = ?
                ORDER BY invoice_id
            """, (local_id,))
            applications = [
                PaymentApplication(invoice_id=r["invoice_id"], amount=Decimal(r["amount"]))
                for r in cursor.fetchall()
            ]
            return LocalPayment(id=row["id"], account_id=row["account_id"], applications=applications)
        finally:
            conn.close()

    def submit_fields(self, kind: EntityKind, local_id: str, fields: Dict[str, Any]) -> None:
        kind = EntityKind(kind)
        unknown = set(fields) - WRITABLE_FIELDS[kind]
        if unknown:
            raise ValueError(f"Fields not writable on {kind.value}: {sorted(unknown)}")
        if not fields:
            return

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values = [fields[column] for column in columns]

        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE {TABLES[kind]} SET {assignments} WHERE id = ?",
                (*values, local_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(kind, local_id)
            conn.commit()
        finally:
            conn.close()

    def save(self, entity: LocalEntity) -> str:
        conn = self._connect()
        try:
            cursor = conn.cursor()

            if isinstance(entity, LocalAccount):
                cursor.execute("""
                    INSERT OR REPLACE INTO erp_accounts
                    (id, name, currency_code, email, dunning_email,
                     street, city, postal_code, state_or_province, country, remote_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entity.id, entity.name, entity.currency_code, entity.email, entity.dunning_email,
                    *_address_values(entity.billing_address), entity.remote_id,
                ))

            elif isinstance(entity, LocalContact):
                cursor.execute("""
                    INSERT OR REPLACE INTO erp_contacts
                    (id, account_id, first_name, last_name, email, title, remote_id, remote_account_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entity.id, entity.account_id, entity.first_name, entity.last_name,
                    entity.email, entity.title, entity.remote_id, entity.remote_account_id,
                ))

            elif isinstance(entity, LocalInvoice):
                cursor.execute("""
                    INSERT OR REPLACE INTO erp_invoices
                    (id, account_id, number, issued_date, due_date, po_number,
                     total, tax_total, amount_remaining,
                     street, city, postal_code, state_or_province, country, remote_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entity.id, entity.account_id, entity.number,
                    _from_date(entity.issued_date), _from_date(entity.due_date), entity.po_number,
                    str(entity.total), str(entity.tax_total), str(entity.amount_remaining),
                    *_address_values(entity.billing_address), entity.remote_id,
                ))

            elif isinstance(entity, LocalCreditNote):
                cursor.execute("""
                    INSERT OR REPLACE INTO erp_credit_notes
                    (id, account_id, number, issued_date, total, tax_total, amount_remaining,
                     street, city, postal_code, state_or_province, country, remote_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entity.id, entity.account_id, entity.number, _from_date(entity.issued_date),
                    str(entity.total), str(entity.tax_total), str(entity.amount_remaining),
                    *_address_values(entity.billing_address), entity.remote_id,
                ))
                cursor.execute("DELETE FROM erp_credit_applications WHERE credit_note_id = ?", (entity.id,))
                cursor.executemany(
                    "INSERT INTO erp_credit_applications (credit_note_id, invoice_id, amount) VALUES (?, ?, ?)",
                    [(entity.id, a.invoice_id, str(a.amount)) for a in entity.applications],
                )

            elif isinstance(entity, LocalPayment):
                cursor.execute(
                    "INSERT OR REPLACE INTO erp_payments (id, account_id) VALUES (?, ?)",
                    (entity.id, entity.account_id),
                )
                cursor.execute("DELETE FROM erp_payment_applications WHERE payment_id = ?", (entity.id,))
                cursor.executemany(
                    "INSERT INTO erp_payment_applications (payment_id, invoice_id, amount) VALUES (?, ?, ?)",
                    [(entity.id, a.invoice_id, str(a.amount)) for a in entity.applications],
                )

            else:
                raise TypeError(f"Unsupported entity type: {type(entity).__name__}")

            conn.commit()
            return entity.id
        finally:
            conn.close()

    def delete(self, kind: EntityKind, local_id: str) -> None:
        kind = EntityKind(kind)
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(f"DELETE FROM {TABLES[kind]} WHERE id = ?", (local_id,))
            if kind == EntityKind.CREDIT_NOTE:
                cursor.execute("DELETE FROM erp_credit_applications WHERE credit_note_id = ?", (local_id,))
            elif kind == EntityKind.PAYMENT:
                cursor.execute("DELETE FROM erp_payment_applications WHERE payment_id = ?", (local_id,))
            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Set-based lookups
    # =========================================================================

    def _column(self, sql: str, params: tuple) -> List[Any]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def contact_ids_for_account(self, account_id: str) -> List[str]:
        return self._column(
            "SELECT id FROM erp_contacts WHERE account_id = ? ORDER BY id",
            (account_id,),
        )

    def contact_emails_for_account(self, account_id: str) -> List[str]:
        return self._column("""
            SELECT email FROM erp_contacts
            WHERE account_id = ? AND email IS NOT NULL AND TRIM(email) != ''
            ORDER BY id
        """, (account_id,))

    def open_invoice_ids_for_account(self, account_id: str) -> List[str]:
        return self._column("""
            SELECT id FROM erp_invoices
            WHERE account_id = ? AND CAST(amount_remaining AS REAL) > 0
            ORDER BY id
        """, (account_id,))

    def credit_note_ids_for_full_sync(self, account_id: str) -> List[str]:
        return self._column("""
            SELECT id FROM erp_credit_notes
            WHERE account_id = ? AND CAST(amount_remaining AS REAL) > 0
            UNION
            SELECT cn.id FROM erp_credit_notes cn
            JOIN erp_credit_applications ca ON ca.credit_note_id = cn.id
            JOIN erp_invoices i ON i.id = ca.invoice_id
            WHERE cn.account_id = ?
              AND CAST(cn.amount_remaining AS REAL) <= 0
              AND CAST(i.amount_remaining AS REAL) > 0
            ORDER BY id
        """, (account_id, account_id))

    def invoice_remote_id(self, invoice_id: str) -> Optional[str]:
        rows = self._column("SELECT remote_id FROM erp_invoices WHERE id = ?", (invoice_id,))
        return rows[0] if rows else None

    def invoice_payment_state(self, invoice_id: str) -> Optional[InvoicePaymentState]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, remote_id, total, amount_remaining FROM erp_invoices WHERE id = ?",
                (invoice_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return InvoicePaymentState(
                invoice_id=row["id"],
                remote_id=row["remote_id"],
                total=Decimal(row["total"]),
                amount_remaining=Decimal(row["amount_remaining"]),
            )
        finally:
            conn.close()

    def accounts_with_open_documents(self) -> List[str]:
        return self._column("""
            SELECT account_id FROM erp_invoices WHERE CAST(amount_remaining AS REAL) > 0
            UNION
            SELECT account_id FROM erp_credit_notes WHERE CAST(amount_remaining AS REAL) > 0
            ORDER BY account_id
        """, ())


class FileDocumentSource(DocumentSource):
    """Reads rendered documents from `{documents_dir}/{kind}/{id}.pdf`.

    A `.png` file is used when no PDF exists.
    """

    def __init__(self, documents_dir: Path):
        self.documents_dir = Path(documents_dir)

    def fetch(self, kind: EntityKind, local_id: str) -> Document:
        kind = EntityKind(kind)
        folder = self.documents_dir / kind.value
        for suffix in (".pdf", ".png"):
            path = folder / f"{local_id}{suffix}"
            if path.exists():
                return Document(filename=path.name, content=path.read_bytes())
        raise RecordNotFoundError(kind, local_id)
