"""Shared fixtures: temporary stores and an in-memory billing platform."""

import itertools
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from connectors.billing_platform.bp_client import ApiError
from connectors.billing_platform.bp_connection import Connection
from connectors.billing_platform.bp_models import ApiResponse
from connectors.erp_base import (
    BillingAddress,
    Document,
    DocumentSource,
    EntityKind,
    LocalAccount,
    LocalInvoice,
    RecordNotFoundError,
)
from connectors.erp_sqlite import SQLiteRecordStore
from core.audit.operation_log import OperationLog
from core.config import SyncSettings
from core.observability.metrics import MetricsCollector
from sync_engine import AllocationLedger, SyncContext, SyncEngine
from sync_queue.queue import SyncQueue


# =============================================================================
# Billing platform double
# =============================================================================

def _date_from_fields(fields: Dict[str, Any], name: str) -> Optional[Dict[str, int]]:
    if f"{name}[year]" not in fields:
        return None
    return {
        "year": int(fields[f"{name}[year]"]),
        "month": int(fields[f"{name}[month]"]),
        "day": int(fields[f"{name}[day]"]),
    }


class FakeBillingPlatform:
    """In-memory stand-in for BillingPlatformClient's resources.

    Every call is appended to `calls` as a tuple ("resource.method", *args).
    Put an exception in `failures["resource.method"]` to make the next call
    of that method raise it.
    """

    def __init__(self):
        self.accounts_by_id: Dict[str, Dict[str, Any]] = {}
        self.contacts_by_account: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.invoices_by_id: Dict[str, Dict[str, Any]] = {}
        self.credit_notes_by_id: Dict[str, Dict[str, Any]] = {}
        self.allocations: Dict[Tuple[str, str], Decimal] = {}
        self.uploads: List[str] = []
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

        self.accounts = SimpleNamespace(
            get=self._account_get,
            create=self._account_create,
            update=self._account_update,
            delete=self._account_delete,
        )
        self.contacts = SimpleNamespace(
            list=self._contact_list,
            get=self._contact_get,
            upsert=self._contact_upsert,
            delete=self._contact_delete,
        )
        self.invoices = SimpleNamespace(
            get=self._invoice_get,
            create=self._invoice_create,
            delete=self._invoice_delete,
            update_paid_amount=self._invoice_update_paid_amount,
        )
        self.credit_notes = SimpleNamespace(
            get=self._credit_note_get,
            create=self._credit_note_create,
            delete=self._credit_note_delete,
        )
        self.credit_allocations = SimpleNamespace(
            apply=self._allocation_apply,
            remove=self._allocation_remove,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _call(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        error = self.failures.pop(name, None)
        if error is not None:
            raise error

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    @staticmethod
    def _not_found(what: str) -> ApiError:
        return ApiError(f"{what} not found", 404, {"message": f"{what} not found"})

    def ensure_valid_token(self) -> Connection:
        return Connection(name="default", organization_id="org-1", connected=True)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def writes(self) -> List[str]:
        """Names of the calls that change remote state."""
        return [call[0] for call in self.calls if not call[0].endswith((".get", ".list"))]

    # =========================================================================
    # Accounts
    # =========================================================================

    async def _account_get(self, account_id):
        self._call("accounts.get", account_id)
        if account_id not in self.accounts_by_id:
            raise self._not_found("Account")
        return ApiResponse(data=dict(self.accounts_by_id[account_id]))

    async def _account_create(self, payload):
        self._call("accounts.create", payload)
        account_id = self._new_id("acc")
        self.accounts_by_id[account_id] = {
            "id": account_id,
            "organizationId": payload.get("organizationId"),
            "fullName": payload.get("fullName"),
            "currencyCode": payload.get("currencyCode"),
            "billingAddress": payload.get("billingAddress"),
            "source": payload.get("source"),
        }
        self.contacts_by_account[account_id] = {}
        return ApiResponse(data={"id": account_id}, status=201)

    async def _account_update(self, account_id, payload):
        self._call("accounts.update", account_id, payload)
        if account_id not in self.accounts_by_id:
            raise self._not_found("Account")
        self.accounts_by_id[account_id].update(payload)
        return ApiResponse(data=dict(self.accounts_by_id[account_id]))

    async def _account_delete(self, account_id):
        self._call("accounts.delete", account_id)
        if self.accounts_by_id.pop(account_id, None) is None:
            raise self._not_found("Account")
        self.contacts_by_account.pop(account_id, None)
        return ApiResponse(data=None, status=204)

    # =========================================================================
    # Contacts
    # =========================================================================

    def _contacts(self, account_id) -> Dict[str, Dict[str, Any]]:
        if account_id not in self.accounts_by_id:
            raise self._not_found("Account")
        return self.contacts_by_account.setdefault(account_id, {})

    async def _contact_list(self, account_id):
        self._call("contacts.list", account_id)
        return ApiResponse(data=[dict(c) for c in self._contacts(account_id).values()])

    async def _contact_get(self, account_id, contact_id):
        self._call("contacts.get", account_id, contact_id)
        contacts = self._contacts(account_id)
        if contact_id not in contacts:
            raise self._not_found("Contact")
        return ApiResponse(data=dict(contacts[contact_id]))

    async def _contact_upsert(self, account_id, payload):
        self._call("contacts.upsert", account_id, payload)
        contacts = self._contacts(account_id)
        email = (payload.get("email") or "").lower()
        match = None
        if email:
            match = next((c for c in contacts.values() if (c.get("email") or "").lower() == email), None)
        if match is None:
            match = next((c for c in contacts.values() if c.get("fullName") == payload.get("fullName")), None)
        if match is None:
            match = {"id": self._new_id("con")}
            contacts[match["id"]] = match
        match.update(payload)
        return ApiResponse(data=dict(match))

    async def _contact_delete(self, account_id, contact_id):
        self._call("contacts.delete", account_id, contact_id)
        contacts = self._contacts(account_id)
        if contacts.pop(contact_id, None) is None:
            raise self._not_found("Contact")
        return ApiResponse(data=None, status=204)

    def add_contact(self, account_id: str, **fields) -> str:
        """Seed a remote contact directly (no call recorded)."""
        contact_id = self._new_id("con")
        self.contacts_by_account.setdefault(account_id, {})[contact_id] = {"id": contact_id, **fields}
        return contact_id

    # =========================================================================
    # Documents
    # =========================================================================

    def _document_from_fields(self, prefix: str, fields: Dict[str, Any], document: Document) -> Dict[str, Any]:
        self.uploads.append(document.filename)
        remote = {
            "id": self._new_id(prefix),
            "accountId": fields.get("accountId"),
            "number": fields.get("number"),
            "totalAmount": str(fields.get("totalAmount")),
            "taxAmount": str(fields.get("taxAmount")),
            "issuedDate": _date_from_fields(fields, "issuedDate"),
        }
        return remote

    async def _invoice_get(self, invoice_id):
        self._call("invoices.get", invoice_id)
        if invoice_id not in self.invoices_by_id:
            raise self._not_found("Invoice")
        return ApiResponse(data=dict(self.invoices_by_id[invoice_id]))

    async def _invoice_create(self, fields, document):
        self._call("invoices.create", fields)
        remote = self._document_from_fields("inv", fields, document)
        remote["dueDate"] = _date_from_fields(fields, "dueDate")
        remote["poNumber"] = fields.get("poNumber") or None
        remote["paidAmount"] = str(fields.get("paidAmount"))
        self.invoices_by_id[remote["id"]] = remote
        return ApiResponse(data={"id": remote["id"]}, status=201)

    async def _invoice_delete(self, invoice_id):
        self._call("invoices.delete", invoice_id)
        if self.invoices_by_id.pop(invoice_id, None) is None:
            raise self._not_found("Invoice")
        return ApiResponse(data=None, status=204)

    async def _invoice_update_paid_amount(self, invoice_id, paid_amount):
        self._call("invoices.updatePaidAmount", invoice_id, paid_amount)
        if invoice_id not in self.invoices_by_id:
            raise self._not_found("Invoice")
        self.invoices_by_id[invoice_id]["paidAmount"] = str(paid_amount)
        return ApiResponse(data=dict(self.invoices_by_id[invoice_id]))

    async def _credit_note_get(self, credit_note_id):
        self._call("creditNotes.get", credit_note_id)
        if credit_note_id not in self.credit_notes_by_id:
            raise self._not_found("Credit note")
        return ApiResponse(data=dict(self.credit_notes_by_id[credit_note_id]))

    async def _credit_note_create(self, fields, document):
        self._call("creditNotes.create", fields)
        remote = self._document_from_fields("cn", fields, document)
        self.credit_notes_by_id[remote["id"]] = remote
        return ApiResponse(data={"id": remote["id"]}, status=201)

    async def _credit_note_delete(self, credit_note_id):
        self._call("creditNotes.delete", credit_note_id)
        if self.credit_notes_by_id.pop(credit_note_id, None) is None:
            raise self._not_found("Credit note")
        return ApiResponse(data=None, status=204)

    # =========================================================================
    # Credit allocations
    # =========================================================================

    async def _allocation_apply(self, credit_note_id, invoice_id, amount):
        self._call("creditAllocations.apply", credit_note_id, invoice_id, amount)
        if credit_note_id not in self.credit_notes_by_id or invoice_id not in self.invoices_by_id:
            raise ApiError("Unknown credit note or invoice", 422)
        if (credit_note_id, invoice_id) in self.allocations:
            raise ApiError("Allocation already exists", 409)
        self.allocations[(credit_note_id, invoice_id)] = Decimal(str(amount))
        return ApiResponse(data={"creditNoteId": credit_note_id, "invoiceId": invoice_id}, status=201)

    async def _allocation_remove(self, credit_note_id, invoice_id):
        self._call("creditAllocations.remove", credit_note_id, invoice_id)
        self.allocations.pop((credit_note_id, invoice_id), None)
        return ApiResponse(data=None, status=204)


class StaticDocumentSource(DocumentSource):
    """Returns a tiny PDF for every record, except those listed in `missing`."""

    def __init__(self):
        self.missing: Set[Tuple[EntityKind, str]] = set()

    def fetch(self, kind: EntityKind, local_id: str) -> Document:
        kind = EntityKind(kind)
        if (kind, local_id) in self.missing:
            raise RecordNotFoundError(kind, local_id)
        return Document(filename=f"{local_id}.pdf", content=b"%PDF-1.4\n%test\n")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_metrics():
    MetricsCollector.reset()
    yield
    MetricsCollector.reset()


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        db_path=tmp_path / "sync.db",
        erp_db_path=tmp_path / "erp.db",
        documents_dir=tmp_path / "documents",
    )


@pytest.fixture
def records(settings):
    return SQLiteRecordStore(settings.erp_db_path)


@pytest.fixture
def oplog(settings):
    return OperationLog(settings.db_path)


@pytest.fixture
def queue(settings):
    return SyncQueue(settings.db_path, max_retries=settings.max_queue_retries)


@pytest.fixture
def ledger(settings):
    return AllocationLedger(settings.db_path)


@pytest.fixture
def platform():
    return FakeBillingPlatform()


@pytest.fixture
def documents():
    return StaticDocumentSource()


@pytest.fixture
def make_engine(platform, records, documents, oplog, queue, ledger):
    """Build an engine over the fixtures, optionally with other settings."""
    def factory(settings: SyncSettings) -> SyncEngine:
        context = SyncContext(
            client=platform,
            records=records,
            documents=documents,
            oplog=oplog,
            settings=settings,
            ledger=ledger,
            organization_id="org-1",
        )
        return SyncEngine(context, queue)
    return factory


@pytest.fixture
def engine(make_engine, settings):
    return make_engine(settings)


@pytest.fixture
def account(records):
    """A saved customer with a dunning email and an address."""
    account = LocalAccount(
        id="C100",
        name="Acme Industries",
        currency_code="eur",
        email="billing@acme.example",
        dunning_email="ap@acme.example",
        billing_address=BillingAddress(street="1 Main St", city="Lyon", postal_code="69001", country="FR"),
    )
    records.save(account)
    return account


@pytest.fixture
def invoice(records, account):
    """An open invoice of `account`: 120.00 total, nothing paid."""
    invoice = LocalInvoice(
        id="INV-1",
        account_id=account.id,
        number="F2024-001",
        issued_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        po_number="PO-77",
        total=Decimal("120.00"),
        tax_total=Decimal("20.00"),
        amount_remaining=Decimal("120.00"),
    )
    records.save(invoice)
    return invoice
