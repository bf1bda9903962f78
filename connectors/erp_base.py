"""Abstract Local Record Store Interface.

This module defines what the sync engine needs from the system-of-record ERP.
It is intentionally storage-agnostic: the engine reads frozen snapshots of
the fields it needs, writes back only remote identifiers, and runs a handful
of set-based lookups.

Key Design Principles:
- Snapshots are immutable pydantic models; the engine never mutates them
- The engine writes exactly one remote identifier per record (plus the remote
  account id for contacts) through submit_fields()
- Set-based lookups are typed methods, so implementations can back them with
  parameterized queries instead of ad-hoc query strings

Implementations:
- connectors/erp_sqlite.py (SQLite mirror of the ERP records)
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Enums
# =============================================================================

class EntityKind(str, Enum):
    """Kinds of ERP records the engine synchronizes."""
    ACCOUNT = "account"
    CONTACT = "contact"
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    PAYMENT = "payment"


# =============================================================================
# Local Snapshots
# =============================================================================

class BillingAddress(BaseModel):
    """Postal billing address as stored in the ERP."""
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    state_or_province: Optional[str] = None
    country: Optional[str] = None

    class Config:
        frozen = True

    def to_payload(self) -> Dict[str, Optional[str]]:
        """Billing platform JSON shape (missing parts sent as null)."""
        return {
            "street": self.street or None,
            "city": self.city or None,
            "postalCode": self.postal_code or None,
            "stateOrProvince": self.state_or_province or None,
            "country": self.country or None,
        }


class LocalAccount(BaseModel):
    """Customer record.

    `email` is the main customer address; `dunning_email` is the address
    payment reminders go to and becomes the primary remote contact.
    """
    id: str = Field(..., description="ERP internal ID")
    name: str = Field(..., description="Company or person name")
    currency_code: Optional[str] = Field(default=None, description="ISO currency code")
    email: Optional[str] = None
    dunning_email: Optional[str] = None
    billing_address: BillingAddress = Field(default_factory=BillingAddress)
    remote_id: Optional[str] = Field(default=None, description="Billing platform account UUID")

    class Config:
        frozen = True


class LocalContact(BaseModel):
    """Contact person attached to a customer."""
    id: str
    account_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    remote_id: Optional[str] = Field(default=None, description="Billing platform contact UUID")
    remote_account_id: Optional[str] = Field(
        default=None,
        description="Billing platform account the contact was upserted under",
    )

    class Config:
        frozen = True

    @property
    def full_name(self) -> str:
        """First and last name, falling back to the email address."""
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or (self.email or "")


class LocalInvoice(BaseModel):
    """Open or paid customer invoice."""
    id: str
    account_id: str
    number: str
    issued_date: Optional[date] = None
    due_date: Optional[date] = None
    po_number: Optional[str] = None
    total: Decimal = Decimal("0")
    tax_total: Decimal = Decimal("0")
    amount_remaining: Decimal = Decimal("0")
    billing_address: BillingAddress = Field(default_factory=BillingAddress)
    remote_id: Optional[str] = None

    class Config:
        frozen = True

    @property
    def paid_amount(self) -> Decimal:
        return self.total - self.amount_remaining

    @property
    def is_open(self) -> bool:
        return self.amount_remaining > 0


class CreditApplication(BaseModel):
    """Amount of a credit note applied to one invoice."""
    invoice_id: str
    amount: Decimal

    class Config:
        frozen = True


class LocalCreditNote(BaseModel):
    """Customer credit note (credit memo)."""
    id: str
    account_id: str
    number: str
    issued_date: Optional[date] = None
    total: Decimal = Decimal("0")
    tax_total: Decimal = Decimal("0")
    amount_remaining: Decimal = Decimal("0")
    billing_address: BillingAddress = Field(default_factory=BillingAddress)
    applications: List[CreditApplication] = Field(default_factory=list)
    remote_id: Optional[str] = None

    class Config:
        frozen = True

    @property
    def is_open(self) -> bool:
        return self.amount_remaining > 0


class PaymentApplication(BaseModel):
    """Amount of a customer payment applied to one invoice."""
    invoice_id: str
    amount: Decimal

    class Config:
        frozen = True


class LocalPayment(BaseModel):
    """Customer payment. Only its effect on invoices is synchronized."""
    id: str
    account_id: Optional[str] = None
    applications: List[PaymentApplication] = Field(default_factory=list)

    class Config:
        frozen = True


class InvoicePaymentState(BaseModel):
    """Result of the paid-amount lookup for one invoice."""
    invoice_id: str
    remote_id: Optional[str] = None
    total: Decimal
    amount_remaining: Decimal

    class Config:
        frozen = True

    @property
    def paid_amount(self) -> Decimal:
        return self.total - self.amount_remaining


LocalEntity = Union[LocalAccount, LocalContact, LocalInvoice, LocalCreditNote, LocalPayment]

ENTITY_MODELS = {
    EntityKind.ACCOUNT: LocalAccount,
    EntityKind.CONTACT: LocalContact,
    EntityKind.INVOICE: LocalInvoice,
    EntityKind.CREDIT_NOTE: LocalCreditNote,
    EntityKind.PAYMENT: LocalPayment,
}


# =============================================================================
# Errors
# =============================================================================

class RecordNotFoundError(Exception):
    """The ERP record does not exist (deleted between trigger and processing)."""
    def __init__(self, kind: EntityKind, local_id: str):
        super().__init__(f"{EntityKind(kind).value} {local_id} not found")
        self.kind = EntityKind(kind)
        self.local_id = local_id


# =============================================================================
# Interfaces
# =============================================================================

class RecordStore(ABC):
    """Abstract base class for the system-of-record storage.

    All methods are synchronous: stores are local databases and the engine
    calls them between remote requests.
    """

    @abstractmethod
    def load(self, kind: EntityKind, local_id: str) -> LocalEntity:
        """Load a frozen snapshot of a record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    def submit_fields(self, kind: EntityKind, local_id: str, fields: Dict[str, Any]) -> None:
        """Write a few fields on an existing record without loading it.

        The engine only ever writes `remote_id` (and `remote_account_id` for
        contacts).

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    def save(self, entity: LocalEntity) -> str:
        """Insert or replace a record. Returns its id."""
        pass

    @abstractmethod
    def delete(self, kind: EntityKind, local_id: str) -> None:
        """Delete a record (no error if absent)."""
        pass

    # =========================================================================
    # Set-based lookups
    # =========================================================================

    @abstractmethod
    def contact_ids_for_account(self, account_id: str) -> List[str]:
        """IDs of all contacts attached to an account."""
        pass

    @abstractmethod
    def contact_emails_for_account(self, account_id: str) -> List[str]:
        """Non-empty email addresses of all contacts attached to an account."""
        pass

    @abstractmethod
    def open_invoice_ids_for_account(self, account_id: str) -> List[str]:
        """IDs of the account's invoices with an amount remaining."""
        pass

    @abstractmethod
    def credit_note_ids_for_full_sync(self, account_id: str) -> List[str]:
        """IDs of the account's open credit notes, plus fully applied ones
        that are still applied to an open invoice."""
        pass

    @abstractmethod
    def invoice_remote_id(self, invoice_id: str) -> Optional[str]:
        """Stored remote id of an invoice (None if unsynced or absent)."""
        pass

    @abstractmethod
    def invoice_payment_state(self, invoice_id: str) -> Optional[InvoicePaymentState]:
        """Totals needed to recompute an invoice's paid amount."""
        pass

    @abstractmethod
    def accounts_with_open_documents(self) -> List[str]:
        """IDs of accounts having at least one open invoice or credit note."""
        pass

    # =========================================================================
    # Convenience
    # =========================================================================

    def set_remote_id(self, kind: EntityKind, local_id: str, remote_id: Optional[str]) -> None:
        """Store (or clear, with None) the remote identifier of a record."""
        self.submit_fields(kind, local_id, {"remote_id": remote_id})


class Document(BaseModel):
    """Rendered document attached to invoice/credit-note creation."""
    filename: str
    content: bytes

    @property
    def content_type(self) -> str:
        return "application/pdf" if self.filename.lower().endswith(".pdf") else "image/png"


class DocumentSource(ABC):
    """Supplies the rendered PDF of an invoice or credit note."""

    @abstractmethod
    def fetch(self, kind: EntityKind, local_id: str) -> Document:
        """Return the rendered document.

        Raises:
            RecordNotFoundError: If no document exists for the record
        """
        pass
