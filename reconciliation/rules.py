"""Reconciliation rules for remote vs. local billing records.

Pure functions that compare a remote snapshot with the values currently in
the ERP and classify the difference:
- UNCHANGED: nothing to do, keep the remote id
- CHANGED: the remote document is stale and must be replaced
- PAID_AMOUNT_ONLY: only the invoice's paid amount moved

Exposes:
- classify_invoice(remote, local) -> Decision
- classify_credit_note(remote, local) -> Decision
- classify_account(remote, payload) -> Decision
- contact_matches(remote, payload) -> bool
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from connectors.billing_platform.bp_models import (
    RemoteAccount,
    RemoteContact,
    RemoteCreditNote,
    RemoteDate,
    RemoteInvoice,
)
from connectors.erp_base import LocalCreditNote, LocalInvoice


AMOUNT_QUANTUM = Decimal("0.01")


class Classification(str, Enum):
    UNCHANGED = "UNCHANGED"
    CHANGED = "CHANGED"
    PAID_AMOUNT_ONLY = "PAID_AMOUNT_ONLY"


@dataclass
class Decision:
    """Classification plus the fields that differ (for log messages)."""
    classification: Classification
    changed_fields: List[str] = field(default_factory=list)

    @property
    def is_unchanged(self) -> bool:
        return self.classification == Classification.UNCHANGED

    def describe(self) -> str:
        if not self.changed_fields:
            return self.classification.value
        return f"{self.classification.value} ({', '.join(self.changed_fields)})"


# =============================================================================
# Field comparisons
# =============================================================================

def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a number (or numeric string) to a cent-rounded Decimal."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def amounts_equal(remote: Any, local: Any) -> bool:
    """Compare two amounts to the cent. A missing amount only equals a missing amount."""
    return to_decimal(remote) == to_decimal(local)


def dates_equal(remote: Optional[RemoteDate], local: Optional[date]) -> bool:
    """Compare at day granularity (year, month, day).

    Both missing is equal; one missing is a difference.
    """
    if remote is None and local is None:
        return True
    if remote is None or local is None:
        return False
    return (remote.year, remote.month, remote.day) == (local.year, local.month, local.day)


def optional_text_equal(remote: Optional[str], local: Optional[str]) -> bool:
    """Empty string and missing value are the same."""
    return (remote or "") == (local or "")


# =============================================================================
# Documents
# =============================================================================

def classify_invoice(remote: RemoteInvoice, local: LocalInvoice) -> Decision:
    """Decide how a remote invoice differs from the ERP invoice.

    Number, amounts, dates and PO number drive CHANGED; the paid amount alone
    drives PAID_AMOUNT_ONLY.
    """
    changed = []
    if remote.number != local.number:
        changed.append("number")
    if not amounts_equal(remote.totalAmount, local.total):
        changed.append("totalAmount")
    if not amounts_equal(remote.taxAmount, local.tax_total):
        changed.append("taxAmount")
    if not dates_equal(remote.issuedDate, local.issued_date):
        changed.append("issuedDate")
    if not dates_equal(remote.dueDate, local.due_date):
        changed.append("dueDate")
    if not optional_text_equal(remote.poNumber, local.po_number):
        changed.append("poNumber")

    if changed:
        return Decision(Classification.CHANGED, changed)

    if not amounts_equal(remote.paidAmount, local.paid_amount):
        return Decision(Classification.PAID_AMOUNT_ONLY, ["paidAmount"])

    return Decision(Classification.UNCHANGED)


def classify_credit_note(remote: RemoteCreditNote, local: LocalCreditNote) -> Decision:
    """Decide whether a remote credit note is stale. No paid-amount concept."""
    changed = []
    if remote.number != local.number:
        changed.append("number")
    if not amounts_equal(remote.totalAmount, local.total):
        changed.append("totalAmount")
    if not amounts_equal(remote.taxAmount, local.tax_total):
        changed.append("taxAmount")
    if not dates_equal(remote.issuedDate, local.issued_date):
        changed.append("issuedDate")

    if changed:
        return Decision(Classification.CHANGED, changed)
    return Decision(Classification.UNCHANGED)


# =============================================================================
# Accounts and contacts
# =============================================================================

def classify_account(remote: RemoteAccount, payload: Dict[str, Any]) -> Decision:
    """Compare a remote account with the update payload built from the ERP.

    Accounts are updated in place, so the result is UNCHANGED or CHANGED.
    """
    changed = []
    if remote.fullName != payload.get("fullName"):
        changed.append("fullName")
    if (remote.currencyCode or "").upper() != (payload.get("currencyCode") or "").upper():
        changed.append("currencyCode")

    remote_address = remote.billingAddress.model_dump() if remote.billingAddress else {}
    local_address = payload.get("billingAddress") or {}
    for key in ("street", "city", "postalCode", "stateOrProvince", "country"):
        if not optional_text_equal(remote_address.get(key), local_address.get(key)):
            changed.append(f"billingAddress.{key}")

    if changed:
        return Decision(Classification.CHANGED, changed)
    return Decision(Classification.UNCHANGED)


def contact_matches(remote: RemoteContact, payload: Dict[str, Any]) -> bool:
    """True if upserting `payload` would not change the remote contact."""
    if remote.fullName != payload.get("fullName"):
        return False
    if (remote.email or "").lower() != (payload.get("email") or "").lower():
        return False
    if "language" in payload and remote.language != payload["language"]:
        return False
    if "isPrimary" in payload and bool(remote.isPrimary) != bool(payload["isPrimary"]):
        return False
    if "role" in payload and not optional_text_equal(remote.role, payload["role"]):
        return False
    return True
