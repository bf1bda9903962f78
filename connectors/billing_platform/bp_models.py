"""Billing platform data models.

These are platform-specific models that map to the public API schema.
They are separate from the ERP snapshots in connectors/erp_base.py.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Billing Platform API Models
# =============================================================================

class BPBaseModel(BaseModel):
    """Base model for billing platform entities."""

    class Config:
        populate_by_name = True


class RemoteDate(BPBaseModel):
    """Calendar date as the platform returns it: {year, month, day}."""
    year: int
    month: int
    day: int

    @classmethod
    def from_date(cls, value: Optional[date]) -> Optional["RemoteDate"]:
        if value is None:
            return None
        return cls(year=value.year, month=value.month, day=value.day)

    def to_date(self) -> date:
        return date(self.year, self.month, self.day)


def _parse_remote_date(value: Any) -> Any:
    # Some endpoints return ISO strings ("2024-03-01" or a full timestamp)
    if isinstance(value, str):
        if not value:
            return None
        parsed = date.fromisoformat(value[:10])
        return {"year": parsed.year, "month": parsed.month, "day": parsed.day}
    if isinstance(value, date):
        return {"year": value.year, "month": value.month, "day": value.day}
    return value


class SourceReference(BPBaseModel):
    """Traceability tag set once when the remote object is created."""
    connectionId: str
    sourceId: str


class RemoteAddress(BPBaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    postalCode: Optional[str] = None
    stateOrProvince: Optional[str] = None
    country: Optional[str] = None


class RemoteAccount(BPBaseModel):
    """Billing platform account.

    Maps to: /accounts/{id}
    """
    id: str
    organizationId: Optional[str] = None
    fullName: Optional[str] = None
    currencyCode: Optional[str] = None
    billingAddress: Optional[RemoteAddress] = None
    source: Optional[SourceReference] = None


class RemoteContact(BPBaseModel):
    """Billing platform contact.

    Maps to: /accounts/{accountId}/contacts/{id}
    """
    id: str
    email: Optional[str] = None
    fullName: Optional[str] = None
    language: Optional[str] = None
    isPrimary: Optional[bool] = None
    role: Optional[str] = None


class RemoteInvoice(BPBaseModel):
    """Billing platform invoice.

    Maps to: /invoices/{id}
    """
    id: str
    accountId: Optional[str] = None
    number: Optional[str] = None
    totalAmount: Optional[Decimal] = None
    taxAmount: Optional[Decimal] = None
    paidAmount: Optional[Decimal] = None
    issuedDate: Optional[RemoteDate] = None
    dueDate: Optional[RemoteDate] = None
    poNumber: Optional[str] = None
    source: Optional[SourceReference] = None

    @field_validator("issuedDate", "dueDate", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> Any:
        return _parse_remote_date(value)


class RemoteCreditNote(BPBaseModel):
    """Billing platform credit note.

    Maps to: /credit-notes/{id}
    """
    id: str
    accountId: Optional[str] = None
    number: Optional[str] = None
    totalAmount: Optional[Decimal] = None
    taxAmount: Optional[Decimal] = None
    issuedDate: Optional[RemoteDate] = None
    source: Optional[SourceReference] = None

    @field_validator("issuedDate", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> Any:
        return _parse_remote_date(value)


# =============================================================================
# Transport Models
# =============================================================================

class RateLimitInfo(BPBaseModel):
    """Values of the X-RateLimit-* response headers."""
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None


class ApiResponse(BaseModel):
    """Successful API call: parsed body plus rate-limit metadata."""
    data: Any = None
    rate_limit: RateLimitInfo = Field(default_factory=RateLimitInfo)
    status: int = 200


class PageInfo(BPBaseModel):
    """Cursor pagination block of list responses."""
    hasNextPage: bool = False
    endCursor: Optional[str] = None
