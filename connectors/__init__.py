"""Connectors - the two systems the sync engine sits between.

This package contains:
- erp_base: the abstract record store the engine reads ERP snapshots from
- erp_sqlite: SQLite mirror implementation of that store
- billing_platform/: client, connection store and token refresh for the
  remote billing platform

Key Design Principle:
- The sync engine depends ONLY on RecordStore/DocumentSource for the ERP side
- Platform-specific payloads stay inside the synchronizers and billing_platform/
"""

from connectors.erp_base import (
    EntityKind,
    BillingAddress,
    LocalAccount,
    LocalContact,
    LocalInvoice,
    LocalCreditNote,
    LocalPayment,
    CreditApplication,
    PaymentApplication,
    InvoicePaymentState,
    RecordNotFoundError,
    RecordStore,
    Document,
    DocumentSource,
)

__all__ = [
    "EntityKind",
    "BillingAddress",
    "LocalAccount",
    "LocalContact",
    "LocalInvoice",
    "LocalCreditNote",
    "LocalPayment",
    "CreditApplication",
    "PaymentApplication",
    "InvoicePaymentState",
    "RecordNotFoundError",
    "RecordStore",
    "Document",
    "DocumentSource",
]
