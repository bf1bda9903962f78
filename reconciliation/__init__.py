"""Reconciliation rules deciding unchanged / changed / paid-amount-only."""

from reconciliation.rules import (
    Classification,
    Decision,
    classify_account,
    classify_credit_note,
    classify_invoice,
    contact_matches,
    dates_equal,
)

__all__ = [
    "Classification",
    "Decision",
    "classify_account",
    "classify_credit_note",
    "classify_invoice",
    "contact_matches",
    "dates_equal",
]
