"""Invoice, credit note and payment synchronizers.

Remote documents cannot be edited: a CHANGED document is deleted and
created again (with its PDF). Invoices additionally accept an in-place
paid-amount update, which is all a payment ever changes.
"""

from typing import Any, Callable, Dict, List, Optional, Union

from connectors.billing_platform.bp_client import ApiError, BillingPlatformError
from connectors.billing_platform.bp_models import RemoteCreditNote, RemoteInvoice
from connectors.erp_base import (
    EntityKind,
    InvoicePaymentState,
    LocalCreditNote,
    LocalInvoice,
    LocalPayment,
)
from core.observability.logging import get_logger, with_correlation
from reconciliation.rules import (
    Classification,
    Decision,
    amounts_equal,
    classify_credit_note,
    classify_invoice,
    to_decimal,
)
from sync_engine.base import (
    PartialSyncError,
    SyncError,
    Synchronizer,
    register_synchronizer,
)

logger = get_logger(__name__)

LocalDocument = Union[LocalInvoice, LocalCreditNote]


def date_fields(name: str, value: Any) -> Dict[str, int]:
    """`name[year]`, `name[month]`, `name[day]` form fields (none for a missing date)."""
    if value is None:
        return {}
    return {
        f"{name}[year]": value.year,
        f"{name}[month]": value.month,
        f"{name}[day]": value.day,
    }


def address_fields(document: LocalDocument) -> Dict[str, str]:
    return {
        f"billingAddress[{key}]": value
        for key, value in document.billing_address.to_payload().items()
        if value
    }


class DocumentSynchronizer(Synchronizer):
    """Shared delete-and-recreate logic of invoices and credit notes."""

    resource_name: str
    operation_prefix: str
    remote_model: Any
    classify: Callable[[Any, Any], Decision]

    @property
    def resource(self):
        return getattr(self.client, self.resource_name)

    def build_fields(self, document: LocalDocument, account_remote_id: str) -> Dict[str, Any]:
        fields = {
            "accountId": account_remote_id,
            "number": document.number,
        }
        fields.update(date_fields("issuedDate", document.issued_date))
        fields["totalAmount"] = to_decimal(document.total)
        fields["taxAmount"] = to_decimal(document.tax_total)
        fields.update(address_fields(document))
        return fields

    async def reconcile(self, local_id: str) -> Optional[str]:
        document: LocalDocument = self.load(local_id)
        account_remote_id = await self.engine.ensure_account_linked(document.account_id)

        with with_correlation(entity_kind=self.kind.value, local_id=local_id, remote_id=document.remote_id):
            if not document.remote_id:
                return await self._create(document, account_remote_id)

            try:
                response = await self.resource.get(document.remote_id)
            except ApiError as e:
                if not e.is_not_found:
                    raise
                self.clear_remote_id(document.id)
                return await self._create(document, account_remote_id)

            remote = self.remote_model.model_validate(response.data)
            decision = self.classify(remote, document)

            if decision.classification == Classification.CHANGED:
                return await self._replace(document, account_remote_id, decision)
            if decision.classification == Classification.PAID_AMOUNT_ONLY:
                return await self._update_paid_amount(document)

            logger.debug(f"{self.kind.value} {local_id} unchanged, skipping")
            return document.remote_id

    async def _create(self, document: LocalDocument, account_remote_id: str) -> str:
        upload = self.context.documents.fetch(self.kind, document.id)
        with self.track(f"{self.operation_prefix}.create", document.id) as op:
            response = await self.resource.create(self.build_fields(document, account_remote_id), upload)
            op.remote_id = response.data["id"]
        self.records.set_remote_id(self.kind, document.id, op.remote_id)
        return op.remote_id

    async def _replace(self, document: LocalDocument, account_remote_id: str, decision: Decision) -> str:
        # Fetch first: a missing PDF must not leave the remote document deleted
        upload = self.context.documents.fetch(self.kind, document.id)
        with self.track(f"{self.operation_prefix}.delete+create", document.id, document.remote_id) as op:
            op.message = decision.describe()
            await self._delete_remote(document.remote_id)
            self._forget_allocations(document.remote_id)
            self.clear_remote_id(document.id)
            response = await self.resource.create(self.build_fields(document, account_remote_id), upload)
            op.remote_id = response.data["id"]
        self.records.set_remote_id(self.kind, document.id, op.remote_id)
        return op.remote_id

    async def _update_paid_amount(self, document: LocalDocument) -> str:
        raise SyncError(f"{self.kind.value} has no paid amount")

    async def _delete_remote(self, remote_id: str) -> bool:
        """Delete; False if it was already gone."""
        try:
            await self.resource.delete(remote_id)
        except ApiError as e:
            if not e.is_not_found:
                raise
            return False
        return True

    async def delete(self, remote_key: str) -> None:
        with self.track(f"{self.operation_prefix}.delete", None, remote_key) as op:
            if not await self._delete_remote(remote_key):
                op.message = "Already deleted"
        self._forget_allocations(remote_key)

    def _forget_allocations(self, remote_id: str) -> None:
        """Drop ledger rows keyed by a remote id that no longer exists."""


@register_synchronizer(EntityKind.INVOICE)
class InvoiceSynchronizer(DocumentSynchronizer):
    """Invoices: delete+create when CHANGED, paid-amount update when only that moved."""

    resource_name = "invoices"
    operation_prefix = "invoices"
    remote_model = RemoteInvoice
    classify = staticmethod(classify_invoice)

    def build_fields(self, invoice: LocalInvoice, account_remote_id: str) -> Dict[str, Any]:
        fields = super().build_fields(invoice, account_remote_id)
        fields["poNumber"] = invoice.po_number or ""
        fields.update(date_fields("dueDate", invoice.due_date))
        fields["paidAmount"] = to_decimal(invoice.paid_amount)
        return fields

    async def _update_paid_amount(self, invoice: LocalInvoice) -> str:
        with self.track("invoices.updatePaidAmount", invoice.id, invoice.remote_id) as op:
            op.message = f"paidAmount={to_decimal(invoice.paid_amount)}"
            await self.client.invoices.update_paid_amount(invoice.remote_id, to_decimal(invoice.paid_amount))
        return invoice.remote_id

    def _forget_allocations(self, remote_id: str) -> None:
        if self.context.ledger is not None:
            self.context.ledger.forget_invoice(remote_id)


@register_synchronizer(EntityKind.CREDIT_NOTE)
class CreditNoteSynchronizer(DocumentSynchronizer):
    """Credit notes: delete+create when CHANGED, then their allocations."""

    resource_name = "credit_notes"
    operation_prefix = "creditNotes"
    remote_model = RemoteCreditNote
    classify = staticmethod(classify_credit_note)

    def _forget_allocations(self, remote_id: str) -> None:
        if self.context.ledger is not None:
            self.context.ledger.forget(remote_id)

    async def sync_credit_allocations(self, local_id: str) -> Dict[str, int]:
        """Apply the credit note's ERP applications to the remote invoices.

        A 4xx from the platform is recorded in the operation log and does
        not stop the other allocations.
        """
        credit_note: LocalCreditNote = self.load(local_id)
        summary = {"applied": 0, "skipped": 0, "rejected": 0}
        if not credit_note.remote_id:
            logger.debug(f"Credit note {local_id} not synchronized yet, no allocations to apply")
            return summary

        ledger = self.context.ledger
        with with_correlation(entity_kind=self.kind.value, local_id=local_id, remote_id=credit_note.remote_id):
            for application in credit_note.applications:
                if application.amount <= 0:
                    continue
                invoice_remote_id = self.records.invoice_remote_id(application.invoice_id)
                if not invoice_remote_id:
                    logger.info(
                        f"Invoice {application.invoice_id} not synchronized, "
                        f"skipping allocation of credit note {local_id}"
                    )
                    summary["skipped"] += 1
                    continue

                amount = to_decimal(application.amount)
                previous = ledger.applied_amount(credit_note.remote_id, invoice_remote_id) if ledger else None
                if previous is not None and previous == amount:
                    summary["skipped"] += 1
                    continue

                try:
                    with self.track("creditAllocations.apply", credit_note.id, credit_note.remote_id) as op:
                        op.message = f"{amount} to invoice {invoice_remote_id}"
                        if previous is not None:
                            await self.client.credit_allocations.remove(credit_note.remote_id, invoice_remote_id)
                        await self.client.credit_allocations.apply(credit_note.remote_id, invoice_remote_id, amount)
                except ApiError as e:
                    if not e.is_client_error:
                        raise
                    logger.error(
                        f"Allocation of credit note {local_id} to invoice {application.invoice_id} "
                        f"rejected: {e}",
                        extra_fields={"status": e.status},
                    )
                    summary["rejected"] += 1
                    continue

                if ledger is not None:
                    ledger.record(credit_note.remote_id, invoice_remote_id, amount)
                summary["applied"] += 1

        return summary


@register_synchronizer(EntityKind.PAYMENT)
class PaymentSynchronizer(Synchronizer):
    """Payments have no remote counterpart; they move invoice paid amounts."""

    async def reconcile(self, local_id: str) -> Optional[str]:
        payment: LocalPayment = self.load(local_id)
        with with_correlation(entity_kind=self.kind.value, local_id=local_id):
            await self.sync_paid_amounts([a.invoice_id for a in payment.applications])
        return None

    async def sync_paid_amounts(self, invoice_ids: List[str]) -> None:
        """Push `total - amount_remaining` of each invoice.

        Raises:
            PartialSyncError: If any invoice failed (the others are still updated)
        """
        failures = []
        for invoice_id in dict.fromkeys(invoice_ids):
            try:
                await self._sync_paid_amount(invoice_id)
            except (BillingPlatformError, SyncError) as e:
                logger.error(f"Paid amount sync failed for invoice {invoice_id}: {type(e).__name__}: {e}")
                failures.append(f"invoice {invoice_id}: {type(e).__name__}: {e}")

        if failures:
            raise PartialSyncError(
                f"{len(failures)} of {len(dict.fromkeys(invoice_ids))} invoices failed", failures
            )

    async def _sync_paid_amount(self, invoice_id: str) -> None:
        state: Optional[InvoicePaymentState] = self.records.invoice_payment_state(invoice_id)
        if state is None:
            logger.info(f"Invoice {invoice_id} no longer exists, skipping paid amount")
            return
        if not state.remote_id:
            # Creation carries the current paid amount
            await self.engine.reconcile(EntityKind.INVOICE, invoice_id)
            return

        paid_amount = to_decimal(state.paid_amount)
        try:
            response = await self.client.invoices.get(state.remote_id)
            remote = RemoteInvoice.model_validate(response.data)
            if amounts_equal(remote.paidAmount, paid_amount):
                logger.debug(f"Paid amount of invoice {invoice_id} already {paid_amount}")
                return
            with self.track("invoices.updatePaidAmount", invoice_id, state.remote_id, kind=EntityKind.INVOICE) as op:
                op.message = f"paidAmount={paid_amount}"
                await self.client.invoices.update_paid_amount(state.remote_id, paid_amount)
        except ApiError as e:
            if not e.is_not_found:
                raise
            await self._resync_after_404(invoice_id, state.remote_id)

    async def _resync_after_404(self, invoice_id: str, stale_remote_id: str) -> None:
        with self.track("invoices.resyncAfter404", invoice_id, stale_remote_id, kind=EntityKind.INVOICE) as op:
            self.clear_remote_id(invoice_id, kind=EntityKind.INVOICE)
            op.remote_id = await self.engine.reconcile(EntityKind.INVOICE, invoice_id)

    async def delete(self, remote_key: str) -> None:
        raise SyncError("Payments have no remote counterpart; re-sync their invoices instead")
