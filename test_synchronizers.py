"""
Synchronizer Tests

Drives the engine against the in-memory billing platform (conftest.py):
1. Accounts: create, idempotent re-sync, in-place update, orphan heal, delete
2. Email contacts and contact persons
3. Invoices and credit notes: create, paid-amount update, delete+create
4. Credit allocations and payments
5. Full account sync
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from connectors.billing_platform.bp_client import ApiError
from connectors.erp_base import (
    CreditApplication,
    EntityKind,
    LocalContact,
    LocalCreditNote,
    LocalInvoice,
    LocalPayment,
    PaymentApplication,
    RecordNotFoundError,
)
from core.observability.metrics import get_metrics
from sync_engine import LocalRecordMissingError, PartialSyncError, SyncError
from sync_queue.queue import QueueAction


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def credit_note(records, account):
    """A fully applied credit note: 50.00 on INV-1."""
    credit_note = LocalCreditNote(
        id="CN-1",
        account_id=account.id,
        number="AV2024-001",
        issued_date=date(2024, 3, 5),
        total=Decimal("50.00"),
        tax_total=Decimal("8.33"),
        amount_remaining=Decimal("0"),
        applications=[CreditApplication(invoice_id="INV-1", amount=Decimal("50.00"))],
    )
    records.save(credit_note)
    return credit_note


class TestAccountSynchronizer:
    """Accounts are created once and then updated in place."""

    def test_create_links_remote_account(self, engine, platform, records, account, oplog):
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))

        assert platform.count("accounts.create") == 1
        assert records.load(EntityKind.ACCOUNT, account.id).remote_id == remote_id

        payload = platform.calls[0][1]
        assert payload["organizationId"] == "org-1"
        assert payload["currencyCode"] == "EUR"
        assert payload["source"] == {"connectionId": "erp-connector", "sourceId": "C100"}
        assert payload["contacts"] == []
        assert payload["billingAddress"]["postalCode"] == "69001"

        entries = oplog.query(entity_kind="account", local_id=account.id)
        assert [e.operation for e in entries] == ["accounts.create"]
        assert entries[0].remote_id == remote_id

    def test_second_sync_is_idempotent(self, engine, platform, account, oplog):
        first = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        second = run(engine.reconcile(EntityKind.ACCOUNT, account.id))

        assert first == second
        assert platform.writes() == ["accounts.create"]
        assert platform.count("accounts.get") == 1
        assert len(oplog.query()) == 1

    def test_changed_name_updates_in_place(self, engine, platform, records, account, oplog):
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        records.save(records.load(EntityKind.ACCOUNT, account.id).model_copy(update={"name": "Acme SAS"}))

        assert run(engine.reconcile(EntityKind.ACCOUNT, account.id)) == remote_id
        assert platform.count("accounts.update") == 1
        assert platform.accounts_by_id[remote_id]["fullName"] == "Acme SAS"
        # source is only sent on create
        assert "source" not in platform.calls[-1][2]

        update = oplog.query(operation="accounts.update")[0]
        assert "fullName" in update.message

    def test_orphaned_remote_id_is_healed_by_create(self, engine, platform, records, account):
        records.set_remote_id(EntityKind.ACCOUNT, account.id, "acc-deleted-remotely")

        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))

        assert remote_id != "acc-deleted-remotely"
        assert platform.count("accounts.create") == 1
        assert platform.count("accounts.update") == 0
        assert records.load(EntityKind.ACCOUNT, account.id).remote_id == remote_id

    def test_missing_local_account(self, engine, platform):
        with pytest.raises(LocalRecordMissingError):
            run(engine.reconcile(EntityKind.ACCOUNT, "nope"))
        assert platform.calls == []

    def test_delete_is_single_remote_call(self, engine, platform, account, oplog):
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        platform.calls.clear()

        run(engine.delete(EntityKind.ACCOUNT, remote_id))

        assert platform.calls == [("accounts.delete", remote_id)]
        assert remote_id not in platform.accounts_by_id

    def test_delete_of_missing_account_succeeds(self, engine, oplog):
        run(engine.delete(EntityKind.ACCOUNT, "acc-unknown"))

        entry = oplog.query(operation="accounts.delete")[0]
        assert entry.status.value == "success"
        assert entry.message == "Already deleted"

    def test_server_error_is_logged_and_raised(self, engine, platform, account, oplog):
        platform.failures["accounts.create"] = ApiError("Internal error", 500)

        with pytest.raises(ApiError):
            run(engine.reconcile(EntityKind.ACCOUNT, account.id))

        entry = oplog.query()[0]
        assert entry.status.value == "error"
        assert entry.message.startswith("ApiError: Internal error")
        assert get_metrics().get_summary()["sync"]["failed"] == 1


class TestEmailContacts:
    """An account's dunning and main addresses become remote contacts."""

    def test_sync_entity_upserts_email_contacts(self, engine, platform, account):
        remote_id = run(engine.sync_entity(EntityKind.ACCOUNT, account.id))

        contacts = {c["email"]: c for c in platform.contacts_by_account[remote_id].values()}
        assert set(contacts) == {"ap@acme.example", "billing@acme.example"}
        assert contacts["ap@acme.example"]["isPrimary"] is True
        assert contacts["billing@acme.example"]["isPrimary"] is False
        assert contacts["ap@acme.example"]["language"] == "fr"

    def test_stale_contacts_are_deleted(self, engine, platform, account):
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        stale = platform.add_contact(remote_id, email="former@acme.example", fullName="Former")
        no_email = platform.add_contact(remote_id, fullName="Switchboard")

        summary = run(engine.synchronizer(EntityKind.ACCOUNT).sync_email_contacts(account.id))

        assert summary["deleted"] == 1
        assert summary["upserted"] == 2
        assert stale not in platform.contacts_by_account[remote_id]
        assert no_email in platform.contacts_by_account[remote_id]

    def test_stale_contact_delete_is_logged_under_the_account(self, engine, platform, oplog, account):
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        stale = platform.add_contact(remote_id, email="former@acme.example", fullName="Former")

        run(engine.synchronizer(EntityKind.ACCOUNT).sync_email_contacts(account.id))

        entry = oplog.query(operation="contacts.deleteOrphan")[0]
        assert entry.entity_kind == "account"
        assert entry.local_id == account.id
        assert entry.remote_id == remote_id
        assert stale in entry.message
        assert oplog.query(operation="contacts.delete") == []

    def test_contact_person_emails_are_legitimate(self, engine, platform, records, account):
        records.save(LocalContact(id="P1", account_id=account.id, email="Jane@Acme.example"))
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        kept = platform.add_contact(remote_id, email="jane@acme.example", fullName="Jane")

        summary = run(engine.synchronizer(EntityKind.ACCOUNT).sync_email_contacts(account.id))

        assert summary["deleted"] == 0
        assert kept in platform.contacts_by_account[remote_id]

    def test_second_run_skips_matching_contacts(self, engine, platform, account):
        run(engine.sync_entity(EntityKind.ACCOUNT, account.id))
        platform.calls.clear()

        summary = run(engine.synchronizer(EntityKind.ACCOUNT).sync_email_contacts(account.id))

        assert summary == {"deleted": 0, "upserted": 0, "skipped": 2}
        assert platform.writes() == []

    def test_delete_failure_does_not_stop_upserts(self, engine, platform, account):
        remote_id = run(engine.reconcile(EntityKind.ACCOUNT, account.id))
        platform.add_contact(remote_id, email="former@acme.example", fullName="Former")
        platform.failures["contacts.delete"] = ApiError("Conflict", 409)

        summary = run(engine.synchronizer(EntityKind.ACCOUNT).sync_email_contacts(account.id))

        assert summary["deleted"] == 0
        assert summary["upserted"] == 2

    def test_sandbox_mode_replaces_every_address(self, make_engine, settings, platform, account):
        from dataclasses import replace

        sandbox = replace(settings, sandbox_mode=True, override_email="qa@sandbox.example")
        engine = make_engine(sandbox)

        remote_id = run(engine.sync_entity(EntityKind.ACCOUNT, account.id))

        contacts = list(platform.contacts_by_account[remote_id].values())
        assert len(contacts) == 1
        assert contacts[0]["email"] == "qa@sandbox.example"
        assert contacts[0]["isPrimary"] is True


class TestContactSynchronizer:
    """Contact persons are upserted under their parent account."""

    def test_upsert_links_account_and_contact(self, engine, platform, records, account):
        records.save(LocalContact(
            id="P1", account_id=account.id, first_name="Jane", last_name="Doe",
            email="jane@acme.example", title="CFO",
        ))

        remote_id = run(engine.reconcile(EntityKind.CONTACT, "P1"))

        contact = records.load(EntityKind.CONTACT, "P1")
        account_remote_id = records.load(EntityKind.ACCOUNT, account.id).remote_id
        assert contact.remote_id == remote_id
        assert contact.remote_account_id == account_remote_id
        payload = platform.calls[-1][2]
        assert payload["fullName"] == "Jane Doe"
        assert payload["role"] == "CFO"
        assert payload["isPrimary"] is False

    def test_unchanged_contact_is_not_upserted_again(self, engine, platform, records, account):
        records.save(LocalContact(id="P1", account_id=account.id, first_name="Jane", email="jane@acme.example"))
        run(engine.reconcile(EntityKind.CONTACT, "P1"))
        platform.calls.clear()

        run(engine.reconcile(EntityKind.CONTACT, "P1"))

        assert [c[0] for c in platform.calls] == ["contacts.get"]

    def test_contact_of_deleted_account_makes_no_calls(self, engine, platform, records):
        records.save(LocalContact(id="P9", account_id="GONE", email="ghost@example.com"))

        assert run(engine.reconcile(EntityKind.CONTACT, "P9")) is None
        assert platform.calls == []

    def test_contact_without_account_is_skipped(self, engine, platform, records):
        records.save(LocalContact(id="P8", email="loner@example.com"))

        assert run(engine.reconcile(EntityKind.CONTACT, "P8")) is None
        assert platform.calls == []

    def test_delete_uses_both_remote_ids(self, engine, platform, records, account):
        from sync_queue.queue import contact_delete_key

        records.save(LocalContact(id="P1", account_id=account.id, email="jane@acme.example"))
        contact_remote_id = run(engine.reconcile(EntityKind.CONTACT, "P1"))
        account_remote_id = records.load(EntityKind.ACCOUNT, account.id).remote_id

        run(engine.delete(EntityKind.CONTACT, contact_delete_key(account_remote_id, contact_remote_id)))

        assert platform.calls[-1] == ("contacts.delete", account_remote_id, contact_remote_id)


class TestInvoiceSynchronizer:
    """Invoices are created with their PDF and replaced when they change."""

    def test_create_sends_multipart_fields(self, engine, platform, records, invoice):
        remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        assert platform.count("accounts.create") == 1
        assert platform.count("invoices.create") == 1
        assert platform.uploads == ["INV-1.pdf"]
        fields = platform.calls[-1][1]
        assert fields["issuedDate[year]"] == 2024
        assert fields["issuedDate[month]"] == 3
        assert fields["dueDate[day]"] == 31
        assert fields["totalAmount"] == Decimal("120.00")
        assert fields["paidAmount"] == Decimal("0.00")
        assert fields["poNumber"] == "PO-77"
        assert records.load(EntityKind.INVOICE, invoice.id).remote_id == remote_id

    def test_second_sync_makes_no_writes(self, engine, platform, invoice):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        writes = platform.writes()

        run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        assert platform.writes() == writes

    def test_partial_payment_updates_paid_amount_only(self, engine, platform, records, invoice, oplog):
        remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        records.save(records.load(EntityKind.INVOICE, invoice.id).model_copy(
            update={"amount_remaining": Decimal("60.00")}
        ))

        assert run(engine.reconcile(EntityKind.INVOICE, invoice.id)) == remote_id

        assert platform.calls[-1] == ("invoices.updatePaidAmount", remote_id, Decimal("60.00"))
        assert platform.count("invoices.delete") == 0
        assert platform.invoices_by_id[remote_id]["paidAmount"] == "60.00"
        assert oplog.query(operation="invoices.updatePaidAmount")[0].message == "paidAmount=60.00"

    def test_changed_total_deletes_and_recreates(self, engine, platform, records, invoice, oplog):
        old_remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        records.save(records.load(EntityKind.INVOICE, invoice.id).model_copy(
            update={"total": Decimal("150.00"), "amount_remaining": Decimal("150.00")}
        ))

        new_remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        assert new_remote_id != old_remote_id
        assert old_remote_id not in platform.invoices_by_id
        assert platform.count("invoices.delete") == 1
        assert platform.count("invoices.create") == 2
        entry = oplog.query(operation="invoices.delete+create")[0]
        assert "totalAmount" in entry.message
        assert entry.remote_id == new_remote_id

    def test_missing_pdf_keeps_remote_invoice(self, engine, platform, records, documents, invoice):
        remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        records.save(records.load(EntityKind.INVOICE, invoice.id).model_copy(update={"number": "F2024-001-B"}))
        documents.missing.add((EntityKind.INVOICE, invoice.id))

        with pytest.raises(RecordNotFoundError):
            run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        assert platform.count("invoices.delete") == 0
        assert records.load(EntityKind.INVOICE, invoice.id).remote_id == remote_id

    def test_remote_invoice_gone_is_recreated(self, engine, platform, records, invoice):
        remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        del platform.invoices_by_id[remote_id]

        new_remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        assert new_remote_id != remote_id
        assert records.load(EntityKind.INVOICE, invoice.id).remote_id == new_remote_id

    def test_delete_twice(self, engine, platform, invoice, oplog):
        remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        run(engine.delete(EntityKind.INVOICE, remote_id))
        run(engine.delete(EntityKind.INVOICE, remote_id))

        entries = oplog.query(operation="invoices.delete")
        assert [e.message for e in entries] == ["Already deleted", None]


class TestCreditNotes:
    """Credit notes and their allocations."""

    def test_changed_credit_note_is_replaced(self, engine, platform, records, invoice, credit_note):
        old_remote_id = run(engine.reconcile(EntityKind.CREDIT_NOTE, credit_note.id))
        records.save(records.load(EntityKind.CREDIT_NOTE, credit_note.id).model_copy(
            update={"issued_date": date(2024, 3, 6)}
        ))

        new_remote_id = run(engine.reconcile(EntityKind.CREDIT_NOTE, credit_note.id))

        assert new_remote_id != old_remote_id
        assert [c[0] for c in platform.calls if c[0].startswith("creditNotes.")][-3:] == [
            "creditNotes.get", "creditNotes.delete", "creditNotes.create",
        ]

    def test_allocations_are_applied_once(self, engine, platform, records, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        cn_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))
        inv_remote_id = records.load(EntityKind.INVOICE, invoice.id).remote_id

        assert platform.allocations == {(cn_remote_id, inv_remote_id): Decimal("50.00")}

        summary = run(engine.synchronizer(EntityKind.CREDIT_NOTE).sync_credit_allocations(credit_note.id))

        assert summary == {"applied": 0, "skipped": 1, "rejected": 0}
        assert platform.count("creditAllocations.apply") == 1

    def test_changed_allocation_is_removed_then_applied(self, engine, platform, records, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        cn_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))
        records.save(records.load(EntityKind.CREDIT_NOTE, credit_note.id).model_copy(update={
            "applications": [CreditApplication(invoice_id="INV-1", amount=Decimal("30.00"))],
        }))

        summary = run(engine.synchronizer(EntityKind.CREDIT_NOTE).sync_credit_allocations(credit_note.id))

        assert summary["applied"] == 1
        assert platform.count("creditAllocations.remove") == 1
        assert list(platform.allocations.values()) == [Decimal("30.00")]
        assert list(platform.allocations)[0][0] == cn_remote_id

    def test_unsynced_invoice_is_skipped(self, engine, platform, credit_note):
        run(engine.reconcile(EntityKind.CREDIT_NOTE, credit_note.id))

        summary = run(engine.synchronizer(EntityKind.CREDIT_NOTE).sync_credit_allocations(credit_note.id))

        assert summary == {"applied": 0, "skipped": 1, "rejected": 0}
        assert platform.count("creditAllocations.apply") == 0

    def test_rejected_allocation_is_logged_not_raised(self, engine, platform, oplog, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        run(engine.reconcile(EntityKind.CREDIT_NOTE, credit_note.id))
        platform.failures["creditAllocations.apply"] = ApiError("Amount exceeds remaining", 422)

        summary = run(engine.synchronizer(EntityKind.CREDIT_NOTE).sync_credit_allocations(credit_note.id))

        assert summary["rejected"] == 1
        entry = oplog.query(operation="creditAllocations.apply")[0]
        assert entry.status.value == "error"

    def test_delete_forgets_ledger_entries(self, engine, ledger, records, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        cn_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))
        inv_remote_id = records.load(EntityKind.INVOICE, invoice.id).remote_id
        assert ledger.applied_amount(cn_remote_id, inv_remote_id) == Decimal("50.00")

        run(engine.delete(EntityKind.CREDIT_NOTE, cn_remote_id))

        assert ledger.applied_amount(cn_remote_id, inv_remote_id) is None

    def test_replaced_credit_note_leaves_no_stale_ledger_rows(self, engine, ledger, records, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        old_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))
        inv_remote_id = records.load(EntityKind.INVOICE, invoice.id).remote_id
        records.save(records.load(EntityKind.CREDIT_NOTE, credit_note.id).model_copy(
            update={"issued_date": date(2024, 3, 6)}
        ))

        new_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))

        assert ledger.applied_amount(old_remote_id, inv_remote_id) is None
        assert ledger.applied_amount(new_remote_id, inv_remote_id) == Decimal("50.00")

    def test_invoice_delete_forgets_its_allocations(self, engine, ledger, records, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        cn_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))
        inv_remote_id = records.load(EntityKind.INVOICE, invoice.id).remote_id

        run(engine.delete(EntityKind.INVOICE, inv_remote_id))

        assert ledger.applied_amount(cn_remote_id, inv_remote_id) is None

    def test_replaced_invoice_forgets_its_allocations(self, engine, ledger, records, invoice, credit_note):
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        cn_remote_id = run(engine.sync_entity(EntityKind.CREDIT_NOTE, credit_note.id))
        old_inv_remote_id = records.load(EntityKind.INVOICE, invoice.id).remote_id
        records.save(records.load(EntityKind.INVOICE, invoice.id).model_copy(
            update={"total": Decimal("150.00"), "amount_remaining": Decimal("100.00")}
        ))

        new_inv_remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))

        assert new_inv_remote_id != old_inv_remote_id
        assert ledger.applied_amount(cn_remote_id, old_inv_remote_id) is None


class TestPaymentSynchronizer:
    """Payments only move the paid amount of their invoices."""

    def test_payment_updates_invoice_paid_amount(self, engine, platform, records, invoice):
        remote_id = run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        records.save(records.load(EntityKind.INVOICE, invoice.id).model_copy(
            update={"amount_remaining": Decimal("60.00")}
        ))
        records.save(LocalPayment(
            id="PAY-1", account_id="C100",
            applications=[PaymentApplication(invoice_id=invoice.id, amount=Decimal("60.00"))],
        ))

        assert run(engine.reconcile(EntityKind.PAYMENT, "PAY-1")) is None
        assert platform.invoices_by_id[remote_id]["paidAmount"] == "60.00"

    def test_unsynced_invoice_is_created_with_paid_amount(self, engine, platform, records, invoice):
        records.save(invoice.model_copy(update={"amount_remaining": Decimal("20.00")}))

        run(engine.synchronizer(EntityKind.PAYMENT).sync_paid_amounts([invoice.id]))

        assert platform.count("invoices.create") == 1
        assert platform.calls[-1][1]["paidAmount"] == Decimal("100.00")

    def test_stale_remote_invoice_is_resynced(self, engine, platform, records, invoice, oplog):
        records.save(invoice.model_copy(update={"remote_id": "inv-vanished"}))

        run(engine.synchronizer(EntityKind.PAYMENT).sync_paid_amounts([invoice.id]))

        entry = oplog.query(operation="invoices.resyncAfter404")[0]
        assert entry.status.value == "success"
        assert entry.remote_id == records.load(EntityKind.INVOICE, invoice.id).remote_id
        assert entry.remote_id != "inv-vanished"

    def test_one_failing_invoice_does_not_stop_the_others(self, engine, platform, records, invoice):
        other = LocalInvoice(
            id="INV-2", account_id=invoice.account_id, number="F2024-002",
            total=Decimal("10"), amount_remaining=Decimal("10"),
        )
        records.save(other)
        run(engine.reconcile(EntityKind.INVOICE, invoice.id))
        run(engine.reconcile(EntityKind.INVOICE, other.id))
        for local_id in (invoice.id, other.id):
            current = records.load(EntityKind.INVOICE, local_id)
            records.save(current.model_copy(update={"amount_remaining": Decimal("0")}))
        platform.failures["invoices.get"] = ApiError("Internal error", 500)

        with pytest.raises(PartialSyncError) as exc_info:
            run(engine.synchronizer(EntityKind.PAYMENT).sync_paid_amounts([invoice.id, other.id]))

        assert len(exc_info.value.failures) == 1
        other_remote = records.load(EntityKind.INVOICE, other.id).remote_id
        assert platform.invoices_by_id[other_remote]["paidAmount"] == "10.00"

    def test_payment_delete_is_not_a_remote_operation(self, engine):
        with pytest.raises(SyncError):
            run(engine.delete(EntityKind.PAYMENT, "PAY-1"))


class TestFullSync:
    """sync_full_account() walks an account and its open documents."""

    def test_full_sync_orders_dependencies(self, engine, platform, records, invoice, credit_note):
        records.save(LocalContact(id="P1", account_id="C100", first_name="Jane", email="jane@acme.example"))

        result = run(engine.sync_full_account("C100"))

        assert result.ok
        assert result.synced == {
            "account": 1,
            "contact": 1,
            "email_contacts": 1,
            "invoice": 1,
            "credit_note": 1,
            "credit_allocations": 1,
        }
        names = [c[0] for c in platform.calls]
        assert names.index("accounts.create") < names.index("invoices.create")
        assert names.index("invoices.create") < names.index("creditNotes.create")
        assert names.index("creditNotes.create") < names.index("creditAllocations.apply")

    def test_failing_item_is_queued_and_run_continues(self, engine, queue, records, documents, invoice, credit_note):
        documents.missing.add((EntityKind.INVOICE, invoice.id))

        result = run(engine.sync_full_account("C100"))

        assert not result.ok
        assert result.failures[0]["kind"] == "invoice"
        assert result.synced["credit_note"] == 1
        entry = queue.find(EntityKind.INVOICE, invoice.id)
        assert entry.action == QueueAction.CREATE_OR_UPDATE
        assert entry.last_error.startswith("RecordNotFoundError")

    def test_account_failure_stops_the_run(self, engine, platform, invoice):
        platform.failures["accounts.create"] = ApiError("Bad request", 400)

        result = run(engine.sync_full_account("C100"))

        assert result.account_remote_id is None
        assert result.synced == {}
        assert platform.count("invoices.create") == 0
