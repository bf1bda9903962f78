"""Account and contact synchronizers.

Accounts are updated in place (PUT); contacts are upserted under their
parent account. An account also owns a set of "email contacts": the
dunning and main addresses of the customer, kept in line with the
addresses the ERP knows about.
"""

from typing import Any, Dict, List, Optional, Set, Tuple

from connectors.billing_platform.bp_client import ApiError, BillingPlatformError, list_nodes
from connectors.billing_platform.bp_models import RemoteAccount, RemoteContact
from connectors.erp_base import EntityKind, LocalAccount, LocalContact, RecordNotFoundError
from core.observability.logging import get_logger, with_correlation
from reconciliation.rules import classify_account, contact_matches
from sync_engine.base import Synchronizer, register_synchronizer
from sync_queue.queue import QueueAction, QueueStatus, parse_contact_delete_key

logger = get_logger(__name__)


@register_synchronizer(EntityKind.ACCOUNT)
class AccountSynchronizer(Synchronizer):
    """Synchronizes customers to billing platform accounts.

    State machine:
    - no remote id -> create -> linked
    - linked -> GET -> unchanged ? skip : PUT
    - 404 on GET or PUT -> clear remote id -> create
    """

    # =========================================================================
    # Payloads
    # =========================================================================

    def build_payload(self, account: LocalAccount) -> Dict[str, Any]:
        """Fields sent on both create and update."""
        return {
            "fullName": account.name,
            "currencyCode": (account.currency_code or self.settings.default_currency).upper(),
            "billingAddress": account.billing_address.to_payload(),
        }

    def build_create_payload(self, account: LocalAccount) -> Dict[str, Any]:
        """Create payload. `source` is only ever sent here."""
        payload = {"organizationId": self.context.get_organization_id()}
        payload.update(self.build_payload(account))
        payload["contacts"] = []
        payload["internalRepresentatives"] = []
        payload["source"] = {
            "connectionId": self.settings.source_connection_id,
            "sourceId": account.id,
        }
        return payload

    # =========================================================================
    # Reconcile
    # =========================================================================

    async def reconcile(self, local_id: str) -> Optional[str]:
        account: LocalAccount = self.load(local_id)
        with with_correlation(entity_kind=self.kind.value, local_id=local_id, remote_id=account.remote_id):
            if account.remote_id:
                remote_id = await self._update_linked(account)
                if remote_id:
                    return remote_id
            return await self._create(account)

    async def _update_linked(self, account: LocalAccount) -> Optional[str]:
        """Update a linked account. Returns None when the remote account is gone."""
        try:
            response = await self.client.accounts.get(account.remote_id)
        except ApiError as e:
            if e.is_not_found:
                self.clear_remote_id(account.id)
                return None
            raise

        payload = self.build_payload(account)
        decision = classify_account(RemoteAccount.model_validate(response.data), payload)
        if decision.is_unchanged:
            logger.debug(f"Account {account.id} unchanged, skipping")
            return account.remote_id

        try:
            with self.track("accounts.update", account.id, account.remote_id) as op:
                await self.client.accounts.update(account.remote_id, payload)
                op.message = decision.describe()
        except ApiError as e:
            if e.is_not_found:
                self.clear_remote_id(account.id)
                return None
            raise
        return account.remote_id

    async def _create(self, account: LocalAccount) -> str:
        payload = self.build_create_payload(account)
        with self.track("accounts.create", account.id) as op:
            response = await self.client.accounts.create(payload)
            op.remote_id = response.data["id"]
        self.records.set_remote_id(self.kind, account.id, op.remote_id)
        return op.remote_id

    async def delete(self, remote_key: str) -> None:
        """Delete the remote account; the platform cascades to its contacts and documents."""
        with self.track("accounts.delete", None, remote_key) as op:
            try:
                await self.client.accounts.delete(remote_key)
            except ApiError as e:
                if not e.is_not_found:
                    raise
                op.message = "Already deleted"

    # =========================================================================
    # Email contacts
    # =========================================================================

    def emails_to_sync(self, account: LocalAccount) -> List[Tuple[str, bool]]:
        """(email, is_primary) pairs: the dunning email first, then the main
        email when it differs. The main email is primary only without a
        dunning email."""
        emails: List[Tuple[str, bool]] = []
        if account.dunning_email:
            emails.append((account.dunning_email, True))
        if account.email:
            if not account.dunning_email:
                emails.append((account.email, True))
            elif account.email.lower() != account.dunning_email.lower():
                emails.append((account.email, False))
        return emails

    def legitimate_emails(self, account: LocalAccount) -> Set[str]:
        """Lowercased, resolved addresses the ERP knows for this account."""
        candidates = [account.dunning_email, account.email]
        candidates.extend(self.records.contact_emails_for_account(account.id))
        legitimate = set()
        for email in candidates:
            resolved = self.settings.resolve_email(email)
            if resolved:
                legitimate.add(resolved.lower())
        return legitimate

    async def sync_email_contacts(self, account_id: str) -> Dict[str, int]:
        """Make the account's remote contacts match the ERP addresses.

        Remote contacts with an unknown address are deleted (failures are
        logged, not raised); the account's own addresses are upserted.
        """
        account: LocalAccount = self.load(account_id)
        remote_account_id = account.remote_id or await self.engine.ensure_account_linked(account_id)
        summary = {"deleted": 0, "upserted": 0, "skipped": 0}

        with with_correlation(entity_kind=self.kind.value, local_id=account_id, remote_id=remote_account_id):
            response = await self.client.contacts.list(remote_account_id)
            remote_contacts = [RemoteContact.model_validate(node) for node in list_nodes(response.data)]
            legitimate = self.legitimate_emails(account)

            for remote in remote_contacts:
                if not remote.email or remote.email.lower() in legitimate:
                    continue
                try:
                    with self.track("contacts.deleteOrphan", account_id, remote_account_id) as op:
                        op.message = f"Removed stale contact {remote.id} ({remote.email})"
                        try:
                            await self.client.contacts.delete(remote_account_id, remote.id)
                        except ApiError as e:
                            if not e.is_not_found:
                                raise
                    summary["deleted"] += 1
                except BillingPlatformError as e:
                    logger.error(f"Could not delete stale contact {remote.id} of account {account_id}: {e}")

            seen = set()
            for email, is_primary in self.emails_to_sync(account):
                resolved = self.settings.resolve_email(email)
                if resolved.lower() in seen:
                    continue
                seen.add(resolved.lower())

                payload = {
                    "fullName": email,
                    "email": resolved,
                    "language": self.settings.default_language,
                    "isPrimary": is_primary,
                }
                existing = next(
                    (c for c in remote_contacts if (c.email or "").lower() == resolved.lower()),
                    None,
                )
                if existing is not None and contact_matches(existing, payload):
                    summary["skipped"] += 1
                    continue

                with self.track("contacts.upsert", account_id, kind=EntityKind.CONTACT) as op:
                    upserted = await self.client.contacts.upsert(remote_account_id, payload)
                    op.remote_id = (upserted.data or {}).get("id")
                summary["upserted"] += 1

        logger.debug(f"Email contacts of account {account_id}: {summary}")
        return summary


@register_synchronizer(EntityKind.CONTACT)
class ContactSynchronizer(Synchronizer):
    """Synchronizes contact persons, upserted under their parent account."""

    def build_payload(self, contact: LocalContact) -> Dict[str, Any]:
        payload = {
            "fullName": contact.full_name,
            "language": self.settings.default_language,
            "isPrimary": False,
            "role": contact.title,
        }
        email = self.settings.resolve_email(contact.email)
        if email:
            payload["email"] = email
        return payload

    async def reconcile(self, local_id: str) -> Optional[str]:
        contact: LocalContact = self.load(local_id)

        if not contact.account_id:
            logger.info(f"Contact {local_id} has no parent account, skipping")
            return None
        try:
            self.records.load(EntityKind.ACCOUNT, contact.account_id)
        except RecordNotFoundError:
            logger.info(f"Parent account {contact.account_id} of contact {local_id} is gone, skipping")
            return None

        account_remote_id = await self.engine.ensure_account_linked(contact.account_id)
        payload = self.build_payload(contact)

        with with_correlation(entity_kind=self.kind.value, local_id=local_id, remote_id=contact.remote_id):
            if contact.remote_id and contact.remote_account_id == account_remote_id:
                try:
                    response = await self.client.contacts.get(account_remote_id, contact.remote_id)
                except ApiError as e:
                    if not e.is_not_found:
                        raise
                    logger.warning(f"Remote contact {contact.remote_id} not found, upserting again")
                else:
                    if contact_matches(RemoteContact.model_validate(response.data), payload):
                        logger.debug(f"Contact {local_id} unchanged, skipping")
                        return contact.remote_id

            with self.track("contacts.upsert", contact.id, contact.remote_id) as op:
                response = await self.client.contacts.upsert(account_remote_id, payload)
                op.remote_id = (response.data or {}).get("id") or contact.remote_id

        if op.remote_id != contact.remote_id or account_remote_id != contact.remote_account_id:
            self.records.submit_fields(
                self.kind,
                contact.id,
                {"remote_id": op.remote_id, "remote_account_id": account_remote_id},
            )
        return op.remote_id

    def account_delete_requested(self, account_remote_id: str) -> bool:
        """True when the parent account's remote delete is queued or already done.

        Deleting the account removes its contacts on the platform.
        """
        queue = self.engine.queue
        if queue is not None:
            entry = queue.find(EntityKind.ACCOUNT, account_remote_id)
            if (
                entry is not None
                and entry.action == QueueAction.DELETE
                and entry.status != QueueStatus.FAILED
            ):
                return True
        done = self.context.oplog.query(
            entity_kind=EntityKind.ACCOUNT,
            remote_id=account_remote_id,
            status="success",
            operation="accounts.delete",
            limit=1,
        )
        return bool(done)

    async def delete(self, remote_key: str) -> None:
        """Delete a contact. `remote_key` is a contact delete key (both remote ids)."""
        account_remote_id, contact_remote_id = parse_contact_delete_key(remote_key)
        if self.account_delete_requested(account_remote_id):
            logger.info(
                f"Account {account_remote_id} is being deleted, skipping delete of contact {contact_remote_id}"
            )
            return
        with self.track("contacts.delete", None, contact_remote_id) as op:
            try:
                await self.client.contacts.delete(account_remote_id, contact_remote_id)
            except ApiError as e:
                if not e.is_not_found:
                    raise
                op.message = "Already deleted"
