"""Customer reconciliation."""

from __future__ import annotations

import logging

from billing_sync.events import CustomerEvent
from billing_sync.provider.client import BillingProvider
from billing_sync.provider.models import ProviderCustomer
from billing_sync.reconciliation.base import upsert
from billing_sync.store.models import BillingCustomer
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)


class CustomerReconciler:
    """Mirrors provider customers onto BillingCustomer nodes."""

    def __init__(self, provider: BillingProvider, repos: Repositories):
        self._provider = provider
        self._repos = repos

    def handle(self, event: CustomerEvent) -> None:
        if event.deleted:
            # Dependent subscriptions are left to their own provider events.
            logger.warning("Customer %s was deleted at the provider", event.customer_id)
            self.mark_deleted(event.customer_id)
            return
        self.sync_customer(event.customer_id)

    def sync_customer(self, external_customer_id: str) -> BillingCustomer | None:
        """Fetch and upsert one customer.

        Existing customers are updated in place. A customer not yet known
        locally is created only when the provider metadata names its tenant
        (``tenant_id``); otherwise an orphan is recorded and None returned.
        """
        remote = self._provider.retrieve_customer(external_customer_id)
        if remote.deleted:
            self.mark_deleted(external_customer_id)
            return self._repos.customers.find_by_external_id(external_customer_id)

        fields = self._fields(remote)
        existing = self._repos.customers.find_by_external_id(external_customer_id)
        if existing is None:
            if remote.tenant_id is None:
                logger.warning(
                    "Customer %s has no tenant_id metadata; cannot create locally",
                    external_customer_id,
                )
                self._repos.orphans.record("customer", external_customer_id, "tenant", None)
                return None
            fields["tenant_id"] = remote.tenant_id

        customer, created = upsert(self._repos.customers, external_customer_id, fields)
        self._repos.orphans.resolve("customer", external_customer_id)
        logger.info(
            "Customer %s %s", external_customer_id, "created" if created else "updated"
        )
        return customer

    def mark_deleted(self, external_customer_id: str) -> None:
        existing = self._repos.customers.find_by_external_id(external_customer_id)
        if existing is None:
            logger.debug("Deleted customer %s not known locally", external_customer_id)
            return
        self._repos.customers.update(existing.id, deleted=True)

    @staticmethod
    def _fields(remote: ProviderCustomer) -> dict:
        return {
            "email": remote.email,
            "name": remote.name,
            "default_payment_method_id": remote.default_payment_method_id,
            "currency": remote.currency,
            "balance": remote.balance,
            "delinquent": remote.delinquent,
            "deleted": False,
        }
