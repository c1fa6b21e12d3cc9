"""Subscription reconciliation.

Status is copied verbatim from the provider; no transition graph is enforced
locally. Period bounds and quantity come from the first subscription item,
whose price decides the FOR_PRICE relationship.
"""

from __future__ import annotations

import logging

from billing_sync.errors import ValidationFailure
from billing_sync.events import SubscriptionEvent
from billing_sync.provider.client import BillingProvider
from billing_sync.provider.models import ProviderSubscription
from billing_sync.reconciliation.base import upsert
from billing_sync.reconciliation.catalog import CatalogReconciler
from billing_sync.reconciliation.customers import CustomerReconciler
from billing_sync.store.models import Subscription, from_epoch, utcnow
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)


class SubscriptionReconciler:
    """Mirrors provider subscriptions, cascading customer and price first."""

    def __init__(
        self,
        provider: BillingProvider,
        repos: Repositories,
        customers: CustomerReconciler,
        catalog: CatalogReconciler,
    ):
        self._provider = provider
        self._repos = repos
        self._customers = customers
        self._catalog = catalog

    def handle(self, event: SubscriptionEvent) -> None:
        self.sync_subscription(event.subscription_id)

    def sync_subscription(self, external_subscription_id: str) -> Subscription | None:
        """Fetch and upsert one subscription. None when a dependency is unresolvable."""
        remote = self._provider.retrieve_subscription(external_subscription_id)
        item = remote.first_item
        if item is None:
            raise ValidationFailure(f"Subscription {external_subscription_id} has no items")
        if not remote.customer:
            raise ValidationFailure(f"Subscription {external_subscription_id} has no customer")

        existing = self._repos.subscriptions.find_by_external_id(external_subscription_id)

        customer = self._repos.customers.find_by_external_id(remote.customer)
        if customer is None:
            customer = self._customers.sync_customer(remote.customer)
        if customer is None:
            logger.warning(
                "Subscription %s: customer %s unknown locally; skipped",
                external_subscription_id,
                remote.customer,
            )
            self._repos.orphans.record(
                "subscription", external_subscription_id, "customer", remote.customer
            )
            return None

        price = self._catalog.ensure_price(item.price.id, item.price)
        if price is None:
            logger.warning(
                "Subscription %s: price %s could not be synced; skipped",
                external_subscription_id,
                item.price.id,
            )
            self._repos.orphans.record(
                "subscription", external_subscription_id, "price", item.price.id
            )
            return None

        fields = self._fields(remote, existing)
        fields["billing_customer_id"] = customer.id
        fields["price_id"] = price.id
        subscription, created = upsert(self._repos.subscriptions, external_subscription_id, fields)
        self._repos.orphans.resolve("subscription", external_subscription_id)
        logger.info(
            "Subscription %s %s (status=%s)",
            external_subscription_id,
            "created" if created else "updated",
            subscription.status,
        )
        return subscription

    @staticmethod
    def _fields(remote: ProviderSubscription, existing: Subscription | None) -> dict:
        item = remote.first_item
        paused = remote.pause_collection is not None or remote.status == "paused"
        if paused:
            paused_at = existing.paused_at if existing and existing.paused_at else utcnow()
        else:
            paused_at = None
        return {
            "status": remote.status,
            "current_period_start": from_epoch(item.current_period_start),
            "current_period_end": from_epoch(item.current_period_end),
            "quantity": item.quantity if item.quantity is not None else 1,
            "cancel_at_period_end": remote.cancel_at_period_end,
            "canceled_at": from_epoch(remote.canceled_at),
            "trial_start": from_epoch(remote.trial_start),
            "trial_end": from_epoch(remote.trial_end),
            "paused_at": paused_at,
        }
