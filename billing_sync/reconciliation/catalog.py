"""Product and price reconciliation.

A price can only exist under its product. When a price arrives before its
product, the product is synced first; if that cascade does not yield a local
product, the price is left unsynced for this event and heals on the next
delivery or sweep.
"""

from __future__ import annotations

import logging

from billing_sync.events import PriceEvent, ProductEvent
from billing_sync.provider.client import BillingProvider
from billing_sync.provider.models import ProviderPrice, ProviderProduct
from billing_sync.reconciliation.base import upsert
from billing_sync.store.models import Price, Product
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)


class CatalogReconciler:
    """Mirrors provider products and prices."""

    def __init__(self, provider: BillingProvider, repos: Repositories):
        self._provider = provider
        self._repos = repos

    # Event entry points --------------------------------------------------

    def handle_product(self, event: ProductEvent) -> None:
        if event.deleted:
            self._deactivate(self._repos.products, event.product_id)
            return
        self.sync_product(event.product_id)

    def handle_price(self, event: PriceEvent) -> None:
        if event.deleted:
            self._deactivate(self._repos.prices, event.price_id)
            return
        self.sync_price(event.price_id)

    # Sync ----------------------------------------------------------------

    def sync_product(self, external_product_id: str, remote: ProviderProduct | None = None) -> Product:
        remote = remote or self._provider.retrieve_product(external_product_id)
        product, created = upsert(
            self._repos.products,
            external_product_id,
            {
                "name": remote.name,
                "description": remote.description,
                "active": remote.active,
                "metadata": dict(remote.metadata),
            },
        )
        logger.info("Product %s %s", external_product_id, "created" if created else "updated")
        return product

    def sync_price(self, external_price_id: str, remote: ProviderPrice | None = None) -> Price | None:
        """Upsert a price, cascading its product first when unknown."""
        remote = remote or self._provider.retrieve_price(external_price_id)
        if not remote.product:
            logger.warning("Price %s has no product reference; skipping", external_price_id)
            return None

        product = self._repos.products.find_by_external_id(remote.product)
        if product is None:
            logger.info(
                "Price %s references unknown product %s; syncing product first",
                external_price_id,
                remote.product,
            )
            self.sync_product(remote.product)
            product = self._repos.products.find_by_external_id(remote.product)
            if product is None:
                logger.warning(
                    "Product cascade for price %s did not produce %s; price not synced",
                    external_price_id,
                    remote.product,
                )
                return None

        price, created = upsert(self._repos.prices, external_price_id, self._price_fields(remote, product.id))
        logger.info("Price %s %s", external_price_id, "created" if created else "updated")
        return price

    def ensure_price(self, external_price_id: str, remote: ProviderPrice | None = None) -> Price | None:
        """Local price for *external_price_id*, syncing it if not yet known."""
        existing = self._repos.prices.find_by_external_id(external_price_id)
        if existing is not None:
            return existing
        return self.sync_price(external_price_id, remote)

    @staticmethod
    def _price_fields(remote: ProviderPrice, product_id: str) -> dict:
        recurring = remote.recurring
        return {
            "product_id": product_id,
            "active": remote.active,
            "currency": remote.currency,
            "unit_amount": remote.unit_amount,
            "price_type": "recurring" if remote.type == "recurring" else "one_time",
            "recurring_interval": recurring.interval if recurring else None,
            "recurring_interval_count": recurring.interval_count if recurring else None,
            "recurring_usage_type": remote.usage_type,
            "nickname": remote.nickname,
            "lookup_key": remote.lookup_key,
            "metadata": dict(remote.metadata),
        }

    def _deactivate(self, repo, external_id: str) -> None:
        existing = repo.find_by_external_id(external_id)
        if existing is None:
            logger.debug("Deleted %s %s not known locally", repo.entity.LABEL, external_id)
            return
        repo.update(existing.id, active=False)
        logger.info("%s %s deactivated", repo.entity.LABEL, external_id)
