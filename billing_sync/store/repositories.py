"""Per-entity repositories over the graph store.

Each repository offers ``create / find_by_id / find_by_external_id / update /
list`` keyed by the internal node id plus the entity's unique external id,
and wires the relationships its entity owns:

    (BillingCustomer)-[:BELONGS_TO]->(Tenant)
    (Price)-[:BELONGS_TO]->(Product)
    (Subscription)-[:BELONGS_TO]->(BillingCustomer)
    (Subscription)-[:FOR_PRICE]->(Price)
    (Invoice)-[:BELONGS_TO]->(BillingCustomer)
    (Invoice)-[:FOR_SUBSCRIPTION]->(Subscription)
    (UsageRecord)-[:BELONGS_TO]->(Subscription)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, TypeVar

from billing_sync.store.graph import GraphBackend, GraphStore
from billing_sync.store.models import (
    BillingCustomer,
    Entity,
    Invoice,
    OrphanedSync,
    Price,
    Product,
    Subscription,
    Tenant,
    UsageRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

BELONGS_TO = "BELONGS_TO"
FOR_PRICE = "FOR_PRICE"
FOR_SUBSCRIPTION = "FOR_SUBSCRIPTION"


class Repository(Generic[E]):
    """Generic CRUD for one entity type."""

    entity: type[E]

    def __init__(self, graph: GraphBackend) -> None:
        self.graph = graph
        graph.create_constraint(self.entity.LABEL, self.entity.EXTERNAL_KEY)

    def create(self, item: E) -> E:
        node = self.graph.create_node(self.entity.LABEL, item.to_props())
        created = self.entity.from_node(node)
        self._link(created)
        logger.debug("%s created: %s", self.entity.LABEL, created.external_id)
        return created

    def find_by_id(self, entity_id: str) -> E | None:
        node = self.graph.get_node(entity_id)
        if node is None or node.label != self.entity.LABEL:
            return None
        return self.entity.from_node(node)

    def find_by_external_id(self, external_id: str) -> E | None:
        node = self.graph.find_node(self.entity.LABEL, **{self.entity.EXTERNAL_KEY: external_id})
        return self.entity.from_node(node) if node else None

    def update(self, entity_id: str, **changes: Any) -> E:
        if "updated_at" in _field_names(self.entity):
            changes.setdefault("updated_at", utcnow())
        node = self.graph.update_node(entity_id, changes)
        updated = self.entity.from_node(node)
        self._link(updated)
        return updated

    def list(self, where: Callable[[E], bool] | None = None) -> list[E]:
        items = [self.entity.from_node(n) for n in self.graph.find_nodes(self.entity.LABEL)]
        return [i for i in items if where is None or where(i)]

    def count(self) -> int:
        return self.graph.count(self.entity.LABEL)

    def _link(self, item: E) -> None:
        """Create the relationships implied by *item*'s reference fields."""


def _field_names(cls: type) -> set[str]:
    return set(getattr(cls, "__dataclass_fields__", {}))


class TenantRepository(Repository[Tenant]):
    entity = Tenant

    def ensure(self, tenant_id: str) -> Tenant:
        existing = self.find_by_external_id(tenant_id)
        if existing:
            return existing
        return self.create(Tenant(tenant_id=tenant_id))


class CustomerRepository(Repository[BillingCustomer]):
    entity = BillingCustomer

    def __init__(self, graph: GraphBackend, tenants: TenantRepository) -> None:
        super().__init__(graph)
        # One billing customer per tenant.
        graph.create_constraint(BillingCustomer.LABEL, "tenant_id")
        self._tenants = tenants

    def find_by_tenant(self, tenant_id: str) -> BillingCustomer | None:
        node = self.graph.find_node(BillingCustomer.LABEL, tenant_id=tenant_id)
        return BillingCustomer.from_node(node) if node else None

    def _link(self, item: BillingCustomer) -> None:
        tenant = self._tenants.ensure(item.tenant_id)
        self.graph.relate(item.id, BELONGS_TO, tenant.id, exclusive=True)


class ProductRepository(Repository[Product]):
    entity = Product


class PriceRepository(Repository[Price]):
    entity = Price

    def _link(self, item: Price) -> None:
        self.graph.relate(item.id, BELONGS_TO, item.product_id, exclusive=True)


class SubscriptionRepository(Repository[Subscription]):
    entity = Subscription

    def for_customer(self, billing_customer_id: str) -> list[Subscription]:
        return self.list(lambda s: s.billing_customer_id == billing_customer_id)

    def _link(self, item: Subscription) -> None:
        self.graph.relate(item.id, BELONGS_TO, item.billing_customer_id, exclusive=True)
        # Plan changes re-point the price edge.
        self.graph.relate(item.id, FOR_PRICE, item.price_id, exclusive=True)


class InvoiceRepository(Repository[Invoice]):
    entity = Invoice

    def for_customer(self, billing_customer_id: str, status: str | None = None) -> list[Invoice]:
        return sorted(
            self.list(
                lambda i: i.billing_customer_id == billing_customer_id
                and (status is None or i.status == status)
            ),
            key=lambda i: i.created_at,
            reverse=True,
        )

    def _link(self, item: Invoice) -> None:
        self.graph.relate(item.id, BELONGS_TO, item.billing_customer_id, exclusive=True)
        if item.subscription_id:
            self.graph.relate(item.id, FOR_SUBSCRIPTION, item.subscription_id, exclusive=True)
        else:
            self.graph.unrelate(item.id, FOR_SUBSCRIPTION)


@dataclass
class UsageTotals:
    total: int
    count: int
    by_meter: dict[str, int]


class UsageRecordRepository(Repository[UsageRecord]):
    entity = UsageRecord

    def in_window(
        self,
        subscription_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]:
        """Records for a subscription with ``start <= timestamp < end``, oldest first."""
        records = self.list(
            lambda r: r.subscription_id == subscription_id
            and (start is None or r.timestamp >= start)
            and (end is None or r.timestamp < end)
        )
        return sorted(records, key=lambda r: r.timestamp)

    def summarize(self, subscription_id: str, start: datetime, end: datetime) -> UsageTotals:
        by_meter: dict[str, int] = {}
        total = 0
        records = self.in_window(subscription_id, start, end)
        for record in records:
            total += record.quantity
            by_meter[record.meter_id] = by_meter.get(record.meter_id, 0) + record.quantity
        return UsageTotals(total=total, count=len(records), by_meter=by_meter)

    def _link(self, item: UsageRecord) -> None:
        self.graph.relate(item.id, BELONGS_TO, item.subscription_id, exclusive=True)


class OrphanRepository(Repository[OrphanedSync]):
    entity = OrphanedSync

    def record(
        self,
        entity: str,
        external_id: str,
        missing_entity: str,
        missing_external_id: str | None,
    ) -> OrphanedSync:
        """Upsert an unresolved orphan, counting repeated skips."""
        key = f"{entity}:{external_id}"
        existing = self.find_by_external_id(key)
        if existing:
            return self.update(
                existing.id,
                attempts=existing.attempts + 1,
                resolved=False,
                resolved_at=None,
                last_attempt_at=utcnow(),
                missing_external_id=missing_external_id,
            )
        return self.create(
            OrphanedSync(
                key=key,
                entity=entity,
                entity_external_id=external_id,
                missing_entity=missing_entity,
                missing_external_id=missing_external_id,
            )
        )

    def resolve(self, entity: str, external_id: str) -> None:
        existing = self.find_by_external_id(f"{entity}:{external_id}")
        if existing and not existing.resolved:
            self.update(existing.id, resolved=True, resolved_at=utcnow())

    def unresolved(self) -> list[OrphanedSync]:
        return self.list(lambda o: not o.resolved)


class Repositories:
    """All repositories over one graph."""

    def __init__(self, graph: GraphBackend | None = None) -> None:
        self.graph = graph if graph is not None else GraphStore()
        self.tenants = TenantRepository(self.graph)
        self.customers = CustomerRepository(self.graph, self.tenants)
        self.products = ProductRepository(self.graph)
        self.prices = PriceRepository(self.graph)
        self.subscriptions = SubscriptionRepository(self.graph)
        self.invoices = InvoiceRepository(self.graph)
        self.usage = UsageRecordRepository(self.graph)
        self.orphans = OrphanRepository(self.graph)
