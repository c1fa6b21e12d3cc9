"""Entities mirrored from the billing provider."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, TypeVar

from billing_sync.store.graph import Node

E = TypeVar("E", bound="Entity")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch(ts: int | None) -> datetime | None:
    """Provider Unix seconds -> aware datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass
class Entity:
    """Base for graph-backed entities. ``id`` is the internal node id."""

    LABEL = ""
    EXTERNAL_KEY = ""

    id: str = ""

    def to_props(self) -> dict[str, Any]:
        props = asdict(self)
        props.pop("id")
        return props

    @classmethod
    def from_node(cls: type[E], node: Node) -> E:
        names = {f.name for f in fields(cls)}
        return cls(id=node.id, **{k: v for k, v in node.props.items() if k in names})

    @property
    def external_id(self) -> str:
        return getattr(self, self.EXTERNAL_KEY)


@dataclass
class Tenant(Entity):
    LABEL = "Tenant"
    EXTERNAL_KEY = "tenant_id"

    tenant_id: str = ""
    name: str | None = None


@dataclass
class BillingCustomer(Entity):
    LABEL = "BillingCustomer"
    EXTERNAL_KEY = "external_customer_id"

    external_customer_id: str = ""
    tenant_id: str = ""
    email: str | None = None
    name: str | None = None
    default_payment_method_id: str | None = None
    currency: str | None = None
    balance: int = 0
    delinquent: bool = False
    deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Product(Entity):
    LABEL = "Product"
    EXTERNAL_KEY = "external_product_id"

    external_product_id: str = ""
    name: str = ""
    description: str | None = None
    active: bool = True
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Price(Entity):
    LABEL = "Price"
    EXTERNAL_KEY = "external_price_id"

    external_price_id: str = ""
    product_id: str = ""  # internal id of the owning Product
    active: bool = True
    currency: str = "usd"
    unit_amount: int | None = None
    price_type: str = "recurring"  # recurring | one_time
    recurring_interval: str | None = None
    recurring_interval_count: int | None = None
    recurring_usage_type: str | None = None  # licensed | metered
    nickname: str | None = None
    lookup_key: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Subscription(Entity):
    LABEL = "Subscription"
    EXTERNAL_KEY = "external_subscription_id"

    external_subscription_id: str = ""
    billing_customer_id: str = ""
    price_id: str = ""
    # Mirrors the provider's status string; not validated locally.
    status: str = ""
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    paused_at: datetime | None = None
    quantity: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Invoice(Entity):
    LABEL = "Invoice"
    EXTERNAL_KEY = "external_invoice_id"

    external_invoice_id: str = ""
    billing_customer_id: str = ""
    subscription_id: str | None = None
    number: str | None = None
    status: str | None = None
    currency: str = "usd"
    amount_due: int = 0
    amount_paid: int = 0
    amount_remaining: int = 0
    subtotal: int = 0
    total: int = 0
    tax: int | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    due_date: datetime | None = None
    paid_at: datetime | None = None
    attempt_count: int = 0
    attempted: bool = False
    hosted_invoice_url: str | None = None
    pdf_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageRecord(Entity):
    LABEL = "UsageRecord"
    EXTERNAL_KEY = "external_event_id"

    external_event_id: str = ""  # provider-issued meter event identifier
    subscription_id: str = ""
    meter_id: str = ""
    meter_event_name: str = ""
    quantity: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OrphanedSync(Entity):
    """A sync skipped because an owning entity was not known locally."""

    LABEL = "OrphanedSync"
    EXTERNAL_KEY = "key"

    key: str = ""  # "{entity}:{external_id}"
    entity: str = ""
    entity_external_id: str = ""
    missing_entity: str = ""
    missing_external_id: str | None = None
    attempts: int = 1
    resolved: bool = False
    first_seen_at: datetime = field(default_factory=utcnow)
    last_attempt_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None
