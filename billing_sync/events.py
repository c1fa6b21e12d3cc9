"""Provider event routing: event type -> typed event category.

Every known provider event type maps to exactly one category in the closed
union ``BillingEvent``. Types not listed in ``_EVENT_CATEGORIES`` parse to
``UnhandledEvent``; the processor records those as completed with no side
effect.

Categories carry only what a handler needs to start reconciling (object id
plus a few references). The handler re-fetches the authoritative object from
the provider; webhook payloads may be stale by the time they are processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

from billing_sync.errors import ValidationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionEvent:
    event_type: str
    subscription_id: str
    customer_id: str | None = None


@dataclass(frozen=True)
class InvoiceEvent:
    event_type: str
    invoice_id: str
    customer_id: str | None = None
    subscription_id: str | None = None

    @property
    def payment_failed(self) -> bool:
        return self.event_type == "invoice.payment_failed"


@dataclass(frozen=True)
class CustomerEvent:
    event_type: str
    customer_id: str

    @property
    def deleted(self) -> bool:
        return self.event_type == "customer.deleted"


@dataclass(frozen=True)
class PaymentIntentEvent:
    event_type: str
    payment_intent_id: str
    customer_id: str | None = None
    invoice_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    failure_message: str | None = None

    @property
    def payment_failed(self) -> bool:
        return self.event_type == "payment_intent.payment_failed"


@dataclass(frozen=True)
class ProductEvent:
    event_type: str
    product_id: str

    @property
    def deleted(self) -> bool:
        return self.event_type == "product.deleted"


@dataclass(frozen=True)
class PriceEvent:
    event_type: str
    price_id: str
    product_id: str | None = None

    @property
    def deleted(self) -> bool:
        return self.event_type == "price.deleted"


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str


BillingEvent = Union[
    SubscriptionEvent,
    InvoiceEvent,
    CustomerEvent,
    PaymentIntentEvent,
    ProductEvent,
    PriceEvent,
    UnhandledEvent,
]

# Every member of BillingEvent. The processor refuses to start unless each one
# has a handler registered.
EVENT_CATEGORIES: tuple[type, ...] = (
    SubscriptionEvent,
    InvoiceEvent,
    CustomerEvent,
    PaymentIntentEvent,
    ProductEvent,
    PriceEvent,
    UnhandledEvent,
)


def _ref(value: Any) -> str | None:
    """Id of a reference that may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def _require_id(event_type: str, obj: dict[str, Any]) -> str:
    object_id = _ref(obj.get("id"))
    if object_id is None:
        raise ValidationFailure(f"{event_type}: event object has no id")
    return object_id


def _invoice_subscription(obj: dict[str, Any]) -> str | None:
    # Newer API versions nest the subscription under parent.subscription_details.
    details = (obj.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription")) or _ref(obj.get("subscription"))


def _subscription(event_type: str, obj: dict[str, Any]) -> SubscriptionEvent:
    return SubscriptionEvent(
        event_type=event_type,
        subscription_id=_require_id(event_type, obj),
        customer_id=_ref(obj.get("customer")),
    )


def _invoice(event_type: str, obj: dict[str, Any]) -> InvoiceEvent:
    return InvoiceEvent(
        event_type=event_type,
        invoice_id=_require_id(event_type, obj),
        customer_id=_ref(obj.get("customer")),
        subscription_id=_invoice_subscription(obj),
    )


def _customer(event_type: str, obj: dict[str, Any]) -> CustomerEvent:
    return CustomerEvent(event_type=event_type, customer_id=_require_id(event_type, obj))


def _payment_intent(event_type: str, obj: dict[str, Any]) -> PaymentIntentEvent:
    last_error = obj.get("last_payment_error") or {}
    amount = obj.get("amount")
    return PaymentIntentEvent(
        event_type=event_type,
        payment_intent_id=_require_id(event_type, obj),
        customer_id=_ref(obj.get("customer")),
        invoice_id=_ref(obj.get("invoice")),
        amount=amount if isinstance(amount, int) else None,
        currency=obj.get("currency"),
        failure_message=last_error.get("message"),
    )


def _product(event_type: str, obj: dict[str, Any]) -> ProductEvent:
    return ProductEvent(event_type=event_type, product_id=_require_id(event_type, obj))


def _price(event_type: str, obj: dict[str, Any]) -> PriceEvent:
    return PriceEvent(
        event_type=event_type,
        price_id=_require_id(event_type, obj),
        product_id=_ref(obj.get("product")),
    )


_EVENT_CATEGORIES: dict[str, Callable[[str, dict[str, Any]], BillingEvent]] = {
    "customer.subscription.created": _subscription,
    "customer.subscription.updated": _subscription,
    "customer.subscription.deleted": _subscription,
    "customer.subscription.paused": _subscription,
    "customer.subscription.resumed": _subscription,
    "customer.subscription.trial_will_end": _subscription,
    "invoice.created": _invoice,
    "invoice.finalized": _invoice,
    "invoice.updated": _invoice,
    "invoice.paid": _invoice,
    "invoice.payment_succeeded": _invoice,
    "invoice.payment_failed": _invoice,
    "invoice.voided": _invoice,
    "invoice.marked_uncollectible": _invoice,
    "customer.created": _customer,
    "customer.updated": _customer,
    "customer.deleted": _customer,
    "payment_intent.succeeded": _payment_intent,
    "payment_intent.payment_failed": _payment_intent,
    "product.created": _product,
    "product.updated": _product,
    "product.deleted": _product,
    "price.created": _price,
    "price.updated": _price,
    "price.deleted": _price,
}


def handled_event_types() -> list[str]:
    """Event types that reconcile into the store."""
    return sorted(_EVENT_CATEGORIES)


def event_object(envelope: dict[str, Any]) -> dict[str, Any] | None:
    """The ``data.object`` of a provider event envelope, if present.

    Raises:
        ValidationFailure: ``data`` or ``data.object`` is not a JSON object.
    """
    data = envelope.get("data")
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValidationFailure("webhook event data is not a JSON object")
    obj = data.get("object")
    if obj is not None and not isinstance(obj, dict):
        raise ValidationFailure("webhook event data.object is not a JSON object")
    return obj


def parse_event(event_type: str, obj: Any) -> BillingEvent:
    """Classify a provider event.

    Raises:
        ValidationFailure: a known event type whose object is malformed.
    """
    parser = _EVENT_CATEGORIES.get(event_type)
    if parser is None:
        logger.debug("Unhandled event type: %s", event_type)
        return UnhandledEvent(event_type=event_type)
    if not isinstance(obj, dict):
        raise ValidationFailure(f"{event_type}: event object is not a mapping")
    return parser(event_type, obj)
