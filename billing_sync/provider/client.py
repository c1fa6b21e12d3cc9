"""Billing provider client.

``BillingProvider`` is the capability the reconciliation handlers depend on:
retrieve-by-id for each entity, per-customer listings, usage-meter submission
and summaries, and portal-session creation. ``StripeProvider`` implements it
on ``stripe.StripeClient``.

Every SDK call goes through ``StripeProvider._call`` which converts SDK
exceptions into ``ProviderCallFailure`` with an explicit error kind, and every
response is parsed into a typed model; a payload the model rejects becomes a
``ValidationFailure``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

import stripe
from pydantic import BaseModel, ValidationError

from billing_sync.errors import ValidationFailure, map_provider_error
from billing_sync.provider.models import (
    Meter,
    MeterEvent,
    MeterEventSummary,
    ProviderCustomer,
    ProviderInvoice,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@runtime_checkable
class BillingProvider(Protocol):
    """Authoritative source of billing state."""

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer: ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice: ...

    def retrieve_product(self, product_id: str) -> ProviderProduct: ...

    def retrieve_price(self, price_id: str) -> ProviderPrice: ...

    def list_subscriptions(self, customer_id: str) -> list[ProviderSubscription]: ...

    def list_invoices(self, customer_id: str, limit: int = 100) -> list[ProviderInvoice]: ...

    def report_meter_event(
        self,
        event_name: str,
        customer_id: str,
        value: int,
        *,
        timestamp: datetime | None = None,
        identifier: str | None = None,
    ) -> MeterEvent: ...

    def get_meter_event_summaries(
        self,
        meter_id: str,
        customer_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MeterEventSummary]: ...

    def list_meters(self) -> list[Meter]: ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str: ...


def to_plain(obj: Any) -> Any:
    """Plain JSON-compatible data from an SDK object (or pass-through)."""
    if obj is None or isinstance(obj, (dict, list, str, int, float, bool)):
        return obj
    # StripeObject serialises itself to JSON on str().
    return json.loads(str(obj))


def parse_model(model: type[M], data: Any, operation: str) -> M:
    """Validate provider data into *model*; ValidationFailure on mismatch."""
    try:
        return model.model_validate(to_plain(data))
    except ValidationError as exc:
        raise ValidationFailure(
            f"{operation}: unexpected provider payload ({exc.error_count()} error(s))"
        ) from exc


class StripeProvider:
    """``BillingProvider`` backed by the Stripe API."""

    def __init__(self, api_key: str, *, client: stripe.StripeClient | None = None) -> None:
        if client is None and not api_key:
            logger.warning("No provider API key configured; provider calls will fail")
        self._client = client or stripe.StripeClient(api_key=api_key or "sk_unset")

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as exc:
            failure = map_provider_error(exc, operation)
            logger.warning("Provider call %s failed: %s", operation, failure.message)
            raise failure from exc

    # Retrieval -----------------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        obj = self._call("customers.retrieve", self._client.customers.retrieve, customer_id)
        return parse_model(ProviderCustomer, obj, "customers.retrieve")

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        obj = self._call(
            "subscriptions.retrieve",
            self._client.subscriptions.retrieve,
            subscription_id,
            params={"expand": ["items.data.price"]},
        )
        return parse_model(ProviderSubscription, obj, "subscriptions.retrieve")

    def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice:
        obj = self._call("invoices.retrieve", self._client.invoices.retrieve, invoice_id)
        return parse_model(ProviderInvoice, obj, "invoices.retrieve")

    def retrieve_product(self, product_id: str) -> ProviderProduct:
        obj = self._call("products.retrieve", self._client.products.retrieve, product_id)
        return parse_model(ProviderProduct, obj, "products.retrieve")

    def retrieve_price(self, price_id: str) -> ProviderPrice:
        obj = self._call("prices.retrieve", self._client.prices.retrieve, price_id)
        return parse_model(ProviderPrice, obj, "prices.retrieve")

    # Listing -------------------------------------------------------------

    def list_subscriptions(self, customer_id: str) -> list[ProviderSubscription]:
        page = self._call(
            "subscriptions.list",
            self._client.subscriptions.list,
            params={"customer": customer_id, "status": "all", "limit": 100},
        )
        return [
            parse_model(ProviderSubscription, s, "subscriptions.list")
            for s in to_plain(page).get("data", [])
        ]

    def list_invoices(self, customer_id: str, limit: int = 100) -> list[ProviderInvoice]:
        page = self._call(
            "invoices.list",
            self._client.invoices.list,
            params={"customer": customer_id, "limit": limit},
        )
        return [
            parse_model(ProviderInvoice, i, "invoices.list")
            for i in to_plain(page).get("data", [])
        ]

    # Usage meters --------------------------------------------------------

    def report_meter_event(
        self,
        event_name: str,
        customer_id: str,
        value: int,
        *,
        timestamp: datetime | None = None,
        identifier: str | None = None,
    ) -> MeterEvent:
        params: dict[str, Any] = {
            "event_name": event_name,
            "payload": {"stripe_customer_id": customer_id, "value": str(value)},
        }
        if identifier:
            params["identifier"] = identifier
        if timestamp is not None:
            params["timestamp"] = timestamp.isoformat()
        obj = self._call(
            "billing.meter_events.create",
            self._client.v2.billing.meter_events.create,
            params=params,
        )
        return parse_model(MeterEvent, obj, "billing.meter_events.create")

    def get_meter_event_summaries(
        self,
        meter_id: str,
        customer_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MeterEventSummary]:
        page = self._call(
            "billing.meters.event_summaries.list",
            self._client.billing.meters.event_summaries.list,
            meter_id,
            params={
                "customer": customer_id,
                "start_time": int(start.timestamp()),
                "end_time": int(end.timestamp()),
            },
        )
        return [
            parse_model(MeterEventSummary, s, "billing.meters.event_summaries.list")
            for s in to_plain(page).get("data", [])
        ]

    def list_meters(self) -> list[Meter]:
        page = self._call("billing.meters.list", self._client.billing.meters.list)
        return [parse_model(Meter, m, "billing.meters.list") for m in to_plain(page).get("data", [])]

    # Portal --------------------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "billing_portal.sessions.create",
            self._client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return to_plain(session)["url"]
