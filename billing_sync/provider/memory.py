"""In-process ``BillingProvider`` holding raw provider payloads.

Used by tests and local runs without provider credentials. Payloads are
stored in provider wire shape and parsed through the same models as the
Stripe client, so malformed fixtures fail the same way real data would.
"""

from __future__ import annotations

import threading
import uuid
from collections import Counter
from datetime import datetime
from typing import Any

from billing_sync.errors import ProviderCallFailure, ProviderErrorKind
from billing_sync.provider.client import parse_model
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


class InMemoryProvider:
    """Dict-backed provider with failure injection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.objects: dict[str, dict[str, dict[str, Any]]] = {
            "customer": {},
            "subscription": {},
            "invoice": {},
            "product": {},
            "price": {},
        }
        self.meter_events: list[dict[str, Any]] = []
        self.meters: list[dict[str, Any]] = []
        self.summaries: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.calls: Counter[str] = Counter()
        self._failures: dict[str, list[Exception]] = {}

    # Fixture setup -------------------------------------------------------

    def put(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.objects[kind][obj["id"]] = obj
        return obj

    def fail(self, operation: str, exc: Exception | None = None, times: int = 1) -> None:
        """Make the next *times* calls of *operation* raise."""
        exc = exc or ProviderCallFailure(
            f"{operation} failed (network): injected",
            provider_kind=ProviderErrorKind.NETWORK,
            operation=operation,
        )
        with self._lock:
            self._failures.setdefault(operation, []).extend([exc] * times)

    # Internals -----------------------------------------------------------

    def _enter(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] += 1
            pending = self._failures.get(operation)
            exc = pending.pop(0) if pending else None
        if exc is not None:
            raise exc

    def _get(self, kind: str, object_id: str, operation: str) -> dict[str, Any]:
        self._enter(operation)
        with self._lock:
            obj = self.objects[kind].get(object_id)
        if obj is None:
            raise ProviderCallFailure(
                f"{operation} failed (not_found): No such {kind}: '{object_id}'",
                provider_kind=ProviderErrorKind.NOT_FOUND,
                operation=operation,
            )
        return obj

    def _expanded_subscription(self, obj: dict[str, Any]) -> dict[str, Any]:
        # Mirror the expand=["items.data.price"] the real client requests.
        items = []
        for item in (obj.get("items") or {}).get("data", []):
            price = item.get("price")
            if isinstance(price, str):
                with self._lock:
                    price = self.objects["price"].get(price, {"id": price})
            items.append({**item, "price": price})
        return {**obj, "items": {"data": items}}

    # BillingProvider -----------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        obj = self._get("customer", customer_id, "customers.retrieve")
        return parse_model(ProviderCustomer, obj, "customers.retrieve")

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        obj = self._get("subscription", subscription_id, "subscriptions.retrieve")
        return parse_model(
            ProviderSubscription, self._expanded_subscription(obj), "subscriptions.retrieve"
        )

    def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice:
        obj = self._get("invoice", invoice_id, "invoices.retrieve")
        return parse_model(ProviderInvoice, obj, "invoices.retrieve")

    def retrieve_product(self, product_id: str) -> ProviderProduct:
        obj = self._get("product", product_id, "products.retrieve")
        return parse_model(ProviderProduct, obj, "products.retrieve")

    def retrieve_price(self, price_id: str) -> ProviderPrice:
        obj = self._get("price", price_id, "prices.retrieve")
        return parse_model(ProviderPrice, obj, "prices.retrieve")

    def list_subscriptions(self, customer_id: str) -> list[ProviderSubscription]:
        self._enter("subscriptions.list")
        with self._lock:
            subs = [s for s in self.objects["subscription"].values() if s.get("customer") == customer_id]
        return [
            parse_model(ProviderSubscription, self._expanded_subscription(s), "subscriptions.list")
            for s in subs
        ]

    def list_invoices(self, customer_id: str, limit: int = 100) -> list[ProviderInvoice]:
        self._enter("invoices.list")
        with self._lock:
            invoices = [i for i in self.objects["invoice"].values() if i.get("customer") == customer_id]
        return [parse_model(ProviderInvoice, i, "invoices.list") for i in invoices[:limit]]

    def report_meter_event(
        self,
        event_name: str,
        customer_id: str,
        value: int,
        *,
        timestamp: datetime | None = None,
        identifier: str | None = None,
    ) -> MeterEvent:
        self._enter("billing.meter_events.create")
        event = {
            "identifier": identifier or f"mev_{uuid.uuid4().hex[:16]}",
            "event_name": event_name,
            "timestamp": timestamp.isoformat() if timestamp else None,
            "payload": {"stripe_customer_id": customer_id, "value": str(value)},
        }
        with self._lock:
            self.meter_events.append(event)
        return parse_model(MeterEvent, event, "billing.meter_events.create")

    def get_meter_event_summaries(
        self,
        meter_id: str,
        customer_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MeterEventSummary]:
        self._enter("billing.meters.event_summaries.list")
        lo, hi = int(start.timestamp()), int(end.timestamp())
        with self._lock:
            rows = list(self.summaries.get((meter_id, customer_id), []))
        return [
            parse_model(MeterEventSummary, r, "billing.meters.event_summaries.list")
            for r in rows
            if r["start_time"] >= lo and r["end_time"] <= hi
        ]

    def list_meters(self) -> list[Meter]:
        self._enter("billing.meters.list")
        return [parse_model(Meter, m, "billing.meters.list") for m in self.meters]

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self._enter("billing_portal.sessions.create")
        return f"https://billing.example.test/session/{customer_id}?return_url={return_url}"
