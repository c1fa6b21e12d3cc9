"""Tests for event classification."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

import factories
from billing_sync.errors import ValidationFailure
from billing_sync.events import (
    EVENT_CATEGORIES,
    CustomerEvent,
    InvoiceEvent,
    PaymentIntentEvent,
    PriceEvent,
    ProductEvent,
    SubscriptionEvent,
    UnhandledEvent,
    handled_event_types,
    parse_event,
)


class TestParseEvent:
    @pytest.mark.parametrize(
        "event_type",
        [
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "customer.subscription.paused",
            "customer.subscription.resumed",
        ],
    )
    def test_subscription_events(self, event_type):
        event = parse_event(event_type, factories.subscription())
        assert event == SubscriptionEvent(event_type, "sub_1", "cus_1")

    def test_invoice_subscription_from_parent(self):
        event = parse_event("invoice.paid", factories.invoice())
        assert isinstance(event, InvoiceEvent)
        assert event.subscription_id == "sub_1"
        assert event.customer_id == "cus_1"
        assert not event.payment_failed

    def test_invoice_subscription_legacy_field(self):
        obj = factories.invoice(subscription_id=None, subscription="sub_legacy")
        assert parse_event("invoice.updated", obj).subscription_id == "sub_legacy"

    def test_invoice_payment_failed(self):
        event = parse_event("invoice.payment_failed", factories.invoice(status="open"))
        assert event.payment_failed

    def test_expanded_reference_collapses_to_id(self):
        obj = factories.subscription(customer_id="ignored")
        obj["customer"] = {"id": "cus_expanded", "object": "customer"}
        assert parse_event("customer.subscription.updated", obj).customer_id == "cus_expanded"

    def test_customer_deleted(self):
        event = parse_event("customer.deleted", {"id": "cus_1", "deleted": True})
        assert event == CustomerEvent("customer.deleted", "cus_1")
        assert event.deleted

    def test_payment_intent_failure(self):
        obj = factories.payment_intent(failure_message="Your card was declined.")
        event = parse_event("payment_intent.payment_failed", obj)
        assert isinstance(event, PaymentIntentEvent)
        assert event.payment_failed
        assert event.amount == 4999
        assert event.failure_message == "Your card was declined."
        assert event.invoice_id == "in_1"

    def test_catalog_events(self):
        assert parse_event("product.deleted", factories.product()).deleted
        price_event = parse_event("price.updated", factories.price())
        assert price_event == PriceEvent("price.updated", "price_1", "prod_1")
        assert isinstance(parse_event("product.created", factories.product()), ProductEvent)

    def test_unknown_type_is_unhandled(self):
        assert parse_event("charge.refunded", {"id": "ch_1"}) == UnhandledEvent("charge.refunded")

    def test_unknown_type_ignores_object_shape(self):
        assert isinstance(parse_event("radar.early_fraud_warning.created", None), UnhandledEvent)

    def test_known_type_without_id_is_invalid(self):
        with pytest.raises(ValidationFailure, match="no id"):
            parse_event("invoice.paid", {"customer": "cus_1"})

    def test_known_type_with_non_mapping_is_invalid(self):
        with pytest.raises(ValidationFailure):
            parse_event("invoice.paid", None)

    def test_handled_types_listed(self):
        types = handled_event_types()
        assert "invoice.paid" in types
        assert "charge.refunded" not in types


class TestClassificationProperties:
    @given(event_type=st.text(min_size=1, max_size=40), object_id=st.text(min_size=1, max_size=20))
    def test_every_type_maps_to_exactly_one_category(self, event_type, object_id):
        event = parse_event(event_type, {"id": object_id})
        matches = [c for c in EVENT_CATEGORIES if isinstance(event, c)]
        assert len(matches) == 1
        if event_type not in handled_event_types():
            assert matches == [UnhandledEvent]
