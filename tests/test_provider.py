"""Tests for the provider client and error mapping (SDK mocked)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import stripe

import factories
from billing_sync.errors import (
    AccessDenied,
    DependencyNotFound,
    ErrorKind,
    ProviderCallFailure,
    ProviderErrorKind,
    QueueUnavailable,
    SignatureInvalid,
    ValidationFailure,
    http_status_for,
    map_provider_error,
)
from billing_sync.provider.client import BillingProvider, StripeProvider, parse_model, to_plain
from billing_sync.provider.memory import InMemoryProvider
from billing_sync.provider.models import ProviderCustomer, ProviderInvoice, ProviderSubscription


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (stripe.CardError("declined", None, "card_declined"), ProviderErrorKind.CARD_DECLINED),
            (stripe.RateLimitError("slow down"), ProviderErrorKind.RATE_LIMIT),
            (stripe.AuthenticationError("bad key"), ProviderErrorKind.AUTH),
            (stripe.APIConnectionError("timeout"), ProviderErrorKind.NETWORK),
            (stripe.InvalidRequestError("bad param", "customer"), ProviderErrorKind.INVALID_REQUEST),
            (
                stripe.InvalidRequestError("No such invoice", "id", http_status=404),
                ProviderErrorKind.NOT_FOUND,
            ),
            (stripe.APIError("boom"), ProviderErrorKind.UNKNOWN),
        ],
    )
    def test_kinds(self, exc, kind):
        failure = map_provider_error(exc, "invoices.retrieve")
        assert failure.provider_kind == kind
        assert failure.operation == "invoices.retrieve"
        assert failure.kind == ErrorKind.PROVIDER_CALL_FAILURE
        assert failure.message.startswith("invoices.retrieve failed")

    @pytest.mark.parametrize(
        "error,status",
        [
            (SignatureInvalid("x"), 400),
            (DependencyNotFound("Invoice", "in_1"), 404),
            (AccessDenied("x"), 403),
            (ValidationFailure("x"), 422),
            (QueueUnavailable("x"), 503),
            (ProviderCallFailure("x", provider_kind=ProviderErrorKind.NETWORK), 502),
            (ProviderCallFailure("x", provider_kind=ProviderErrorKind.RATE_LIMIT), 429),
            (ProviderCallFailure("x", provider_kind=ProviderErrorKind.CARD_DECLINED), 402),
        ],
    )
    def test_http_status(self, error, status):
        assert http_status_for(error) == status

    def test_retryability(self):
        assert not SignatureInvalid("x").retryable
        assert not ValidationFailure("x").retryable
        assert ProviderCallFailure("x").retryable
        assert DependencyNotFound("Customer", "cus_1").retryable


class TestModels:
    def test_expanded_refs_collapse(self):
        data = factories.invoice()
        data["customer"] = {"id": "cus_1", "object": "customer"}
        assert ProviderInvoice.model_validate(data).customer == "cus_1"

    def test_invoice_tax(self):
        assert ProviderInvoice.model_validate(factories.invoice()).tax == 20
        assert ProviderInvoice.model_validate(factories.invoice(total_excluding_tax=None)).tax is None

    def test_customer_tenant(self):
        assert ProviderCustomer.model_validate(factories.customer()).tenant_id == factories.TENANT
        assert ProviderCustomer.model_validate(factories.customer(tenant_id=None)).tenant_id is None

    def test_parse_model_raises_validation_failure(self):
        with pytest.raises(ValidationFailure, match="subscriptions.retrieve"):
            parse_model(ProviderSubscription, {"id": "sub_1"}, "subscriptions.retrieve")

    def test_to_plain_uses_json_form(self):
        obj = MagicMock()
        obj.__str__.return_value = json.dumps({"id": "cus_1"})
        assert to_plain(obj) == {"id": "cus_1"}
        assert to_plain({"id": "x"}) == {"id": "x"}


class TestStripeProvider:
    @pytest.fixture()
    def client(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture()
    def provider(self, client) -> StripeProvider:
        return StripeProvider("sk_test", client=client)

    def test_satisfies_protocol(self, provider):
        assert isinstance(provider, BillingProvider)
        assert isinstance(InMemoryProvider(), BillingProvider)

    def test_retrieve_customer(self, provider, client):
        client.customers.retrieve.return_value = factories.customer()
        customer = provider.retrieve_customer("cus_1")
        client.customers.retrieve.assert_called_once_with("cus_1")
        assert customer.email == "billing@acme.test"

    def test_subscription_expands_prices(self, provider, client):
        data = factories.subscription()
        data["items"]["data"][0]["price"] = factories.price()
        client.subscriptions.retrieve.return_value = data
        sub = provider.retrieve_subscription("sub_1")
        client.subscriptions.retrieve.assert_called_once_with(
            "sub_1", params={"expand": ["items.data.price"]}
        )
        assert sub.first_item.price.product == "prod_1"

    def test_sdk_error_mapped(self, provider, client):
        client.invoices.retrieve.side_effect = stripe.RateLimitError("slow down")
        with pytest.raises(ProviderCallFailure) as exc_info:
            provider.retrieve_invoice("in_1")
        assert exc_info.value.provider_kind == ProviderErrorKind.RATE_LIMIT

    def test_report_meter_event(self, provider, client):
        client.v2.billing.meter_events.create.return_value = {
            "identifier": "req-1",
            "event_name": "api_calls",
            "timestamp": "2025-01-01T00:00:00+00:00",
        }
        ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
        event = provider.report_meter_event("api_calls", "cus_1", 3, timestamp=ts, identifier="req-1")
        params = client.v2.billing.meter_events.create.call_args.kwargs["params"]
        assert params["payload"] == {"stripe_customer_id": "cus_1", "value": "3"}
        assert params["identifier"] == "req-1"
        assert event.identifier == "req-1"

    def test_list_invoices(self, provider, client):
        client.invoices.list.return_value = {"data": [factories.invoice(), factories.invoice("in_2")]}
        assert [i.id for i in provider.list_invoices("cus_1")] == ["in_1", "in_2"]

    def test_portal_session(self, provider, client):
        client.billing_portal.sessions.create.return_value = {"url": "https://portal.test/s"}
        assert provider.create_portal_session("cus_1", "https://app.test") == "https://portal.test/s"


class TestInMemoryProvider:
    def test_not_found(self):
        with pytest.raises(ProviderCallFailure) as exc_info:
            InMemoryProvider().retrieve_customer("cus_x")
        assert exc_info.value.provider_kind == ProviderErrorKind.NOT_FOUND

    def test_injected_failures_are_consumed(self, seeded_provider):
        seeded_provider.fail("customers.retrieve", times=2)
        for _ in range(2):
            with pytest.raises(ProviderCallFailure):
                seeded_provider.retrieve_customer("cus_1")
        assert seeded_provider.retrieve_customer("cus_1").id == "cus_1"
        assert seeded_provider.calls["customers.retrieve"] == 3

    def test_list_subscriptions(self, seeded_provider):
        assert [s.id for s in seeded_provider.list_subscriptions("cus_1")] == ["sub_1"]
