"""Tests for the webhook job processor and end-to-end queue processing."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

import factories
from billing_sync.errors import ProviderCallFailure, ValidationFailure
from billing_sync.events import InvoiceEvent, UnhandledEvent
from billing_sync.app import build_engine
from billing_sync.jobs.base import JobOutcome
from billing_sync.jobs.memory import InMemoryJobQueue
from billing_sync.ledger.models import LedgerStatus
from billing_sync.ledger.store import InMemoryLedger
from billing_sync.processor import WebhookProcessor
from billing_sync.store.graph import GraphStore


class TestRegistry:
    def test_missing_category_refuses_to_start(self, engine):
        registry = {InvoiceEvent: MagicMock()}
        with pytest.raises(ValueError, match="No handler registered"):
            WebhookProcessor(engine.ledger, registry)


class TestProcess:
    def test_invoice_paid_end_to_end(self, engine, seeded_provider, deliver, run_webhooks):
        deliver(factories.event("invoice.paid", factories.invoice()))
        assert run_webhooks() == [JobOutcome.COMPLETED]

        entry = engine.ledger.find_by_external_id("evt_1")
        assert entry.status == LedgerStatus.COMPLETED
        assert entry.processed_at is not None
        invoices = engine.repos.invoices.list()
        assert len(invoices) == 1
        assert invoices[0].status == "paid"
        assert invoices[0].tax == 20

    def test_redelivery_after_completion_adds_nothing(self, engine, seeded_provider, deliver, run_webhooks):
        evt = factories.event("invoice.paid", factories.invoice())
        deliver(evt)
        run_webhooks()
        again = deliver(evt)
        assert again.duplicate
        assert run_webhooks() == []
        assert engine.repos.invoices.count() == 1

    def test_completed_entry_is_skipped(self, engine, seeded_provider, deliver):
        accepted = deliver(factories.event("invoice.paid", factories.invoice()))
        engine.processor.process({"ledger_entry_id": accepted.ledger_entry_id})
        calls = dict(seeded_provider.calls)
        engine.processor.process({"ledger_entry_id": accepted.ledger_entry_id})
        assert dict(seeded_provider.calls) == calls

    def test_object_falls_back_to_ledger_payload(self, engine, seeded_provider, deliver):
        accepted = deliver(factories.event("customer.created", factories.customer()))
        engine.processor.process({"ledger_entry_id": accepted.ledger_entry_id})
        assert engine.repos.customers.find_by_external_id("cus_1") is not None

    def test_malformed_stored_envelope_fails_entry(self, engine):
        entry = engine.ledger.insert("evt_bad", "invoice.paid", payload={"data": ["in_1"]})
        with pytest.raises(ValidationFailure):
            engine.processor.process({"ledger_entry_id": entry.id})
        assert engine.ledger.find_by_id(entry.id).status == LedgerStatus.FAILED

    def test_unhandled_type_completes_without_side_effects(self, engine, provider, deliver, run_webhooks):
        deliver(factories.event("charge.refunded", {"id": "ch_1"}))
        assert run_webhooks() == [JobOutcome.COMPLETED]
        assert engine.ledger.find_by_external_id("evt_1").status == LedgerStatus.COMPLETED
        assert sum(provider.calls.values()) == 0

    def test_persistent_failure_runs_three_attempts(self, engine, seeded_provider, deliver, run_webhooks, clock):
        seeded_provider.fail("invoices.retrieve", times=10)
        seeded_provider.fail("subscriptions.retrieve", times=10)
        deliver(factories.event("invoice.paid", factories.invoice()))

        outcomes = run_webhooks()

        assert outcomes == [
            JobOutcome.RETRY_SCHEDULED,
            JobOutcome.RETRY_SCHEDULED,
            JobOutcome.EXHAUSTED,
        ]
        assert clock.sleeps == [1.0, 2.0]
        entry = engine.ledger.find_by_external_id("evt_1")
        assert entry.status == LedgerStatus.FAILED
        assert entry.retry_count == 3
        assert "network" in entry.error
        assert engine.ledger.list_failed()[0].id == entry.id

    def test_transient_failure_recovers(self, engine, seeded_provider, deliver, run_webhooks):
        seeded_provider.fail("invoices.retrieve")
        deliver(factories.event("invoice.paid", factories.invoice()))
        assert run_webhooks() == [JobOutcome.RETRY_SCHEDULED, JobOutcome.COMPLETED]
        entry = engine.ledger.find_by_external_id("evt_1")
        assert entry.status == LedgerStatus.COMPLETED
        assert entry.retry_count == 1

    def test_malformed_object_is_not_retried(self, engine, deliver, run_webhooks):
        deliver(factories.event("invoice.paid", {"customer": "cus_1"}))
        assert run_webhooks() == [JobOutcome.EXHAUSTED]
        entry = engine.ledger.find_by_external_id("evt_1")
        assert entry.status == LedgerStatus.FAILED
        assert entry.retry_count == 1

    def test_failure_is_reraised(self, engine, seeded_provider, deliver):
        seeded_provider.fail("customers.retrieve")
        accepted = deliver(factories.event("customer.updated", factories.customer()))
        with pytest.raises(ProviderCallFailure):
            engine.processor.process({"ledger_entry_id": accepted.ledger_entry_id})

    def test_job_without_ledger_id(self, engine):
        with pytest.raises(ValidationFailure):
            engine.processor.process({})
        with pytest.raises(ValidationFailure):
            engine.processor.process({"ledger_entry_id": "missing"})

    def test_dispatch_routes_by_category(self, engine):
        handler = MagicMock()
        registry = {c: MagicMock() for c in engine.processor._registry}
        registry[UnhandledEvent] = handler
        processor = WebhookProcessor(engine.ledger, registry)
        processor.dispatch(UnhandledEvent("charge.refunded"))
        handler.assert_called_once_with(UnhandledEvent("charge.refunded"))

    def test_payment_failure_queues_notification(self, engine, seeded_provider, deliver, run_webhooks):
        seeded_provider.put("invoice", factories.invoice(status="open"))
        deliver(factories.event("customer.created", factories.customer(), "evt_c"))
        deliver(factories.event("invoice.payment_failed", factories.invoice(status="open"), "evt_f"))
        run_webhooks()

        job = engine.queue.reserve(engine.settings.notification_job_type)
        assert job is not None
        assert job.payload["template"] == "payment-failure"
        recipient = job.payload["recipient"]
        assert recipient["to"] == "billing@acme.test"
        assert recipient["amount"] == 1.2
        assert recipient["external_invoice_id"] == "in_1"


class TestRestart:
    """A second engine on the same ledger and store sees the first one's work."""

    def test_state_survives_engine_rebuild(self, settings, seeded_provider, clock):
        ledger = InMemoryLedger()
        graph = GraphStore()
        evt = factories.event("invoice.paid", factories.invoice())
        body, header = factories.signed(evt)

        first = build_engine(
            settings, ledger=ledger, graph=graph, queue=InMemoryJobQueue(clock=clock), provider=seeded_provider
        )
        first.receiver.receive(body, header)
        first.queue.drain(settings.webhook_job_type, first.processor, sleep=clock.advance)
        assert first.repos.invoices.count() == 1

        second = build_engine(
            settings, ledger=ledger, graph=graph, queue=InMemoryJobQueue(clock=clock), provider=seeded_provider
        )
        assert second.receiver.receive(body, header).duplicate
        assert second.repos.invoices.count() == 1
        assert second.repos.customers.find_by_external_id("cus_1") is not None
        assert second.queries.list_invoices(factories.TENANT)[0].status == "paid"
