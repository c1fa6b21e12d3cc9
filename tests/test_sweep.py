"""Tests for the reconciliation sweep."""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import patch

import factories
from billing_sync.jobs.base import JobOutcome
from billing_sync.ledger.models import LedgerStatus, utcnow


class TestOrphans:
    def test_orphaned_invoice_healed_once_customer_has_tenant(self, engine, provider):
        provider.put("customer", factories.customer(tenant_id=None))
        provider.put("invoice", factories.invoice(subscription_id=None))
        assert engine.invoices.sync_invoice("in_1") is None
        assert engine.repos.invoices.count() == 0

        # Tenant metadata added at the provider; no further event arrives.
        provider.put("customer", factories.customer())
        report = engine.sweep.run()

        assert report.orphans_resolved >= 1
        assert engine.repos.invoices.count() == 1
        assert engine.repos.orphans.unresolved() == []

    def test_still_unresolvable_stays_open(self, engine, provider):
        provider.put("customer", factories.customer(tenant_id=None))
        provider.put("invoice", factories.invoice(subscription_id=None))
        engine.invoices.sync_invoice("in_1")

        report = engine.sweep.run()

        assert report.orphans_resolved == 0
        assert {o.key for o in engine.repos.orphans.unresolved()} >= {"invoice:in_1"}

    def test_provider_error_reported_not_raised(self, engine, provider):
        engine.repos.orphans.record("subscription", "sub_gone", "customer", "cus_gone")
        report = engine.sweep.run()
        assert report.orphans_retried == 1
        assert len(report.errors) == 1
        assert "subscription:sub_gone" in report.errors[0]


class TestStalledLedger:
    def test_stalled_pending_row_requeued(self, engine, seeded_provider, run_webhooks):
        evt = factories.event("invoice.paid", factories.invoice())
        # Row recorded but the process died before enqueue.
        engine.ledger.insert("evt_1", "invoice.paid", payload=evt)
        stale = utcnow() + timedelta(seconds=engine.settings.stale_pending_seconds + 1)

        with patch("billing_sync.sweep.utcnow", return_value=stale):
            report = engine.sweep.run()

        assert report.ledger_requeued == 1
        assert run_webhooks() == [JobOutcome.COMPLETED]
        assert engine.ledger.find_by_external_id("evt_1").status == LedgerStatus.COMPLETED
        assert engine.repos.invoices.count() == 1

    def test_fresh_pending_row_left_alone(self, engine):
        engine.ledger.insert("evt_1", "invoice.paid", payload={})
        assert engine.sweep.run().ledger_requeued == 0

    def test_requeue_failure_reported(self, engine):
        engine.ledger.insert("evt_1", "invoice.paid", payload={})
        stale = utcnow() + timedelta(hours=1)
        with patch("billing_sync.sweep.utcnow", return_value=stale), patch.object(
            engine.queue, "enqueue", side_effect=ConnectionError("down")
        ):
            report = engine.sweep.run()
        assert report.ledger_requeued == 0
        assert report.errors == ["ledger:evt_1: down"]

    def test_malformed_row_failed_and_later_rows_requeued(self, engine, seeded_provider):
        engine.ledger.insert("evt_bad", "invoice.paid", payload={"id": "evt_bad", "data": ["in_1"]})
        good = factories.event("invoice.paid", factories.invoice(), "evt_good")
        engine.ledger.insert("evt_good", "invoice.paid", payload=good)
        stale = utcnow() + timedelta(hours=1)

        with patch("billing_sync.sweep.utcnow", return_value=stale):
            report = engine.sweep.run()

        assert report.ledger_requeued == 1
        assert len(report.errors) == 1
        assert report.errors[0].startswith("ledger:evt_bad:")
        assert engine.ledger.find_by_external_id("evt_bad").status == LedgerStatus.FAILED
        assert engine.queue.depth(engine.settings.webhook_job_type) == 1


class TestResyncCustomer:
    def test_pulls_listed_subscriptions_and_invoices(self, engine, seeded_provider):
        seeded_provider.put("invoice", factories.invoice("in_2", status="open"))
        report = engine.sweep.resync_customer("cus_1")

        assert report.subscriptions == 1
        assert report.invoices == 2
        assert report.errors == []
        assert engine.repos.subscriptions.find_by_external_id("sub_1") is not None
        assert engine.repos.invoices.find_by_external_id("in_2").status == "open"
        assert seeded_provider.calls["subscriptions.list"] == 1
        assert seeded_provider.calls["invoices.list"] == 1

    def test_item_failure_reported(self, engine, seeded_provider):
        seeded_provider.put("subscription", {**factories.subscription(), "items": {"data": []}})
        report = engine.sweep.resync_customer("cus_1")
        assert report.subscriptions == 0
        assert report.invoices == 1
        assert [e.split(":")[0] for e in report.errors] == ["subscription"]

    def test_late_customer_heals_every_skipped_invoice(self, engine, provider):
        provider.put("customer", factories.customer(tenant_id=None))
        provider.put("invoice", factories.invoice(subscription_id=None))
        provider.put("invoice", factories.invoice("in_2", subscription_id=None))
        engine.invoices.sync_invoice("in_1")
        assert engine.repos.orphans.find_by_external_id("invoice:in_1") is not None

        provider.put("customer", factories.customer())
        engine.sweep.run()

        # in_2 was never attempted but is listed for the customer.
        assert engine.repos.invoices.find_by_external_id("in_2") is not None
        assert engine.repos.orphans.unresolved() == []

class TestPeriodic:
    def test_run_periodically_stops(self, engine):
        stop = threading.Event()
        runs = []

        def fake_run():
            runs.append(1)
            stop.set()

        with patch.object(engine.sweep, "run", side_effect=fake_run):
            engine.sweep.run_periodically(0.01, stop)
        assert runs == [1]
