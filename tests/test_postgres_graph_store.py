"""Tests for the PostgreSQL graph store and durable engine wiring.

Uses BILLING_SYNC_TEST_DATABASE_URL and is skipped when it is unset or the
server is not reachable.
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

psycopg = pytest.importorskip("psycopg")

import factories  # noqa: E402
from billing_sync.app import build_engine  # noqa: E402
from billing_sync.config import Settings  # noqa: E402
from billing_sync.jobs.memory import InMemoryJobQueue  # noqa: E402
from billing_sync.ledger.postgres import PostgresLedger  # noqa: E402
from billing_sync.provider.memory import InMemoryProvider  # noqa: E402
from billing_sync.store.graph import ConstraintViolation, GraphBackend  # noqa: E402
from billing_sync.store.postgres import PostgresGraphStore  # noqa: E402

DATABASE_URL = os.environ.get("BILLING_SYNC_TEST_DATABASE_URL", "")


def _uid(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@pytest.fixture()
def graph() -> PostgresGraphStore:
    if not DATABASE_URL:
        pytest.skip("BILLING_SYNC_TEST_DATABASE_URL not set")
    try:
        store = PostgresGraphStore(DATABASE_URL)
        store.ensure_schema()
    except psycopg.OperationalError as e:
        pytest.skip(f"Postgres not available: {e}")
    return store


class TestEngineWiring:
    def test_database_url_selects_postgres_backends(self):
        settings = Settings(
            _env_file=None,
            webhook_secret=factories.SECRET,
            database_url="postgresql://billing@db.invalid/billing",
            queue_backend="memory",
        )
        with patch.object(PostgresLedger, "ensure_schema"), patch.object(
            PostgresGraphStore, "ensure_schema"
        ), patch.object(PostgresGraphStore, "create_constraint"):
            engine = build_engine(settings, provider=InMemoryProvider())
        assert isinstance(engine.ledger, PostgresLedger)
        assert isinstance(engine.repos.graph, PostgresGraphStore)
        assert isinstance(engine.repos.graph, GraphBackend)


class TestPostgresGraphStore:
    def test_create_find_update(self, graph):
        label = _uid("Thing")
        at = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)
        node = graph.create_node(label, {"key": "a", "n": 1, "at": at, "meta": {"k": "v"}})

        fetched = graph.get_node(node.id)
        assert fetched.props == {"key": "a", "n": 1, "at": at, "meta": {"k": "v"}}
        assert graph.find_node(label, key="a").id == node.id
        assert graph.find_node(label, key="missing") is None
        assert graph.count(label) == 1

        updated = graph.update_node(node.id, {"n": 2, "at": None})
        assert updated.props["n"] == 2
        assert updated.props["at"] is None
        assert updated.props["key"] == "a"

    def test_update_unknown_node(self, graph):
        with pytest.raises(KeyError):
            graph.update_node(str(uuid.uuid4()), {"n": 1})

    def test_unique_constraint(self, graph):
        label = _uid("Thing")
        graph.create_constraint(label, "key")
        graph.create_constraint(label, "key")
        graph.create_node(label, {"key": "a"})
        with pytest.raises(ConstraintViolation) as exc_info:
            graph.create_node(label, {"key": "a"})
        assert exc_info.value.key == "key"
        assert exc_info.value.value == "a"

        other = graph.create_node(label, {"key": "b"})
        with pytest.raises(ConstraintViolation):
            graph.update_node(other.id, {"key": "a"})
        # Nulls never collide.
        graph.create_node(label, {"key": None})
        graph.create_node(label, {"key": None})

    def test_relationships(self, graph):
        label = _uid("Node")
        s = graph.create_node(label, {})
        p1 = graph.create_node(label, {})
        p2 = graph.create_node(label, {})
        graph.relate(s.id, "FOR_PRICE", p1.id, exclusive=True)
        graph.relate(s.id, "FOR_PRICE", p1.id, exclusive=True)
        graph.relate(s.id, "FOR_PRICE", p2.id, exclusive=True)
        assert [n.id for n in graph.related(s.id, "FOR_PRICE")] == [p2.id]
        assert [n.id for n in graph.related(p2.id, "FOR_PRICE", incoming=True)] == [s.id]

        graph.unrelate(s.id, "FOR_PRICE")
        assert graph.related_one(s.id, "FOR_PRICE") is None

        with pytest.raises(KeyError):
            graph.relate(s.id, "X", str(uuid.uuid4()))


class TestDurableRestart:
    def test_second_engine_sees_first_engines_state(self, graph, clock):
        settings = Settings(
            _env_file=None,
            webhook_secret=factories.SECRET,
            database_url=DATABASE_URL,
            queue_backend="memory",
        )
        customer_id = _uid("cus")
        invoice_id = _uid("in")
        tenant = _uid("tenant")

        customer = factories.customer(customer_id, tenant_id=tenant)
        invoice = factories.invoice(invoice_id, customer_id=customer_id, subscription_id=None)
        provider = InMemoryProvider()
        provider.put("customer", customer)
        provider.put("invoice", invoice)
        created = factories.event("customer.created", customer, _uid("evt"))
        paid = factories.event("invoice.paid", invoice, _uid("evt"))

        first = build_engine(settings, queue=InMemoryJobQueue(clock=clock), provider=provider)
        for e in (created, paid):
            first.receiver.receive(*factories.signed(e))
        first.queue.drain(settings.webhook_job_type, first.processor, sleep=clock.advance)

        second = build_engine(settings, queue=InMemoryJobQueue(clock=clock), provider=provider)
        body, header = factories.signed(paid)
        assert second.receiver.receive(body, header).duplicate
        stored = second.repos.invoices.find_by_external_id(invoice_id)
        assert stored is not None
        assert stored.status == "paid"
        assert [i.id for i in second.queries.list_invoices(tenant)] == [stored.id]
