"""Shared fixtures for the billing-sync test suite."""

from __future__ import annotations

import pytest

import factories
from billing_sync.app import BillingEngine, build_engine
from billing_sync.config import Settings
from billing_sync.jobs.memory import InMemoryJobQueue
from billing_sync.ledger.store import InMemoryLedger
from billing_sync.provider.memory import InMemoryProvider
from billing_sync.webhooks.receiver import Accepted


class FakeClock:
    """Monotonic clock advanced by hand (doubles as the queue's sleep)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None, webhook_secret=factories.SECRET, database_url="", queue_backend="memory")


@pytest.fixture()
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture()
def seeded_provider(provider: InMemoryProvider) -> InMemoryProvider:
    """Provider holding one customer with a product, price, subscription and paid invoice."""
    provider.put("customer", factories.customer())
    provider.put("product", factories.product())
    provider.put("price", factories.price())
    provider.put("subscription", factories.subscription())
    provider.put("invoice", factories.invoice())
    return provider


@pytest.fixture()
def engine(settings: Settings, provider: InMemoryProvider, clock: FakeClock) -> BillingEngine:
    return build_engine(
        settings,
        ledger=InMemoryLedger(),
        queue=InMemoryJobQueue(clock=clock),
        provider=provider,
    )


@pytest.fixture()
def deliver(engine: BillingEngine):
    """Sign and hand one event to the receiver."""

    def _deliver(evt: dict) -> Accepted:
        body, header = factories.signed(evt)
        return engine.receiver.receive(body, header)

    return _deliver


@pytest.fixture()
def run_webhooks(engine: BillingEngine, clock: FakeClock):
    """Drain the webhook queue, fast-forwarding through retry backoff."""

    def _run():
        return engine.queue.drain(engine.settings.webhook_job_type, engine.processor, sleep=clock.advance)

    return _run
