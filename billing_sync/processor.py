"""Webhook job processor.

For each dequeued job:

1. ledger entry -> processing
2. parse the event into its category and dispatch through the handler registry
3. success -> completed (processed_at = now)
   failure -> failed (retry_count + 1, error = message), exception re-raised so
   the queue applies backoff and the attempt cap

A job for an entry that is already completed (a redelivery after a worker
crashed between ledger write and ack) is acknowledged without dispatch.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from billing_sync.errors import ValidationFailure
from billing_sync.events import (
    EVENT_CATEGORIES,
    BillingEvent,
    CustomerEvent,
    InvoiceEvent,
    PaymentIntentEvent,
    PriceEvent,
    ProductEvent,
    SubscriptionEvent,
    UnhandledEvent,
    event_object,
    parse_event,
)
from billing_sync.jobs.base import Job
from billing_sync.ledger.models import LedgerStatus, utcnow
from billing_sync.ledger.store import LedgerStore
from billing_sync.reconciliation.catalog import CatalogReconciler
from billing_sync.reconciliation.customers import CustomerReconciler
from billing_sync.reconciliation.invoices import InvoiceReconciler
from billing_sync.reconciliation.payments import PaymentIntentReconciler
from billing_sync.reconciliation.subscriptions import SubscriptionReconciler

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


def _log_unhandled(event: UnhandledEvent) -> None:
    logger.info("No reconciliation for event type %s; marking completed", event.event_type)


def build_registry(
    customers: CustomerReconciler,
    catalog: CatalogReconciler,
    subscriptions: SubscriptionReconciler,
    invoices: InvoiceReconciler,
    payments: PaymentIntentReconciler,
) -> dict[type, EventHandler]:
    """Handler per event category."""
    return {
        SubscriptionEvent: subscriptions.handle,
        InvoiceEvent: invoices.handle,
        CustomerEvent: customers.handle,
        PaymentIntentEvent: payments.handle,
        ProductEvent: catalog.handle_product,
        PriceEvent: catalog.handle_price,
        UnhandledEvent: _log_unhandled,
    }


class WebhookProcessor:
    """Queue handler for webhook jobs."""

    def __init__(self, ledger: LedgerStore, registry: dict[type, EventHandler]):
        missing = [c.__name__ for c in EVENT_CATEGORIES if c not in registry]
        if missing:
            raise ValueError(f"No handler registered for: {', '.join(missing)}")
        self._ledger = ledger
        self._registry = registry

    def __call__(self, job: Job) -> None:
        self.process(job.payload)

    def process(self, payload: dict[str, Any]) -> None:
        entry_id = payload.get("ledger_entry_id")
        if not entry_id:
            raise ValidationFailure("Webhook job has no ledger_entry_id")
        entry = self._ledger.find_by_id(entry_id)
        if entry is None:
            raise ValidationFailure(f"Ledger entry not found: {entry_id}")

        if entry.status == LedgerStatus.COMPLETED:
            logger.info(
                "Webhook %s (ID: %s) already completed; skipping",
                entry.event_type,
                entry.external_event_id,
            )
            return

        self._ledger.update_status(entry.id, LedgerStatus.PROCESSING)
        logger.debug("Processing webhook %s (ID: %s)", entry.event_type, entry.external_event_id)

        try:
            obj = payload.get("object")
            if obj is None:
                obj = event_object(entry.payload)
            event = parse_event(entry.event_type, obj)
            self.dispatch(event)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error(
                "Failed to process webhook %s (ID: %s): %s",
                entry.event_type,
                entry.external_event_id,
                message,
            )
            self._ledger.update_status(
                entry.id, LedgerStatus.FAILED, error=message, increment_retry=True
            )
            raise

        self._ledger.update_status(entry.id, LedgerStatus.COMPLETED, processed_at=utcnow())
        logger.debug("Completed webhook %s (ID: %s)", entry.event_type, entry.external_event_id)

    def dispatch(self, event: BillingEvent) -> None:
        self._registry[type(event)](event)
