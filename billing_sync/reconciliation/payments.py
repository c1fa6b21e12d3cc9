"""Payment intent events.

Payment intents are not stored. A success refreshes the invoice it paid; a
failure notifies the customer.
"""

from __future__ import annotations

import logging

from billing_sync.events import PaymentIntentEvent
from billing_sync.notifications import NotificationDispatcher
from billing_sync.reconciliation.invoices import InvoiceReconciler

logger = logging.getLogger(__name__)


class PaymentIntentReconciler:
    def __init__(self, invoices: InvoiceReconciler, notifier: NotificationDispatcher | None = None):
        self._invoices = invoices
        self._notifier = notifier

    def handle(self, event: PaymentIntentEvent) -> None:
        if event.payment_failed:
            logger.warning(
                "Payment intent %s failed: %s", event.payment_intent_id, event.failure_message
            )
            if event.customer_id and self._notifier is not None:
                self._notifier.notify_payment_failure(
                    external_customer_id=event.customer_id,
                    external_invoice_id=event.invoice_id,
                    payment_intent_id=event.payment_intent_id,
                    amount=event.amount,
                    currency=event.currency,
                    error_message=event.failure_message,
                )
            return

        if event.invoice_id:
            self._invoices.sync_invoice(event.invoice_id)
