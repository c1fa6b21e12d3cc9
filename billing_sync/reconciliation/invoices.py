"""Invoice reconciliation.

An invoice whose customer is not known locally is skipped, not failed: the
skip is recorded as an ``OrphanedSync`` for the sweep to retry, so an invoice
is not lost if the customer event never arrives.
"""

from __future__ import annotations

import logging

from billing_sync.errors import ValidationFailure
from billing_sync.events import InvoiceEvent
from billing_sync.notifications import NotificationDispatcher
from billing_sync.provider.client import BillingProvider
from billing_sync.provider.models import ProviderInvoice
from billing_sync.reconciliation.base import upsert
from billing_sync.reconciliation.subscriptions import SubscriptionReconciler
from billing_sync.store.models import Invoice, from_epoch
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)


class InvoiceReconciler:
    def __init__(
        self,
        provider: BillingProvider,
        repos: Repositories,
        subscriptions: SubscriptionReconciler,
        notifier: NotificationDispatcher | None = None,
    ):
        self._provider = provider
        self._repos = repos
        self._subscriptions = subscriptions
        self._notifier = notifier

    def handle(self, event: InvoiceEvent) -> None:
        if event.event_type == "invoice.paid" and event.subscription_id:
            # Payment usually moves the subscription (past_due -> active).
            # Synced first so the invoice can link to it.
            try:
                self._subscriptions.sync_subscription(event.subscription_id)
            except ValidationFailure as e:
                logger.warning(
                    "Invoice %s: subscription %s not synced: %s",
                    event.invoice_id,
                    event.subscription_id,
                    e,
                )

        invoice = self.sync_invoice(event.invoice_id)

        if event.payment_failed:
            customer_id = event.customer_id
            logger.warning("Payment failed for invoice %s (customer: %s)", event.invoice_id, customer_id)
            if customer_id and self._notifier is not None:
                self._notifier.notify_payment_failure(
                    external_customer_id=customer_id,
                    external_invoice_id=event.invoice_id,
                    amount=invoice.amount_due if invoice else None,
                    currency=invoice.currency if invoice else None,
                    error_message="Invoice payment failed",
                )

    def sync_invoice(self, external_invoice_id: str) -> Invoice | None:
        """Fetch and upsert one invoice. None when skipped."""
        remote = self._provider.retrieve_invoice(external_invoice_id)
        if not remote.customer:
            logger.warning("Invoice %s has no customer id; skipped", external_invoice_id)
            return None

        customer = self._repos.customers.find_by_external_id(remote.customer)
        if customer is None:
            logger.warning(
                "Invoice %s: customer %s unknown locally; skipped",
                external_invoice_id,
                remote.customer,
            )
            self._repos.orphans.record("invoice", external_invoice_id, "customer", remote.customer)
            return None

        subscription_id = None
        if remote.subscription_id:
            subscription = self._repos.subscriptions.find_by_external_id(remote.subscription_id)
            subscription_id = subscription.id if subscription else None

        fields = self._fields(remote)
        fields["billing_customer_id"] = customer.id
        fields["subscription_id"] = subscription_id
        invoice, created = upsert(self._repos.invoices, external_invoice_id, fields)
        self._repos.orphans.resolve("invoice", external_invoice_id)
        logger.info(
            "Invoice %s %s (status=%s)",
            external_invoice_id,
            "created" if created else "updated",
            invoice.status,
        )
        return invoice

    @staticmethod
    def _fields(remote: ProviderInvoice) -> dict:
        return {
            "number": remote.number,
            "status": remote.status,
            "currency": remote.currency,
            "amount_due": remote.amount_due,
            "amount_paid": remote.amount_paid,
            "amount_remaining": remote.amount_remaining,
            "subtotal": remote.subtotal,
            "total": remote.total,
            "tax": remote.tax,
            "period_start": from_epoch(remote.period_start),
            "period_end": from_epoch(remote.period_end),
            "due_date": from_epoch(remote.due_date),
            "paid_at": from_epoch(remote.status_transitions.paid_at),
            "attempt_count": remote.attempt_count,
            "attempted": remote.attempted,
            "hosted_invoice_url": remote.hosted_invoice_url,
            "pdf_url": remote.invoice_pdf,
        }
