"""Periodic reconciliation sweep.

Heals the two ways state can be left behind without a further provider event:

- orphaned syncs: an invoice, subscription or customer skipped because an
  owning entity was unknown locally. A missing customer is resynced in full
  (its listed subscriptions and invoices too), then the skipped entity again.
- stalled ledger rows: rows left ``pending`` longer than the threshold,
  typically because the process died between ledger insert and enqueue.
  They are enqueued again.

Every step is an idempotent upsert, so running the sweep concurrently with
workers or twice in a row is harmless.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from billing_sync.errors import BillingSyncError, ValidationFailure
from billing_sync.events import event_object
from billing_sync.jobs.base import BaseJobQueue, RetryPolicy
from billing_sync.ledger.models import LedgerStatus, utcnow
from billing_sync.ledger.store import LedgerStore
from billing_sync.provider.client import BillingProvider
from billing_sync.reconciliation.customers import CustomerReconciler
from billing_sync.reconciliation.invoices import InvoiceReconciler
from billing_sync.reconciliation.subscriptions import SubscriptionReconciler
from billing_sync.store.models import OrphanedSync
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    orphans_retried: int = 0
    orphans_resolved: int = 0
    ledger_requeued: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ResyncReport:
    customer_id: str
    subscriptions: int = 0
    invoices: int = 0
    errors: list[str] = field(default_factory=list)


class ReconciliationSweep:
    def __init__(
        self,
        ledger: LedgerStore,
        queue: BaseJobQueue,
        repos: Repositories,
        customers: CustomerReconciler,
        subscriptions: SubscriptionReconciler,
        invoices: InvoiceReconciler,
        provider: BillingProvider,
        *,
        job_type: str = "billing-webhook",
        policy: RetryPolicy | None = None,
        stale_pending_seconds: int = 900,
    ):
        self._ledger = ledger
        self._queue = queue
        self._repos = repos
        self._job_type = job_type
        self._policy = policy or RetryPolicy()
        self._stale = timedelta(seconds=stale_pending_seconds)
        self._customers = customers
        self._subscriptions = subscriptions
        self._invoices = invoices
        self._provider = provider
        self._syncers: dict[str, Callable[[str], object]] = {
            "customer": customers.sync_customer,
            "subscription": subscriptions.sync_subscription,
            "invoice": invoices.sync_invoice,
        }

    def run(self) -> SweepReport:
        report = SweepReport()
        self._retry_orphans(report)
        self._requeue_stalled(report)
        logger.info(
            "Sweep done: orphans retried=%d resolved=%d, ledger requeued=%d, errors=%d",
            report.orphans_retried,
            report.orphans_resolved,
            report.ledger_requeued,
            len(report.errors),
        )
        return report

    def _retry_orphans(self, report: SweepReport) -> None:
        for orphan in self._repos.orphans.unresolved():
            report.orphans_retried += 1
            try:
                if self._retry(orphan):
                    report.orphans_resolved += 1
            except BillingSyncError as e:
                logger.warning("Sweep: %s %s still failing: %s", orphan.entity, orphan.entity_external_id, e)
                report.errors.append(f"{orphan.key}: {e}")

    def _retry(self, orphan: OrphanedSync) -> bool:
        syncer = self._syncers.get(orphan.entity)
        if syncer is None:
            logger.warning("Sweep: no syncer for orphaned %s", orphan.entity)
            return False
        if orphan.missing_entity == "customer" and orphan.missing_external_id:
            if self._repos.customers.find_by_external_id(orphan.missing_external_id) is None:
                self.resync_customer(orphan.missing_external_id)
        return syncer(orphan.entity_external_id) is not None

    def resync_customer(self, external_customer_id: str) -> ResyncReport:
        """Pull a customer and every subscription and invoice the provider lists for it.

        Used when a customer arrives late: anything skipped while it was
        unknown is picked up without waiting for further events.
        """
        report = ResyncReport(customer_id=external_customer_id)
        self._customers.sync_customer(external_customer_id)
        for remote in self._provider.list_subscriptions(external_customer_id):
            try:
                if self._subscriptions.sync_subscription(remote.id) is not None:
                    report.subscriptions += 1
            except BillingSyncError as e:
                logger.warning("Resync: subscription %s failed: %s", remote.id, e)
                report.errors.append(f"subscription:{remote.id}: {e}")
        for remote in self._provider.list_invoices(external_customer_id):
            try:
                if self._invoices.sync_invoice(remote.id) is not None:
                    report.invoices += 1
            except BillingSyncError as e:
                logger.warning("Resync: invoice %s failed: %s", remote.id, e)
                report.errors.append(f"invoice:{remote.id}: {e}")
        logger.info(
            "Resynced customer %s: %d subscription(s), %d invoice(s)",
            external_customer_id,
            report.subscriptions,
            report.invoices,
        )
        return report

    def _requeue_stalled(self, report: SweepReport) -> None:
        cutoff = utcnow() - self._stale
        for entry in self._ledger.find_stalled_pending(cutoff):
            try:
                payload = {
                    "ledger_entry_id": entry.id,
                    "external_event_id": entry.external_event_id,
                    "event_type": entry.event_type,
                    "object": event_object(entry.payload),
                }
                self._queue.enqueue(self._job_type, payload, self._policy)
            except ValidationFailure as e:
                # No job can process a malformed envelope.
                logger.error("Sweep: stalled event %s is malformed: %s", entry.external_event_id, e)
                self._ledger.update_status(entry.id, LedgerStatus.FAILED, error=str(e))
                report.errors.append(f"ledger:{entry.external_event_id}: {e}")
                continue
            except Exception as e:
                logger.error("Sweep: could not requeue %s: %s", entry.external_event_id, e)
                report.errors.append(f"ledger:{entry.external_event_id}: {e}")
                continue
            # Touch the row so the next sweep does not enqueue it again.
            self._ledger.touch(entry.id)
            report.ledger_requeued += 1
            logger.info("Sweep: requeued stalled event %s (%s)", entry.external_event_id, entry.event_type)

    def run_periodically(self, interval: float, stop: threading.Event) -> None:
        """Run until *stop* is set, sleeping *interval* seconds between sweeps."""
        while not stop.is_set():
            try:
                self.run()
            except Exception as e:
                logger.error("Sweep loop error: %s", e, exc_info=True)
            stop.wait(interval)
