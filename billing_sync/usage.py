"""Usage reporting and local aggregation.

The provider is the source of truth for usage. ``report_usage`` submits the
meter event first and writes the local ``UsageRecord`` only after the
provider accepted it, keyed by the provider's event identifier. A provider
failure leaves no local record.

``get_usage_summary`` aggregates the local cache and is not authoritative for
invoicing; ``get_meter_event_summaries`` asks the provider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from billing_sync.errors import ValidationFailure
from billing_sync.provider.client import BillingProvider
from billing_sync.provider.models import Meter, MeterEventSummary
from billing_sync.queries import TenantQueries
from billing_sync.reconciliation.base import upsert
from billing_sync.store.models import UsageRecord, utcnow
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)


@dataclass
class UsageSummary:
    subscription_id: str
    start: datetime
    end: datetime
    total_usage: int = 0
    record_count: int = 0
    by_meter: dict[str, int] = field(default_factory=dict)


class UsageService:
    def __init__(self, provider: BillingProvider, repos: Repositories, queries: TenantQueries):
        self._provider = provider
        self._repos = repos
        self._queries = queries

    def report_usage(
        self,
        tenant_id: str,
        subscription_id: str,
        meter_id: str,
        meter_event_name: str,
        quantity: int,
        timestamp: datetime | None = None,
        identifier: str | None = None,
    ) -> UsageRecord:
        if quantity < 0:
            raise ValidationFailure("usage quantity must be >= 0")
        subscription = self._queries.get_subscription(tenant_id, subscription_id)
        customer = self._queries.customer_for(tenant_id)
        timestamp = timestamp or utcnow()

        meter_event = self._provider.report_meter_event(
            meter_event_name,
            customer.external_customer_id,
            quantity,
            timestamp=timestamp,
            identifier=identifier,
        )

        # Keyed by the provider identifier so a retried report does not double count.
        record, created = upsert(
            self._repos.usage,
            meter_event.identifier,
            {
                "subscription_id": subscription.id,
                "meter_id": meter_id,
                "meter_event_name": meter_event_name,
                "quantity": quantity,
                "timestamp": timestamp,
            },
        )
        logger.info(
            "Usage reported: subscription=%s meter=%s quantity=%d (%s)",
            subscription.external_subscription_id,
            meter_id,
            quantity,
            "new" if created else "replayed",
        )
        return record

    def list_usage_records(
        self,
        tenant_id: str,
        subscription_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageRecord]:
        subscription = self._queries.get_subscription(tenant_id, subscription_id)
        return self._repos.usage.in_window(subscription.id, start, end)[:limit]

    def get_usage_summary(
        self,
        tenant_id: str,
        subscription_id: str,
        start: datetime,
        end: datetime,
    ) -> UsageSummary:
        """Sum, count and per-meter totals of cached usage in ``[start, end)``."""
        subscription = self._queries.get_subscription(tenant_id, subscription_id)
        totals = self._repos.usage.summarize(subscription.id, start, end)
        return UsageSummary(
            subscription_id=subscription.id,
            start=start,
            end=end,
            total_usage=totals.total,
            record_count=totals.count,
            by_meter=totals.by_meter,
        )

    def get_meter_event_summaries(
        self,
        tenant_id: str,
        meter_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MeterEventSummary]:
        customer = self._queries.customer_for(tenant_id)
        return self._provider.get_meter_event_summaries(
            meter_id, customer.external_customer_id, start, end
        )

    def list_meters(self) -> list[Meter]:
        return self._provider.list_meters()
