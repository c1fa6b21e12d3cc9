"""Webhook ingress: verify, deduplicate, record, enqueue, return.

No provider calls or store writes happen here; all reconciliation is deferred
to the processor so the provider gets an answer within its timeout.

Deduplication happens at ingress, not only at processing: an event whose
ledger row exists and is not ``failed`` is acknowledged without a new job.
A ``failed`` row is re-armed to ``pending`` and enqueued again. Two
concurrent first deliveries are resolved by the ledger's unique constraint;
the loser sees ``insert`` return None and answers as a duplicate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from billing_sync.errors import QueueUnavailable, ValidationFailure
from billing_sync.events import event_object
from billing_sync.jobs.base import BaseJobQueue, RetryPolicy
from billing_sync.ledger.models import IllegalTransition, LedgerEntry, LedgerStatus
from billing_sync.ledger.store import LedgerStore
from billing_sync.webhooks.verification import DEFAULT_TOLERANCE_SECONDS, verify_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    """Outcome of an accepted delivery (new, re-armed, or duplicate)."""

    external_event_id: str
    event_type: str
    duplicate: bool = False
    ledger_entry_id: str | None = None
    job_id: str | None = None


class WebhookReceiver:
    def __init__(
        self,
        ledger: LedgerStore,
        queue: BaseJobQueue,
        *,
        secret: str,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        job_type: str = "billing-webhook",
        policy: RetryPolicy | None = None,
    ):
        self._ledger = ledger
        self._queue = queue
        self._secret = secret
        self._tolerance = tolerance
        self._job_type = job_type
        self._policy = policy or RetryPolicy()

    def receive(self, raw_body: bytes, signature: str | None) -> Accepted:
        """Accept one delivery.

        Raises:
            SignatureInvalid: bad or missing signature. Nothing is written.
            ValidationFailure: signed body is not a provider event.
            QueueUnavailable: the job could not be enqueued; the ledger row
                is marked failed so a redelivery re-arms it.
        """
        verify_signature(raw_body, signature, self._secret, tolerance=self._tolerance)
        event = self._decode(raw_body)
        event_id: str = event["id"]
        event_type: str = event["type"]

        existing = self._ledger.find_by_external_id(event_id)
        if existing is not None and not existing.is_failed:
            return self._duplicate(existing)

        if existing is not None:
            try:
                entry = self._ledger.update_status(existing.id, LedgerStatus.PENDING)
            except IllegalTransition:
                # Another delivery re-armed it first.
                return self._duplicate(existing)
            logger.info("Re-arming failed event %s (%s)", event_id, event_type)
        else:
            entry = self._ledger.insert(
                event_id,
                event_type,
                livemode=bool(event.get("livemode", False)),
                api_version=event.get("api_version"),
                payload=event,
            )
            if entry is None:
                winner = self._ledger.find_by_external_id(event_id)
                return self._duplicate(winner) if winner else Accepted(event_id, event_type, duplicate=True)

        job_id = self._enqueue(entry, event)
        return Accepted(
            external_event_id=event_id,
            event_type=event_type,
            ledger_entry_id=entry.id,
            job_id=job_id,
        )

    @staticmethod
    def _decode(raw_body: bytes) -> dict[str, Any]:
        try:
            event = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationFailure("webhook body is not valid JSON") from None
        if not isinstance(event, dict):
            raise ValidationFailure("webhook body is not a JSON object")
        if not isinstance(event.get("id"), str) or not event["id"]:
            raise ValidationFailure("webhook event has no id")
        if not isinstance(event.get("type"), str) or not event["type"]:
            raise ValidationFailure("webhook event has no type")
        event_object(event)
        return event

    @staticmethod
    def _duplicate(entry: LedgerEntry) -> Accepted:
        return Accepted(
            external_event_id=entry.external_event_id,
            event_type=entry.event_type,
            duplicate=True,
            ledger_entry_id=entry.id,
        )

    def _enqueue(self, entry: LedgerEntry, event: dict[str, Any]) -> str:
        payload = {
            "ledger_entry_id": entry.id,
            "external_event_id": entry.external_event_id,
            "event_type": entry.event_type,
            "object": event_object(event),
        }
        try:
            job = self._queue.enqueue(self._job_type, payload, self._policy)
        except Exception as exc:
            logger.exception("Failed to enqueue webhook %s (%s)", entry.external_event_id, entry.event_type)
            self._ledger.update_status(
                entry.id, LedgerStatus.FAILED, error=f"enqueue failed: {exc}"
            )
            raise QueueUnavailable(f"could not enqueue event {entry.external_event_id}") from exc
        return job.id
