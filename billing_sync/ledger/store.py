"""Ledger store protocol and the in-memory implementation.

The unique constraint on ``external_event_id`` is the only duplicate-delivery
guard in the system: ``insert`` returns ``None`` when another delivery of the
same event won the race, and the caller re-reads the winning row.

``InMemoryLedger`` serves tests and single-process deployments;
``PostgresLedger`` (ledger/postgres.py) is the durable backend.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from billing_sync.ledger.models import (
    TRANSITIONS,
    IllegalTransition,
    LedgerEntry,
    LedgerStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class LedgerStore(Protocol):
    """Persistence interface for ledger entries."""

    def insert(
        self,
        external_event_id: str,
        event_type: str,
        *,
        livemode: bool = False,
        api_version: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> LedgerEntry | None:
        """Insert a pending entry. Returns ``None`` if the external id already exists."""
        ...

    def find_by_id(self, entry_id: str) -> LedgerEntry | None:
        ...

    def find_by_external_id(self, external_event_id: str) -> LedgerEntry | None:
        ...

    def update_status(
        self,
        entry_id: str,
        status: LedgerStatus,
        *,
        processed_at: datetime | None = None,
        error: str | None = None,
        increment_retry: bool = False,
    ) -> LedgerEntry:
        """Move an entry along the state machine. Raises ``IllegalTransition``."""
        ...

    def touch(self, entry_id: str) -> None:
        """Bump ``updated_at`` without changing status."""
        ...

    def list_failed(self, limit: int = 100) -> list[LedgerEntry]:
        ...

    def find_stalled_pending(self, older_than: datetime, limit: int = 100) -> list[LedgerEntry]:
        ...


class InMemoryLedger:
    """Thread-safe in-memory ledger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, LedgerEntry] = {}
        self._by_external_id: dict[str, str] = {}

    def insert(
        self,
        external_event_id: str,
        event_type: str,
        *,
        livemode: bool = False,
        api_version: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> LedgerEntry | None:
        with self._lock:
            if external_event_id in self._by_external_id:
                return None
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                external_event_id=external_event_id,
                event_type=event_type,
                livemode=livemode,
                api_version=api_version,
                payload=copy.deepcopy(payload or {}),
            )
            self._entries[entry.id] = entry
            self._by_external_id[external_event_id] = entry.id
            return copy.deepcopy(entry)

    def find_by_id(self, entry_id: str) -> LedgerEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def find_by_external_id(self, external_event_id: str) -> LedgerEntry | None:
        with self._lock:
            entry_id = self._by_external_id.get(external_event_id)
            if entry_id is None:
                return None
            return copy.deepcopy(self._entries[entry_id])

    def update_status(
        self,
        entry_id: str,
        status: LedgerStatus,
        *,
        processed_at: datetime | None = None,
        error: str | None = None,
        increment_retry: bool = False,
    ) -> LedgerEntry:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise KeyError(f"Ledger entry not found: {entry_id}")
            if status not in TRANSITIONS[entry.status]:
                raise IllegalTransition(entry_id, entry.status, status)

            entry.status = status
            entry.updated_at = utcnow()
            if processed_at is not None:
                entry.processed_at = processed_at
            if error is not None:
                entry.error = error
            if increment_retry:
                entry.retry_count += 1
            return copy.deepcopy(entry)

    def touch(self, entry_id: str) -> None:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise KeyError(f"Ledger entry not found: {entry_id}")
            entry.updated_at = utcnow()

    def list_failed(self, limit: int = 100) -> list[LedgerEntry]:
        with self._lock:
            failed = [e for e in self._entries.values() if e.status == LedgerStatus.FAILED]
        failed.sort(key=lambda e: e.created_at)
        return [copy.deepcopy(e) for e in failed[:limit]]

    def find_stalled_pending(self, older_than: datetime, limit: int = 100) -> list[LedgerEntry]:
        with self._lock:
            stalled = [
                e for e in self._entries.values()
                if e.status == LedgerStatus.PENDING and e.updated_at < older_than
            ]
        stalled.sort(key=lambda e: e.created_at)
        return [copy.deepcopy(e) for e in stalled[:limit]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
