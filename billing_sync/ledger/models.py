"""Ledger data models and the entry state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class LedgerStatus(str, Enum):
    """Processing lifecycle of a ledger entry."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# processing -> processing covers a job redelivered after its lock expired.
# failed -> pending re-arms a row when the provider redelivers a failed event.
TRANSITIONS: dict[LedgerStatus, frozenset[LedgerStatus]] = {
    LedgerStatus.PENDING: frozenset({LedgerStatus.PROCESSING, LedgerStatus.FAILED}),
    LedgerStatus.PROCESSING: frozenset(
        {LedgerStatus.PROCESSING, LedgerStatus.COMPLETED, LedgerStatus.FAILED}
    ),
    LedgerStatus.FAILED: frozenset({LedgerStatus.PROCESSING, LedgerStatus.PENDING}),
    LedgerStatus.COMPLETED: frozenset(),
}


class IllegalTransition(ValueError):
    """Raised when a ledger entry is moved along an edge the state machine forbids."""

    def __init__(self, entry_id: str, current: LedgerStatus | str, target: LedgerStatus) -> None:
        super().__init__(f"Ledger entry {entry_id}: {current} -> {target} not allowed")
        self.entry_id = entry_id
        self.current = current
        self.target = target


def sources_for(target: LedgerStatus) -> list[LedgerStatus]:
    """States from which *target* may be entered."""
    return [src for src, targets in TRANSITIONS.items() if target in targets]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LedgerEntry:
    """One inbound provider event and its processing outcome."""
    id: str
    external_event_id: str
    event_type: str
    livemode: bool = False
    api_version: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    status: LedgerStatus = LedgerStatus.PENDING
    retry_count: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None

    @property
    def is_failed(self) -> bool:
        return self.status == LedgerStatus.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.status == LedgerStatus.COMPLETED
