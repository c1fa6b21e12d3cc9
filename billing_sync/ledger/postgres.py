"""PostgreSQL-backed ledger.

Duplicate deliveries are resolved by the UNIQUE constraint on
external_event_id: ``INSERT ... ON CONFLICT DO NOTHING`` returns no row for
the loser of a concurrent insert race. State transitions are guarded in SQL
(``WHERE status = ANY(...)``) so two workers cannot move a row along an
edge the state machine forbids.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from billing_sync.ledger.models import (
    IllegalTransition,
    LedgerEntry,
    LedgerStatus,
    sources_for,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS billing_ledger (
    id                TEXT PRIMARY KEY,
    external_event_id TEXT NOT NULL UNIQUE,
    event_type        TEXT NOT NULL,
    livemode          BOOLEAN NOT NULL DEFAULT FALSE,
    api_version       TEXT,
    payload           JSONB NOT NULL DEFAULT '{}'::jsonb,
    status            TEXT NOT NULL DEFAULT 'pending',
    retry_count       INTEGER NOT NULL DEFAULT 0,
    error             TEXT,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at      TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS billing_ledger_status_idx ON billing_ledger (status, created_at);
"""


def _row_to_entry(row: dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        external_event_id=row["external_event_id"],
        event_type=row["event_type"],
        livemode=row["livemode"],
        api_version=row["api_version"],
        payload=row["payload"] or {},
        status=LedgerStatus(row["status"]),
        retry_count=row["retry_count"],
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        processed_at=row["processed_at"],
    )


class PostgresLedger:
    """Ledger store on a ``billing_ledger`` table."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def ensure_schema(self) -> None:
        """Create the ledger table (idempotent)."""
        with self._get_conn() as conn:
            conn.execute(_SCHEMA)
        logger.info("Ledger schema ensured")

    def insert(
        self,
        external_event_id: str,
        event_type: str,
        *,
        livemode: bool = False,
        api_version: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> LedgerEntry | None:
        with self._get_conn() as conn:
            row = conn.execute(
                """INSERT INTO billing_ledger
                       (id, external_event_id, event_type, livemode, api_version, payload, status)
                   VALUES (%s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (external_event_id) DO NOTHING
                   RETURNING *""",
                (
                    str(uuid.uuid4()),
                    external_event_id,
                    event_type,
                    livemode,
                    api_version,
                    Jsonb(payload or {}),
                    LedgerStatus.PENDING.value,
                ),
            ).fetchone()
        return _row_to_entry(row) if row else None

    def find_by_id(self, entry_id: str) -> LedgerEntry | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM billing_ledger WHERE id = %s", (entry_id,)
            ).fetchone()
        return _row_to_entry(row) if row else None

    def find_by_external_id(self, external_event_id: str) -> LedgerEntry | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM billing_ledger WHERE external_event_id = %s",
                (external_event_id,),
            ).fetchone()
        return _row_to_entry(row) if row else None

    def update_status(
        self,
        entry_id: str,
        status: LedgerStatus,
        *,
        processed_at: datetime | None = None,
        error: str | None = None,
        increment_retry: bool = False,
    ) -> LedgerEntry:
        sources = [s.value for s in sources_for(status)]
        with self._get_conn() as conn:
            row = conn.execute(
                """UPDATE billing_ledger
                   SET status = %s,
                       updated_at = NOW(),
                       processed_at = COALESCE(%s, processed_at),
                       error = COALESCE(%s, error),
                       retry_count = retry_count + %s
                   WHERE id = %s AND status = ANY(%s)
                   RETURNING *""",
                (
                    status.value,
                    processed_at,
                    error,
                    1 if increment_retry else 0,
                    entry_id,
                    sources,
                ),
            ).fetchone()
            if row is None:
                current = conn.execute(
                    "SELECT status FROM billing_ledger WHERE id = %s", (entry_id,)
                ).fetchone()
        if row is None:
            if current is None:
                raise KeyError(f"Ledger entry not found: {entry_id}")
            raise IllegalTransition(entry_id, current["status"], status)
        return _row_to_entry(row)

    def touch(self, entry_id: str) -> None:
        with self._get_conn() as conn:
            cur = conn.execute(
                "UPDATE billing_ledger SET updated_at = NOW() WHERE id = %s", (entry_id,)
            )
            if cur.rowcount == 0:
                raise KeyError(f"Ledger entry not found: {entry_id}")

    def list_failed(self, limit: int = 100) -> list[LedgerEntry]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM billing_ledger
                   WHERE status = 'failed'
                   ORDER BY created_at
                   LIMIT %s""",
                (limit,),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def find_stalled_pending(self, older_than: datetime, limit: int = 100) -> list[LedgerEntry]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM billing_ledger
                   WHERE status = 'pending' AND updated_at < %s
                   ORDER BY created_at
                   LIMIT %s""",
                (older_than, limit),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]
