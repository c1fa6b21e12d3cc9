"""PostgreSQL-backed graph store.

Nodes live in ``billing_graph_nodes`` (label + JSONB props) and typed edges
in ``billing_graph_edges``. A uniqueness constraint on ``(label, key)`` is a
partial UNIQUE expression index on ``props->>key``, so the loser of a
concurrent create race gets ``ConstraintViolation`` from the database, the
same way the in-process store reports it.

Datetimes are not JSON; they are stored tagged and restored on read.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from billing_sync.store.graph import ConstraintViolation, Node

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS billing_graph_nodes (
    id         TEXT PRIMARY KEY,
    label      TEXT NOT NULL,
    props      JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS billing_graph_nodes_label_idx ON billing_graph_nodes (label);
CREATE TABLE IF NOT EXISTS billing_graph_edges (
    source TEXT NOT NULL REFERENCES billing_graph_nodes (id),
    type   TEXT NOT NULL,
    target TEXT NOT NULL REFERENCES billing_graph_nodes (id),
    PRIMARY KEY (source, type, target)
);
CREATE INDEX IF NOT EXISTS billing_graph_edges_target_idx ON billing_graph_edges (target, type);
"""

_DATETIME_TAG = "$datetime"


def _encode(props: dict[str, Any]) -> dict[str, Any]:
    return {
        k: {_DATETIME_TAG: v.isoformat()} if isinstance(v, datetime) else v
        for k, v in props.items()
    }


def _decode(props: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for k, v in props.items():
        if isinstance(v, dict) and set(v) == {_DATETIME_TAG}:
            v = datetime.fromisoformat(v[_DATETIME_TAG])
        out[k] = v
    return out


def _row_to_node(row: dict[str, Any]) -> Node:
    return Node(id=row["id"], label=row["label"], props=_decode(row["props"] or {}))


def _index_name(label: str, key: str) -> str:
    return f"billing_graph_uq_{label.lower()}_{key.lower()}"


class PostgresGraphStore:
    """Graph store on PostgreSQL. One connection per call."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        # index name -> (label, key)
        self._constraints: dict[str, tuple[str, str]] = {}

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def ensure_schema(self) -> None:
        """Create the node and edge tables (idempotent)."""
        with self._get_conn() as conn:
            conn.execute(_SCHEMA)
        logger.info("Graph schema ensured")

    # Schema --------------------------------------------------------------

    def create_constraint(self, label: str, key: str) -> None:
        """Require *key* to be unique among *label* nodes (idempotent)."""
        name = _index_name(label, key)
        try:
            with self._get_conn() as conn:
                conn.execute(
                    sql.SQL(
                        "CREATE UNIQUE INDEX IF NOT EXISTS {} "
                        "ON billing_graph_nodes ((props->>{})) WHERE label = {}"
                    ).format(sql.Identifier(name), sql.Literal(key), sql.Literal(label))
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(label, key, None) from exc
        self._constraints[name] = (label, key)
        logger.debug("Constraint ensured: %s.%s unique", label, key)

    def _violation(
        self, exc: errors.UniqueViolation, label: str, props: dict[str, Any]
    ) -> ConstraintViolation:
        name = exc.diag.constraint_name or ""
        _, key = self._constraints.get(name, (label, name))
        return ConstraintViolation(label, key, props.get(key))

    # Nodes ---------------------------------------------------------------

    def create_node(self, label: str, props: dict[str, Any], node_id: str | None = None) -> Node:
        node_id = node_id or str(uuid.uuid4())
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    """INSERT INTO billing_graph_nodes (id, label, props)
                       VALUES (%s, %s, %s)
                       RETURNING *""",
                    (node_id, label, Jsonb(_encode(props))),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc, label, props) from exc
        return _row_to_node(row)

    def get_node(self, node_id: str) -> Node | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM billing_graph_nodes WHERE id = %s", (node_id,)
            ).fetchone()
        return _row_to_node(row) if row else None

    def find_node(self, label: str, **match: Any) -> Node | None:
        """First *label* node whose properties contain every item of *match*."""
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT * FROM billing_graph_nodes
                   WHERE label = %s AND props @> %s
                   ORDER BY id
                   LIMIT 1""",
                (label, Jsonb(_encode(match))),
            ).fetchone()
        return _row_to_node(row) if row else None

    def find_nodes(
        self,
        label: str,
        where: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[Node]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM billing_graph_nodes WHERE label = %s ORDER BY id", (label,)
            ).fetchall()
        nodes = [_row_to_node(r) for r in rows]
        return [n for n in nodes if where is None or where(n.props)]

    def update_node(self, node_id: str, props: dict[str, Any]) -> Node:
        """Merge *props* into a node (last write wins). ``None`` values are stored."""
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    """UPDATE billing_graph_nodes
                       SET props = props || %s, updated_at = NOW()
                       WHERE id = %s
                       RETURNING *""",
                    (Jsonb(_encode(props)), node_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            label = self._label_of(node_id)
            raise self._violation(exc, label, props) from exc
        if row is None:
            raise KeyError(f"Node not found: {node_id}")
        return _row_to_node(row)

    def _label_of(self, node_id: str) -> str:
        node = self.get_node(node_id)
        return node.label if node else ""

    def count(self, label: str) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM billing_graph_nodes WHERE label = %s", (label,)
            ).fetchone()
        return row["n"]

    # Relationships -------------------------------------------------------

    def relate(self, source: str, rel_type: str, target: str, *, exclusive: bool = False) -> None:
        """Create ``source -[rel_type]-> target`` (idempotent).

        With *exclusive*, any other outgoing *rel_type* edge of *source* is
        removed in the same transaction.
        """
        try:
            with self._get_conn() as conn, conn.transaction():
                if exclusive:
                    conn.execute(
                        """DELETE FROM billing_graph_edges
                           WHERE source = %s AND type = %s AND target <> %s""",
                        (source, rel_type, target),
                    )
                conn.execute(
                    """INSERT INTO billing_graph_edges (source, type, target)
                       VALUES (%s, %s, %s)
                       ON CONFLICT DO NOTHING""",
                    (source, rel_type, target),
                )
        except errors.ForeignKeyViolation as exc:
            raise KeyError(f"Cannot relate missing node(s): {source} -> {target}") from exc

    def unrelate(self, source: str, rel_type: str) -> None:
        """Drop every outgoing *rel_type* edge of *source*."""
        with self._get_conn() as conn:
            conn.execute(
                "DELETE FROM billing_graph_edges WHERE source = %s AND type = %s",
                (source, rel_type),
            )

    def related(self, node_id: str, rel_type: str, *, incoming: bool = False) -> list[Node]:
        """Nodes reached over *rel_type* edges from (or, with *incoming*, to) *node_id*."""
        if incoming:
            query = """SELECT n.* FROM billing_graph_edges e
                       JOIN billing_graph_nodes n ON n.id = e.source
                       WHERE e.target = %s AND e.type = %s
                       ORDER BY n.id"""
        else:
            query = """SELECT n.* FROM billing_graph_edges e
                       JOIN billing_graph_nodes n ON n.id = e.target
                       WHERE e.source = %s AND e.type = %s
                       ORDER BY n.id"""
        with self._get_conn() as conn:
            rows = conn.execute(query, (node_id, rel_type)).fetchall()
        return [_row_to_node(r) for r in rows]

    def related_one(self, node_id: str, rel_type: str) -> Node | None:
        nodes = self.related(node_id, rel_type)
        return nodes[0] if nodes else None
