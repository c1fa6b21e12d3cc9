"""Labelled property graph store.

Nodes carry one label and a property dict; relationships are typed, directed
edges between node ids. Uniqueness constraints on ``(label, property)`` are
enforced on create and update, which is what makes reconciliation upserts
safe under concurrent workers: the loser of a create race gets
``ConstraintViolation`` instead of a duplicate node.

Nodes are never deleted. Deactivation is a property update.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class ConstraintViolation(Exception):
    """A write would duplicate a value under a uniqueness constraint."""

    def __init__(self, label: str, key: str, value: Any) -> None:
        super().__init__(f"{label}.{key} = {value!r} already exists")
        self.label = label
        self.key = key
        self.value = value


@dataclass
class Node:
    id: str
    label: str
    props: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Relationship:
    source: str
    type: str
    target: str


@runtime_checkable
class GraphBackend(Protocol):
    """Storage the repositories write through (in-process or PostgreSQL)."""

    def create_constraint(self, label: str, key: str) -> None: ...

    def create_node(self, label: str, props: dict[str, Any], node_id: str | None = None) -> Node: ...

    def get_node(self, node_id: str) -> Node | None: ...

    def find_node(self, label: str, **match: Any) -> Node | None: ...

    def find_nodes(
        self, label: str, where: Callable[[dict[str, Any]], bool] | None = None
    ) -> list[Node]: ...

    def update_node(self, node_id: str, props: dict[str, Any]) -> Node: ...

    def count(self, label: str) -> int: ...

    def relate(self, source: str, rel_type: str, target: str, *, exclusive: bool = False) -> None: ...

    def unrelate(self, source: str, rel_type: str) -> None: ...

    def related(self, node_id: str, rel_type: str, *, incoming: bool = False) -> list[Node]: ...

    def related_one(self, node_id: str, rel_type: str) -> Node | None: ...


class GraphStore:
    """Thread-safe in-process graph with unique constraints."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._nodes: dict[str, Node] = {}
        self._by_label: dict[str, set[str]] = {}
        self._constraints: dict[str, set[str]] = {}
        self._unique_index: dict[tuple[str, str, Any], str] = {}
        self._out: dict[str, set[Relationship]] = {}
        self._in: dict[str, set[Relationship]] = {}

    # Schema --------------------------------------------------------------

    def create_constraint(self, label: str, key: str) -> None:
        """Require *key* to be unique among *label* nodes (idempotent)."""
        with self._lock:
            keys = self._constraints.setdefault(label, set())
            if key in keys:
                return
            keys.add(key)
            for node_id in self._by_label.get(label, ()):
                value = self._nodes[node_id].props.get(key)
                if value is None:
                    continue
                index_key = (label, key, value)
                if index_key in self._unique_index:
                    keys.discard(key)
                    raise ConstraintViolation(label, key, value)
                self._unique_index[index_key] = node_id
        logger.debug("Constraint ensured: %s.%s unique", label, key)

    # Nodes ---------------------------------------------------------------

    def create_node(self, label: str, props: dict[str, Any], node_id: str | None = None) -> Node:
        node = Node(id=node_id or str(uuid.uuid4()), label=label, props=dict(props))
        with self._lock:
            self._check_unique(label, node.id, node.props)
            self._nodes[node.id] = node
            self._by_label.setdefault(label, set()).add(node.id)
            self._index(node)
            return copy.deepcopy(node)

    def get_node(self, node_id: str) -> Node | None:
        with self._lock:
            node = self._nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def find_node(self, label: str, **match: Any) -> Node | None:
        """First *label* node whose properties equal every item of *match*."""
        with self._lock:
            if len(match) == 1:
                ((key, value),) = match.items()
                node_id = self._unique_index.get((label, key, value))
                if node_id is not None:
                    return copy.deepcopy(self._nodes[node_id])
            for node in self._iter_label(label):
                if all(node.props.get(k) == v for k, v in match.items()):
                    return copy.deepcopy(node)
        return None

    def find_nodes(
        self,
        label: str,
        where: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[Node]:
        with self._lock:
            return [
                copy.deepcopy(node)
                for node in self._iter_label(label)
                if where is None or where(node.props)
            ]

    def update_node(self, node_id: str, props: dict[str, Any]) -> Node:
        """Set *props* on a node (last write wins). ``None`` values are stored."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise KeyError(f"Node not found: {node_id}")
            merged = {**node.props, **props}
            self._check_unique(node.label, node_id, merged)
            self._unindex(node)
            node.props = merged
            self._index(node)
            return copy.deepcopy(node)

    def count(self, label: str) -> int:
        with self._lock:
            return len(self._by_label.get(label, ()))

    # Relationships -------------------------------------------------------

    def relate(self, source: str, rel_type: str, target: str, *, exclusive: bool = False) -> None:
        """Create ``source -[rel_type]-> target`` (idempotent).

        With *exclusive*, any other outgoing *rel_type* edge of *source* is
        removed first, so the node points at exactly one target.
        """
        with self._lock:
            if source not in self._nodes or target not in self._nodes:
                raise KeyError(f"Cannot relate missing node(s): {source} -> {target}")
            if exclusive:
                for rel in [r for r in self._out.get(source, ()) if r.type == rel_type]:
                    self._out[source].discard(rel)
                    self._in[rel.target].discard(rel)
            rel = Relationship(source, rel_type, target)
            self._out.setdefault(source, set()).add(rel)
            self._in.setdefault(target, set()).add(rel)

    def unrelate(self, source: str, rel_type: str) -> None:
        """Drop every outgoing *rel_type* edge of *source*."""
        with self._lock:
            for rel in [r for r in self._out.get(source, ()) if r.type == rel_type]:
                self._out[source].discard(rel)
                self._in[rel.target].discard(rel)

    def related(self, node_id: str, rel_type: str, *, incoming: bool = False) -> list[Node]:
        """Nodes reached over *rel_type* edges from (or, with *incoming*, to) *node_id*."""
        with self._lock:
            if incoming:
                ids = [r.source for r in self._in.get(node_id, ()) if r.type == rel_type]
            else:
                ids = [r.target for r in self._out.get(node_id, ()) if r.type == rel_type]
            return [copy.deepcopy(self._nodes[i]) for i in sorted(ids)]

    def related_one(self, node_id: str, rel_type: str) -> Node | None:
        nodes = self.related(node_id, rel_type)
        return nodes[0] if nodes else None

    # Internals -----------------------------------------------------------

    def _iter_label(self, label: str):
        for node_id in sorted(self._by_label.get(label, ())):
            yield self._nodes[node_id]

    def _check_unique(self, label: str, node_id: str, props: dict[str, Any]) -> None:
        for key in self._constraints.get(label, ()):
            value = props.get(key)
            if value is None:
                continue
            owner = self._unique_index.get((label, key, value))
            if owner is not None and owner != node_id:
                raise ConstraintViolation(label, key, value)

    def _index(self, node: Node) -> None:
        for key in self._constraints.get(node.label, ()):
            value = node.props.get(key)
            if value is not None:
                self._unique_index[(node.label, key, value)] = node.id

    def _unindex(self, node: Node) -> None:
        for key in self._constraints.get(node.label, ()):
            value = node.props.get(key)
            if value is not None:
                self._unique_index.pop((node.label, key, value), None)
