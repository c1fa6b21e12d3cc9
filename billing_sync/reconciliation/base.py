"""Upsert primitive shared by the reconciliation handlers."""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from billing_sync.store.graph import ConstraintViolation
from billing_sync.store.models import Entity
from billing_sync.store.repositories import Repository

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


def upsert(repo: Repository[E], external_id: str, fields: dict[str, Any]) -> tuple[E, bool]:
    """Write a provider snapshot onto the entity keyed by *external_id*.

    Last write wins: every field in *fields* overwrites the stored value.
    Returns ``(entity, created)``. Replaying the same snapshot converges to
    the same state.
    """
    existing = repo.find_by_external_id(external_id)
    if existing is not None:
        return repo.update(existing.id, **fields), False

    item = repo.entity(**{repo.entity.EXTERNAL_KEY: external_id}, **fields)
    try:
        return repo.create(item), True
    except ConstraintViolation:
        # Another worker created it between our lookup and create.
        existing = repo.find_by_external_id(external_id)
        if existing is None:
            raise
        logger.debug("%s %s created concurrently; updating", repo.entity.LABEL, external_id)
        return repo.update(existing.id, **fields), False
