"""Reconciliation handlers: fetch authoritative provider state, upsert into the store.

Every handler is a last-write-wins snapshot write keyed by external id, so
replaying an event (or a partially completed cascade) converges to the same
state.
"""
