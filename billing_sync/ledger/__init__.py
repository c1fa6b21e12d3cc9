"""Idempotency ledger: durable record of every inbound provider event.

One row per external event id (unique). Rows are created at ingress,
mutated only by the processor, and never deleted.
"""
