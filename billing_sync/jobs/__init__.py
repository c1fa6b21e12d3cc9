"""Durable job queue: at-least-once delivery, bounded retries, worker pool.

Two backends share one contract (``jobs/base.py``): an in-memory queue for
tests and single-process runs, and a Redis Streams queue for production.
"""
