"""Redis Streams job queue.

Layout per job type (``{prefix}:{job_type}``):

- stream ``...``            ready jobs, consumed through a consumer group
- sorted set ``...:delayed`` jobs waiting out a backoff, scored by due time
- list ``...:dead``          exhausted jobs, kept for operators

A reserved entry stays in the group's pending list until acknowledged.
If a worker dies, the entry is reclaimed with XAUTOCLAIM once it has been
idle longer than the lock duration, so delivery is at-least-once.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time

import redis

from billing_sync.jobs.base import BaseJobQueue, Job

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "billing-sync"
_KEY_PREFIX = "billing_sync:jobs"
_STREAM_MAXLEN = 10_000


class RedisJobQueue(BaseJobQueue):
    """Job queue on Redis Streams with a delayed-retry sorted set."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: redis.Redis | None = None,
        block_ms: int = 2000,
        key_prefix: str = _KEY_PREFIX,
    ) -> None:
        self._redis = client or redis.from_url(
            redis_url or "redis://localhost:6379/0", decode_responses=True
        )
        self._block_ms = block_ms
        self._prefix = key_prefix
        self._groups_ready: set[str] = set()

    # Keys ----------------------------------------------------------------

    def _stream(self, job_type: str) -> str:
        return f"{self._prefix}:{job_type}"

    def _delayed_key(self, job_type: str) -> str:
        return f"{self._prefix}:{job_type}:delayed"

    def _dead_key(self, job_type: str) -> str:
        return f"{self._prefix}:{job_type}:dead"

    @staticmethod
    def _consumer_name() -> str:
        return f"{socket.gethostname()}-{os.getpid()}-{threading.get_ident()}"

    def ensure_group(self, job_type: str) -> None:
        """Create the consumer group for *job_type* (idempotent)."""
        if job_type in self._groups_ready:
            return
        try:
            self._redis.xgroup_create(self._stream(job_type), CONSUMER_GROUP, id="0", mkstream=True)
            logger.info("Consumer group '%s' created on %s", CONSUMER_GROUP, self._stream(job_type))
        except redis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._groups_ready.add(job_type)

    # Backend hooks -------------------------------------------------------

    def _push(self, job: Job) -> None:
        self.ensure_group(job.job_type)
        self._redis.xadd(
            self._stream(job.job_type),
            {"job": json.dumps(job.to_dict(), default=str)},
            maxlen=_STREAM_MAXLEN,
            approximate=True,
        )

    def reserve(self, job_type: str, lock_seconds: float = 60.0) -> Job | None:
        self.ensure_group(job_type)
        self._promote_due(job_type)
        stream = self._stream(job_type)
        consumer = self._consumer_name()

        # Entries idle past the lock belonged to a worker that died mid-job.
        # Redis 6.2 replies [cursor, entries]; 7.x appends deleted ids.
        reply = self._redis.xautoclaim(
            stream,
            CONSUMER_GROUP,
            consumer,
            min_idle_time=int(lock_seconds * 1000),
            count=1,
        )
        claimed = [e for e in reply[1] if e and e[1]]
        if claimed:
            entry_id, fields = claimed[0]
            logger.warning("Reclaimed stale job entry %s on %s", entry_id, job_type)
            return self._decode(job_type, entry_id, fields)

        result = self._redis.xreadgroup(
            CONSUMER_GROUP,
            consumer,
            {stream: ">"},
            count=1,
            block=self._block_ms,
        )
        if not result:
            return None
        entry_id, fields = result[0][1][0]
        return self._decode(job_type, entry_id, fields)

    def complete(self, job: Job) -> None:
        self._ack(job)

    def reschedule(self, job: Job, delay: float) -> None:
        self._redis.zadd(
            self._delayed_key(job.job_type),
            {json.dumps(job.to_dict(), default=str): time.time() + delay},
        )
        self._ack(job)

    def dead_letter(self, job: Job) -> None:
        self._redis.rpush(self._dead_key(job.job_type), json.dumps(job.to_dict(), default=str))
        self._ack(job)

    # Helpers -------------------------------------------------------------

    def _ack(self, job: Job) -> None:
        if job.receipt is None:
            return
        stream = self._stream(job.job_type)
        self._redis.xack(stream, CONSUMER_GROUP, job.receipt)
        self._redis.xdel(stream, job.receipt)

    def _decode(self, job_type: str, entry_id: str, fields: dict[str, str]) -> Job | None:
        try:
            return Job.from_dict(json.loads(fields["job"]), receipt=entry_id)
        except (KeyError, ValueError, TypeError):
            logger.error("Dropping undecodable job entry %s on %s", entry_id, job_type, exc_info=True)
            self._redis.xack(self._stream(job_type), CONSUMER_GROUP, entry_id)
            return None

    def _promote_due(self, job_type: str) -> None:
        """Move delayed jobs whose backoff has elapsed back onto the stream."""
        key = self._delayed_key(job_type)
        due = self._redis.zrangebyscore(key, 0, time.time(), start=0, num=100)
        for raw in due:
            # ZREM wins for exactly one promoter when several workers race.
            if self._redis.zrem(key, raw):
                self._redis.xadd(
                    self._stream(job_type),
                    {"job": raw},
                    maxlen=_STREAM_MAXLEN,
                    approximate=True,
                )

    # Introspection -------------------------------------------------------

    def depth(self, job_type: str) -> int:
        return int(self._redis.xlen(self._stream(job_type))) + int(
            self._redis.zcard(self._delayed_key(job_type))
        )

    def dead_letters(self, job_type: str) -> list[Job]:
        return [
            Job.from_dict(json.loads(raw))
            for raw in self._redis.lrange(self._dead_key(job_type), 0, -1)
        ]
