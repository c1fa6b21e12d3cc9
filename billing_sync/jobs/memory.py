"""In-memory job queue.

Same delivery semantics as the Redis backend: reserved jobs are invisible
until acknowledged or until their lock expires, failed jobs wait out their
backoff in a delay heap, exhausted jobs land in a dead-letter list.

The clock is injectable so retry timing can be driven deterministically.
"""

from __future__ import annotations

import copy
import heapq
import itertools
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable

from billing_sync.jobs.base import BaseJobQueue, Job, JobHandler, JobOutcome

logger = logging.getLogger(__name__)


class InMemoryJobQueue(BaseJobQueue):
    """Thread-safe in-process queue."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._ready: dict[str, deque[Job]] = defaultdict(deque)
        self._delayed: dict[str, list[tuple[float, int, Job]]] = defaultdict(list)
        self._inflight: dict[str, tuple[Job, float]] = {}
        self._dead: dict[str, list[Job]] = defaultdict(list)

    def _push(self, job: Job) -> None:
        with self._lock:
            self._ready[job.job_type].append(job)

    def reserve(self, job_type: str, lock_seconds: float = 60.0) -> Job | None:
        now = self._clock()
        with self._lock:
            self._promote_due(job_type, now)
            self._reclaim_expired(job_type, now)
            ready = self._ready[job_type]
            if not ready:
                return None
            job = ready.popleft()
            self._inflight[job.id] = (job, now + lock_seconds)
            return copy.deepcopy(job)

    def complete(self, job: Job) -> None:
        with self._lock:
            self._inflight.pop(job.id, None)

    def reschedule(self, job: Job, delay: float) -> None:
        with self._lock:
            self._inflight.pop(job.id, None)
            heapq.heappush(
                self._delayed[job.job_type],
                (self._clock() + delay, next(self._seq), job),
            )

    def dead_letter(self, job: Job) -> None:
        with self._lock:
            self._inflight.pop(job.id, None)
            self._dead[job.job_type].append(job)

    def _promote_due(self, job_type: str, now: float) -> None:
        delayed = self._delayed[job_type]
        while delayed and delayed[0][0] <= now:
            _, _, job = heapq.heappop(delayed)
            self._ready[job_type].append(job)

    def _reclaim_expired(self, job_type: str, now: float) -> None:
        expired = [
            job_id for job_id, (job, lock_until) in self._inflight.items()
            if job.job_type == job_type and lock_until <= now
        ]
        for job_id in expired:
            job, _ = self._inflight.pop(job_id)
            logger.warning("Reclaiming job %s on %s (lock expired)", job_id[:8], job_type)
            self._ready[job_type].append(job)

    # Introspection -------------------------------------------------------

    def next_due_in(self, job_type: str) -> float | None:
        """Seconds until the earliest delayed job is due, or None."""
        with self._lock:
            delayed = self._delayed[job_type]
            if not delayed:
                return None
            return max(delayed[0][0] - self._clock(), 0.0)

    def depth(self, job_type: str) -> int:
        with self._lock:
            return len(self._ready[job_type]) + len(self._delayed[job_type])

    def dead_letters(self, job_type: str) -> list[Job]:
        with self._lock:
            return list(self._dead[job_type])

    def drain(
        self,
        job_type: str,
        handler: JobHandler,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[JobOutcome]:
        """Process until no ready or delayed work remains.

        Waits out backoff delays with *sleep*, so a fake clock makes retries
        instantaneous in tests.
        """
        outcomes: list[JobOutcome] = []
        while True:
            outcome = self.process_next(job_type, handler)
            if outcome is not None:
                outcomes.append(outcome)
                continue
            wait = self.next_due_in(job_type)
            if wait is None:
                return outcomes
            sleep(wait)
