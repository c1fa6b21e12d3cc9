"""Job model, retry policy and the processing contract shared by queue backends.

A backend only has to implement reservation, acknowledgement, rescheduling and
dead-lettering; ``BaseJobQueue.process_next`` owns the retry decision:

- handler returns  -> job acknowledged (COMPLETED)
- handler raises   -> attempts_made += 1; rescheduled after
                      ``policy.delay_for(attempts_made)`` while attempts remain
                      (RETRY_SCHEDULED), otherwise dead-lettered (EXHAUSTED)
- non-retryable error (``exc.retryable is False``) -> dead-lettered at once
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from billing_sync.jobs.worker import WorkerPool

logger = logging.getLogger(__name__)

JobHandler = Callable[["Job"], None]


class JobOutcome(str, Enum):
    """Result of one processing attempt."""
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"


@dataclass
class RetryPolicy:
    """Bounded retry with exponential (or fixed) backoff."""
    attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_type: str = "exponential"  # exponential | fixed

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the attempt following *attempts_made* failures."""
        if self.backoff_type == "fixed":
            return self.backoff_seconds
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


@dataclass
class Job:
    """A unit of work on a named queue."""
    job_type: str
    payload: dict[str, Any]
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts_made: int = 0
    created_at: float = field(default_factory=time.time)
    last_error: str | None = None
    receipt: str | None = None  # backend handle for ack (stream entry id)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("receipt")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], receipt: str | None = None) -> Job:
        return cls(
            job_type=data["job_type"],
            payload=data.get("payload", {}),
            policy=RetryPolicy(**data.get("policy", {})),
            id=data["id"],
            attempts_made=data.get("attempts_made", 0),
            created_at=data.get("created_at", time.time()),
            last_error=data.get("last_error"),
            receipt=receipt,
        )


class BaseJobQueue:
    """Processing loop common to every queue backend."""

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        policy: RetryPolicy | None = None,
    ) -> Job:
        job = Job(job_type=job_type, payload=payload, policy=policy or RetryPolicy())
        self._push(job)
        logger.debug("Job %s enqueued on %s", job.id[:8], job_type)
        return job

    # Backend hooks -------------------------------------------------------

    def _push(self, job: Job) -> None:
        raise NotImplementedError

    def reserve(self, job_type: str, lock_seconds: float = 60.0) -> Job | None:
        raise NotImplementedError

    def complete(self, job: Job) -> None:
        raise NotImplementedError

    def reschedule(self, job: Job, delay: float) -> None:
        raise NotImplementedError

    def dead_letter(self, job: Job) -> None:
        raise NotImplementedError

    # Processing ----------------------------------------------------------

    def process_next(
        self,
        job_type: str,
        handler: JobHandler,
        lock_seconds: float = 60.0,
    ) -> JobOutcome | None:
        """Reserve one due job and run *handler* on it. ``None`` when idle."""
        job = self.reserve(job_type, lock_seconds)
        if job is None:
            return None

        try:
            handler(job)
        except Exception as exc:
            return self._settle_failure(job, exc)

        self.complete(job)
        return JobOutcome.COMPLETED

    def _settle_failure(self, job: Job, exc: Exception) -> JobOutcome:
        job.attempts_made += 1
        job.last_error = str(exc) or type(exc).__name__
        retryable = getattr(exc, "retryable", True)

        if retryable and job.attempts_made < job.policy.attempts:
            delay = job.policy.delay_for(job.attempts_made)
            logger.warning(
                "Job %s on %s failed (attempt %d/%d), retrying in %.1fs: %s",
                job.id[:8],
                job.job_type,
                job.attempts_made,
                job.policy.attempts,
                delay,
                job.last_error,
            )
            self.reschedule(job, delay)
            return JobOutcome.RETRY_SCHEDULED

        logger.error(
            "Job %s on %s exhausted after %d attempt(s)%s: %s",
            job.id[:8],
            job.job_type,
            job.attempts_made,
            "" if retryable else " (non-retryable)",
            job.last_error,
        )
        self.dead_letter(job)
        return JobOutcome.EXHAUSTED

    def consume(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        lock_seconds: float = 60.0,
    ) -> WorkerPool:
        """Start a worker pool draining *job_type*. Caller owns ``stop()``."""
        from billing_sync.jobs.worker import WorkerPool

        pool = WorkerPool(
            self,
            job_type,
            handler,
            concurrency=concurrency,
            lock_seconds=lock_seconds,
        )
        pool.start()
        return pool
