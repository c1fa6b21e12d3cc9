"""Worker pool: N daemon threads draining one job type.

Each thread loops ``process_next``; the queue decides retry versus dead
letter. Errors raised by the queue itself (Redis down, etc.) are logged and
backed off so a flapping backend does not spin a core.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from billing_sync.jobs.base import JobHandler, JobOutcome

if TYPE_CHECKING:
    from billing_sync.jobs.base import BaseJobQueue

logger = logging.getLogger(__name__)

MAX_BACKOFF_S = 30.0


class WorkerPool:
    """Bounded-concurrency consumer of one queue."""

    def __init__(
        self,
        queue: BaseJobQueue,
        job_type: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        lock_seconds: float = 60.0,
        poll_interval: float = 0.5,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._queue = queue
        self._job_type = job_type
        self._handler = handler
        self._concurrency = concurrency
        self._lock_seconds = lock_seconds
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._counts_lock = threading.Lock()
        self.counts: dict[str, int] = {o.value: 0 for o in JobOutcome}

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                daemon=True,
                name=f"billing-sync-{self._job_type}-{i}",
            )
            for i in range(self._concurrency)
        ]
        for t in self._threads:
            t.start()
        logger.info(
            "Worker pool STARTED on %s (concurrency=%d, lock=%ss)",
            self._job_type, self._concurrency, self._lock_seconds,
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        logger.info("Worker pool STOPPED on %s (%s)", self._job_type, self.counts)

    def _run_loop(self) -> None:
        errors = 0
        while not self._stop.is_set():
            try:
                outcome = self._queue.process_next(
                    self._job_type, self._handler, self._lock_seconds
                )
                errors = 0
            except Exception as e:
                errors += 1
                logger.error(
                    "Worker loop error on %s (%d consecutive): %s",
                    self._job_type, errors, e, exc_info=True,
                )
                self._stop.wait(min(self._poll_interval * 2 ** errors, MAX_BACKOFF_S))
                continue

            if outcome is None:
                self._stop.wait(self._poll_interval)
                continue
            with self._counts_lock:
                self.counts[outcome.value] += 1
