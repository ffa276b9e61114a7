# =============================================================================
# Local Worker Pool: In-Process Transport for the Memory Job Backend
# =============================================================================
#
# With `job_backend=memory` the job records live in the API process, so the
# jobs must run there too. This pool stands in for the Celery workers:
#
#   - one ThreadPoolExecutor per queue, sized to the queue's concurrency
#   - delayed deliveries (backoff, rate limit) via threading.Timer
#   - the same JobQueue.run() decision logic the Celery tasks use
#
# A job that raises never takes its worker thread down; the queue has
# already recorded the failure.
# =============================================================================

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from freight_agent.models.jobs import JobRecord, JobType
from freight_agent.workers.queue import JobQueue, QueuePolicy

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobRecord], dict[str, Any]]


class LocalWorkerPool:
    def __init__(self, policies: dict[JobType, QueuePolicy]) -> None:
        self._executors = {
            job_type: ThreadPoolExecutor(
                max_workers=policy.concurrency,
                thread_name_prefix=policy.name,
            )
            for job_type, policy in policies.items()
        }
        self._queue: JobQueue | None = None
        self._handlers: dict[JobType, JobHandler] = {}
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def start(self, queue: JobQueue, handlers: dict[JobType, JobHandler]) -> None:
        self._queue = queue
        self._handlers = handlers

    def dispatch(self, record: JobRecord, countdown: float) -> None:
        """Dispatcher for JobQueue: run `record` after `countdown` seconds."""
        self._schedule(record.type, record.id, countdown)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
        for executor in self._executors.values():
            executor.shutdown(wait=wait)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _schedule(self, job_type: JobType, job_id: str, delay: float) -> None:
        with self._lock:
            if self._closed:
                logger.warning("Worker pool closed; job %s left waiting", job_id)
                return
            if delay <= 0:
                self._executors[job_type].submit(self._work, job_type, job_id)
                return

            timer = threading.Timer(delay, self._fire, args=(job_type, job_id))
            timer.daemon = True
            self._timers.add(timer)
            timer.start()

    def _fire(self, job_type: JobType, job_id: str) -> None:
        with self._lock:
            self._timers = {t for t in self._timers if t.is_alive()}
        self._schedule(job_type, job_id, 0)

    def _work(self, job_type: JobType, job_id: str) -> None:
        if self._queue is None:
            logger.error("Worker pool not started; dropping delivery of %s", job_id)
            return
        try:
            outcome = self._queue.run(job_id, self._handlers[job_type])
        except Exception:
            # Store unreachable or similar; the record keeps its last status
            logger.exception("Delivery of job %s failed", job_id)
            return

        if outcome.retry_in is not None:
            self._schedule(job_type, job_id, outcome.retry_in)
