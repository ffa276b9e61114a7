# =============================================================================
# Job Queue: Job Records, Retry Policy, Rate Limits, Retention
# =============================================================================
#
# Two named queues (document-ingestion, invoice-ingestion), each with its
# own QueuePolicy: worker concurrency, a sliding-window rate limit, a
# RetryPolicy and how many finished jobs to retain.
#
# A transport (Celery tasks, or the local worker pool) moves job ids around;
# this module owns the bookkeeping:
#
#   enqueue()  → JobRecord(WAITING) saved, then dispatched to the queue
#   run()      → rate limit check, then one process() attempt
#   process()  → WAITING → ACTIVE → COMPLETED
#                                 → WAITING + retry delay   (retryable failure)
#                                 → FAILED                  (ceiling reached,
#                                                            or non-retryable)
#
# `attempts` is incremented when an attempt starts and an attempt past
# `max_attempts` is refused, so a record can never show more attempts than
# its policy allows, whatever the transport redelivers. A record redelivered
# while still ACTIVE on its final attempt lost its worker mid-run; it is
# failed on that delivery rather than left ACTIVE.
#
# Jobs are never killed for running long. `stalled()` lists jobs that have
# been ACTIVE longer than the policy's threshold, for /health to report.
#
# ARCHITECTURE:
#   JobStore (Protocol)
#   ├── InMemoryJobStore: dict + per-queue deques (tests, local pool)
#   └── RedisJobStore   : job:<id> JSON + jobs:<queue>:<status> lists,
#                         jobs:<queue>:active sorted set scored by start time
# =============================================================================

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from redis import Redis

from freight_agent.config import Settings
from freight_agent.errors import JobNotFoundError, RetryLimitExceededError
from freight_agent.models.jobs import (
    DocumentJobPayload,
    InvoiceJobPayload,
    JobRecord,
    JobStatus,
    JobType,
)
from freight_agent.models.session import utcnow
from freight_agent.services.rate_limiter import (
    InMemorySlidingWindowLimiter,
    RateLimiter,
    RedisSlidingWindowLimiter,
)

logger = logging.getLogger(__name__)

# Celery task name per job type
TASK_NAMES: dict[JobType, str] = {
    JobType.DOCUMENT: "freight_agent.process_document",
    JobType.INVOICE: "freight_agent.process_invoice",
}


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: delay(n) = initial_delay * backoff_factor**(n-1)."""

    max_attempts: int
    initial_delay: float
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.initial_delay * self.backoff_factor ** (attempt - 1)


@dataclass(frozen=True)
class QueuePolicy:
    name: str
    job_type: JobType
    concurrency: int
    rate_limit: int
    rate_window_seconds: float
    retry: RetryPolicy
    keep_completed: int
    keep_failed: int
    stalled_after_seconds: float = 900.0

    @classmethod
    def from_settings(cls, settings: Settings, job_type: JobType) -> QueuePolicy:
        prefix = job_type.value
        return cls(
            name=getattr(settings, f"{prefix}_queue_name"),
            job_type=job_type,
            concurrency=getattr(settings, f"{prefix}_concurrency"),
            rate_limit=getattr(settings, f"{prefix}_rate_limit"),
            rate_window_seconds=getattr(settings, f"{prefix}_rate_window_seconds"),
            retry=RetryPolicy(
                max_attempts=getattr(settings, f"{prefix}_max_attempts"),
                initial_delay=getattr(settings, f"{prefix}_initial_backoff_seconds"),
                backoff_factor=settings.backoff_factor,
            ),
            keep_completed=getattr(settings, f"{prefix}_keep_completed"),
            keep_failed=getattr(settings, f"{prefix}_keep_failed"),
            stalled_after_seconds=settings.stalled_job_seconds,
        )


class JobAttemptFailed(Exception):
    """
    One attempt of a job raised.

    `retry_in` is the backoff before the next attempt, or None when the job
    is now terminally failed.
    """

    def __init__(self, job_id: str, cause: BaseException, retry_in: float | None) -> None:
        super().__init__(f"Job {job_id} attempt failed: {cause}")
        self.job_id = job_id
        self.cause = cause
        self.retry_in = retry_in


@dataclass
class JobOutcome:
    """
    What one delivery of a job came to.

    `retry_in` set: deliver the job again after that many seconds (backoff,
    or the rate limit window). `error` without `retry_in`: terminal failure.
    Otherwise `result` holds the job's result.
    """

    result: dict[str, Any] | None = None
    retry_in: float | None = None
    error: BaseException | None = None


# Hands a saved record to the transport; `countdown` delays delivery
Dispatcher = Callable[[JobRecord, float], None]


# ---------------------------------------------------------------------------
# Job Stores
# ---------------------------------------------------------------------------


class JobStore(Protocol):
    def save(self, record: JobRecord) -> None: ...

    def get(self, job_id: str) -> JobRecord | None: ...

    def retain(self, record: JobRecord, keep: int) -> list[str]:
        """Register a terminal record; returns ids evicted beyond `keep`."""
        ...

    def recent(self, queue: str, status: JobStatus, limit: int) -> list[str]: ...

    def active_before(self, queue: str, cutoff: float) -> list[str]:
        """ACTIVE job ids whose current attempt started before `cutoff` (epoch s)."""
        ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, str] = {}
        self._finished: dict[tuple[str, JobStatus], deque[str]] = {}
        self._active: dict[str, dict[str, float]] = {}

    def save(self, record: JobRecord) -> None:
        with self._lock:
            self._records[record.id] = record.model_dump_json()
            active = self._active.setdefault(record.queue, {})
            if record.status == JobStatus.ACTIVE:
                active[record.id] = record.updated_at.timestamp()
            else:
                active.pop(record.id, None)

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            raw = self._records.get(job_id)
        return JobRecord.model_validate_json(raw) if raw else None

    def retain(self, record: JobRecord, keep: int) -> list[str]:
        with self._lock:
            ids = self._finished.setdefault((record.queue, record.status), deque())
            ids.appendleft(record.id)
            evicted = []
            while len(ids) > keep:
                old = ids.pop()
                self._records.pop(old, None)
                evicted.append(old)
        return evicted

    def recent(self, queue: str, status: JobStatus, limit: int) -> list[str]:
        with self._lock:
            return list(self._finished.get((queue, status), ()))[:limit]

    def active_before(self, queue: str, cutoff: float) -> list[str]:
        with self._lock:
            started = self._active.get(queue, {})
            return sorted(
                (i for i, ts in started.items() if ts < cutoff),
                key=started.__getitem__,
            )


class RedisJobStore:
    def __init__(self, client: Redis, ttl_seconds: int | None = None) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @staticmethod
    def _key(job_id: str) -> str:
        return f"job:{job_id}"

    @staticmethod
    def _list_key(queue: str, status: JobStatus) -> str:
        return f"jobs:{queue}:{status.value}"

    @staticmethod
    def _active_key(queue: str) -> str:
        return f"jobs:{queue}:active"

    def save(self, record: JobRecord) -> None:
        pipe = self._client.pipeline()
        pipe.set(self._key(record.id), record.model_dump_json(), ex=self._ttl)
        if record.status == JobStatus.ACTIVE:
            pipe.zadd(self._active_key(record.queue), {record.id: record.updated_at.timestamp()})
        else:
            pipe.zrem(self._active_key(record.queue), record.id)
        pipe.execute()

    def get(self, job_id: str) -> JobRecord | None:
        raw = self._client.get(self._key(job_id))
        return JobRecord.model_validate_json(raw) if raw else None

    def retain(self, record: JobRecord, keep: int) -> list[str]:
        list_key = self._list_key(record.queue, record.status)
        pipe = self._client.pipeline()
        pipe.lpush(list_key, record.id)
        pipe.lrange(list_key, keep, -1)
        pipe.ltrim(list_key, 0, keep - 1)
        _, overflow, _ = pipe.execute()

        evicted = [i.decode() if isinstance(i, bytes) else i for i in overflow]
        if evicted:
            self._client.delete(*(self._key(i) for i in evicted))
        return evicted

    def recent(self, queue: str, status: JobStatus, limit: int) -> list[str]:
        ids = self._client.lrange(self._list_key(queue, status), 0, limit - 1)
        return [i.decode() if isinstance(i, bytes) else i for i in ids]

    def active_before(self, queue: str, cutoff: float) -> list[str]:
        ids = self._client.zrangebyscore(self._active_key(queue), "-inf", f"({cutoff}")
        return [i.decode() if isinstance(i, bytes) else i for i in ids]


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class JobQueue:
    """Enqueue, bookkeeping and retry decisions for both queues."""

    def __init__(
        self,
        store: JobStore,
        policies: dict[JobType, QueuePolicy],
        limiters: dict[JobType, RateLimiter],
        dispatcher: Dispatcher,
    ) -> None:
        self._store = store
        self._policies = policies
        self._limiters = limiters
        self._dispatch = dispatcher

    def policy(self, job_type: JobType) -> QueuePolicy:
        return self._policies[job_type]

    # -----------------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------------

    def enqueue(
        self,
        job_type: JobType,
        payload: DocumentJobPayload | InvoiceJobPayload,
    ) -> JobRecord:
        policy = self._policies[job_type]
        record = JobRecord(
            id=uuid.uuid4().hex,
            type=job_type,
            queue=policy.name,
            payload=payload.model_dump(mode="json", by_alias=True),
            max_attempts=policy.retry.max_attempts,
        )
        self._store.save(record)
        try:
            self._dispatch(record, 0.0)
        except Exception as exc:
            # Never delivered, so no worker will move it out of WAITING
            self._mark_failed(record, exc)
            raise
        logger.info("Enqueued %s job %s on %s", job_type.value, record.id, policy.name)
        return record

    def get(self, job_id: str) -> JobRecord:
        record = self._store.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def recent(
        self,
        job_type: JobType,
        status: JobStatus,
        limit: int = 20,
    ) -> list[str]:
        """Retained completed/failed job ids, newest first."""
        return self._store.recent(self._policies[job_type].name, status, limit)

    def stalled(self, job_type: JobType) -> list[str]:
        """ACTIVE job ids past the policy's stall threshold, longest-running first."""
        policy = self._policies[job_type]
        cutoff = utcnow().timestamp() - policy.stalled_after_seconds
        ids = self._store.active_before(policy.name, cutoff)
        if ids:
            logger.warning(
                "%d job(s) on %s active for over %.0fs: %s",
                len(ids), policy.name, policy.stalled_after_seconds, ", ".join(ids),
            )
        return ids

    # -----------------------------------------------------------------------
    # Worker side
    # -----------------------------------------------------------------------

    def acquire_slot(self, job_type: JobType) -> float:
        """0.0 when the job may start now, otherwise seconds to wait."""
        return self._limiters[job_type].acquire()

    def run(
        self,
        job_id: str,
        handler: Callable[[JobRecord], dict[str, Any]],
    ) -> JobOutcome:
        """
        Handle one delivery of `job_id`: rate limit, then one attempt.

        A delivery held back by the rate limiter does not count as an
        attempt.
        """
        record = self.get(job_id)

        wait = self.acquire_slot(record.type)
        if wait > 0:
            logger.info(
                "[%s] Rate limit reached on %s; delaying %.1fs",
                job_id, record.queue, wait,
            )
            return JobOutcome(retry_in=wait)

        try:
            return JobOutcome(result=self.process(job_id, handler))
        except JobAttemptFailed as failure:
            return JobOutcome(retry_in=failure.retry_in, error=failure.cause)
        except RetryLimitExceededError as e:
            # Redelivery of a job that already failed
            logger.warning("[%s] %s", job_id, e)
            return JobOutcome(error=e)

    def process(
        self,
        job_id: str,
        handler: Callable[[JobRecord], dict[str, Any]],
    ) -> dict[str, Any]:
        """
        Run one attempt of `job_id` through `handler`.

        Returns:
            The handler's result (or the stored result if the job already
            completed on an earlier delivery).

        Raises:
            JobAttemptFailed: The handler raised, or the worker running the
                final attempt was lost; the record is updated and `retry_in`
                says whether and when to try again.
            RetryLimitExceededError: The job has already failed.
        """
        current = self.get(job_id)
        if current.status == JobStatus.COMPLETED:
            logger.info("Job %s already completed; ignoring redelivery", job_id)
            return current.result or {}

        record = self._begin_attempt(current)
        try:
            result = handler(record)
        except Exception as exc:
            retry_in = self._fail_attempt(record, exc)
            raise JobAttemptFailed(job_id, exc, retry_in) from exc

        self._complete(record, result)
        return result

    def _begin_attempt(self, record: JobRecord) -> JobRecord:
        if record.status == JobStatus.FAILED:
            raise RetryLimitExceededError(
                f"Job {record.id} already failed after {record.attempts}/"
                f"{record.max_attempts} attempts"
            )
        if record.attempts >= record.max_attempts:
            # Still ACTIVE: the final attempt never reported back
            lost = RetryLimitExceededError(
                f"Worker lost during final attempt "
                f"{record.attempts}/{record.max_attempts}"
            )
            self._mark_failed(record, lost)
            raise JobAttemptFailed(record.id, lost, None)

        started = record.model_copy(update={
            "attempts": record.attempts + 1,
            "status": JobStatus.ACTIVE,
            "updated_at": utcnow(),
        })
        self._store.save(started)
        logger.info(
            "Job %s attempt %d/%d started",
            started.id, started.attempts, started.max_attempts,
        )
        return started

    def _complete(self, record: JobRecord, result: dict[str, Any]) -> None:
        now = utcnow()
        done = record.model_copy(update={
            "status": JobStatus.COMPLETED,
            "result": result,
            "error": None,
            "updated_at": now,
            "finished_at": now,
        })
        self._store.save(done)
        self._retain(done)
        logger.info("Job %s completed after %d attempt(s)", done.id, done.attempts)

    def _fail_attempt(self, record: JobRecord, exc: Exception) -> float | None:
        retryable = getattr(exc, "retryable", True)
        exhausted = record.attempts >= record.max_attempts

        if not retryable or exhausted:
            self._mark_failed(record, exc)
            return None

        delay = self._policies[record.type].retry.delay_for(record.attempts)
        waiting = record.model_copy(update={
            "status": JobStatus.WAITING,
            "error": str(exc),
            "updated_at": utcnow(),
        })
        self._store.save(waiting)
        logger.warning(
            "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
            record.id, record.attempts, record.max_attempts, exc, delay,
        )
        return delay

    def _mark_failed(self, record: JobRecord, exc: BaseException) -> None:
        now = utcnow()
        failed = record.model_copy(update={
            "status": JobStatus.FAILED,
            "error": str(exc),
            "updated_at": now,
            "finished_at": now,
        })
        self._store.save(failed)
        self._retain(failed)
        logger.error(
            "Job %s failed permanently after %d attempt(s): %s",
            record.id, record.attempts, exc,
        )

    def _retain(self, record: JobRecord) -> None:
        policy = self._policies[record.type]
        keep = (
            policy.keep_completed
            if record.status == JobStatus.COMPLETED
            else policy.keep_failed
        )
        evicted = self._store.retain(record, keep)
        if evicted:
            logger.debug("Evicted %d old %s jobs", len(evicted), record.status.value)


# ---------------------------------------------------------------------------
# Factory Functions
# ---------------------------------------------------------------------------


def celery_dispatcher(celery_app) -> Dispatcher:
    """Dispatch records as Celery tasks on their queue."""

    def _dispatch(record: JobRecord, countdown: float) -> None:
        celery_app.send_task(
            TASK_NAMES[record.type],
            args=[record.id],
            queue=record.queue,
            countdown=countdown or None,
        )

    return _dispatch


def create_job_queue(
    settings: Settings,
    dispatcher: Dispatcher,
    redis_client: Redis | None = None,
) -> JobQueue:
    """Build the queue with the store and limiters selected by `job_backend`."""
    policies = {
        job_type: QueuePolicy.from_settings(settings, job_type)
        for job_type in JobType
    }

    if settings.job_backend == "redis":
        client = redis_client or Redis.from_url(settings.redis_url)
        store: JobStore = RedisJobStore(client)
        limiters: dict[JobType, RateLimiter] = {
            t: RedisSlidingWindowLimiter(client, p.name, p.rate_limit, p.rate_window_seconds)
            for t, p in policies.items()
        }
        logger.info("Using Redis job store (%s)", settings.redis_url)
    else:
        store = InMemoryJobStore()
        limiters = {
            t: InMemorySlidingWindowLimiter(p.rate_limit, p.rate_window_seconds)
            for t, p in policies.items()
        }
        logger.info("Using in-memory job store")

    return JobQueue(store, policies, limiters, dispatcher)
