# =============================================================================
# Unit Tests: Job Queue, Retry Policy and Rate Limiter
# =============================================================================
#
# Uses the in-memory job store, a recording dispatcher and a fake clock.
# No Redis or Celery broker needed.
# =============================================================================

from datetime import timedelta

import pytest

from freight_agent.config import Settings
from freight_agent.errors import (
    ContentValidationError,
    ExternalServiceError,
    JobNotFoundError,
    RetryLimitExceededError,
)
from freight_agent.models.jobs import (
    CollectionStrategy,
    DocumentJobPayload,
    InvoiceJobPayload,
    JobStatus,
    JobType,
)
from freight_agent.models.session import utcnow
from freight_agent.services.rate_limiter import InMemorySlidingWindowLimiter
from freight_agent.workers.queue import (
    InMemoryJobStore,
    JobAttemptFailed,
    JobQueue,
    QueuePolicy,
    RetryPolicy,
    create_job_queue,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _policy(
    job_type: JobType = JobType.DOCUMENT,
    max_attempts: int = 3,
    keep_completed: int = 100,
    keep_failed: int = 50,
) -> QueuePolicy:
    return QueuePolicy(
        name=f"{job_type.value}-ingestion",
        job_type=job_type,
        concurrency=1,
        rate_limit=10,
        rate_window_seconds=60,
        retry=RetryPolicy(max_attempts=max_attempts, initial_delay=2.0),
        keep_completed=keep_completed,
        keep_failed=keep_failed,
    )


def _make_queue(
    rate_limit: int = 100,
    clock: FakeClock | None = None,
    store: InMemoryJobStore | None = None,
    **policy_kwargs,
):
    """Queue over both job types plus the list of dispatched (id, countdown)."""
    dispatched: list[tuple[str, float]] = []
    clock = clock or FakeClock()
    policies = {t: _policy(t, **policy_kwargs) for t in JobType}
    limiters = {t: InMemorySlidingWindowLimiter(rate_limit, 60, clock=clock) for t in JobType}
    queue = JobQueue(
        store or InMemoryJobStore(),
        policies,
        limiters,
        lambda record, countdown: dispatched.append((record.id, countdown)),
    )
    return queue, dispatched


def _document_payload(doc_id: str = "doc1") -> DocumentJobPayload:
    return DocumentJobPayload(
        file_ref=f"/tmp/{doc_id}_bl.pdf",
        filename="bl.pdf",
        owner_id="user_1",
        doc_id=doc_id,
    )


def _failing(exc: Exception):
    def _handler(record):
        raise exc
    return _handler


# ---------------------------------------------------------------------------
# Test: Policies
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(max_attempts=3, initial_delay=2.0, backoff_factor=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_policies_from_settings(self):
        settings = Settings(_env_file=None)
        document = QueuePolicy.from_settings(settings, JobType.DOCUMENT)
        invoice = QueuePolicy.from_settings(settings, JobType.INVOICE)

        assert (document.name, document.concurrency, document.rate_limit) == (
            "document-ingestion", 2, 10,
        )
        assert (document.retry.max_attempts, document.retry.initial_delay) == (3, 2.0)
        assert (document.keep_completed, document.keep_failed) == (100, 50)
        assert (invoice.name, invoice.concurrency, invoice.rate_limit) == (
            "invoice-ingestion", 1, 5,
        )
        assert (invoice.retry.max_attempts, invoice.retry.initial_delay) == (2, 3.0)
        assert (invoice.keep_completed, invoice.keep_failed) == (50, 25)


# ---------------------------------------------------------------------------
# Test: Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    def test_record_saved_and_dispatched(self):
        queue, dispatched = _make_queue()
        record = queue.enqueue(JobType.DOCUMENT, _document_payload())

        assert dispatched == [(record.id, 0.0)]
        stored = queue.get(record.id)
        assert stored.status == JobStatus.WAITING
        assert stored.attempts == 0
        assert stored.max_attempts == 3
        assert stored.queue == "document-ingestion"
        assert stored.payload["docId"] == "doc1"
        assert stored.document_payload().collection_strategy == CollectionStrategy.USER

    def test_invoice_payload_round_trips(self):
        queue, _ = _make_queue()
        payload = InvoiceJobPayload(
            file_ref="/tmp/inv_1_a.pdf", filename="a.pdf", owner_id="user_1",
            session_thread_id="thread_1", invoice_id="inv_1",
        )
        record = queue.enqueue(JobType.INVOICE, payload)
        assert queue.get(record.id).invoice_payload() == payload
        assert record.queue == "invoice-ingestion"

    def test_unknown_job(self):
        queue, _ = _make_queue()
        with pytest.raises(JobNotFoundError):
            queue.get("nope")

    def test_dispatch_failure_fails_record(self):
        def _broker_down(record, countdown):
            raise ConnectionError("broker down")

        queue = JobQueue(
            InMemoryJobStore(),
            {t: _policy(t) for t in JobType},
            {t: InMemorySlidingWindowLimiter(100, 60) for t in JobType},
            _broker_down,
        )

        with pytest.raises(ConnectionError):
            queue.enqueue(JobType.DOCUMENT, _document_payload())

        [job_id] = queue.recent(JobType.DOCUMENT, JobStatus.FAILED)
        record = queue.get(job_id)
        assert record.attempts == 0
        assert record.error == "broker down"


# ---------------------------------------------------------------------------
# Test: Attempts and Retries
# ---------------------------------------------------------------------------


class TestProcess:
    def test_success(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id

        result = queue.process(job_id, lambda record: {"chunks": 3})

        record = queue.get(job_id)
        assert result == {"chunks": 3}
        assert record.status == JobStatus.COMPLETED
        assert record.attempts == 1
        assert record.result == {"chunks": 3}
        assert record.finished_at is not None

    def test_handler_sees_active_record(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        seen = []
        queue.process(job_id, lambda record: seen.append(record) or {})
        assert seen[0].status == JobStatus.ACTIVE
        assert seen[0].attempts == 1

    def test_three_failures_end_failed(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        delays = []

        for _ in range(3):
            with pytest.raises(JobAttemptFailed) as exc_info:
                queue.process(job_id, _failing(ExternalServiceError("embeddings down")))
            delays.append(exc_info.value.retry_in)

        record = queue.get(job_id)
        assert delays == [2.0, 4.0, None]
        assert record.status == JobStatus.FAILED
        assert record.attempts == 3
        assert record.error == "embeddings down"

    def test_no_attempt_past_ceiling(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        for _ in range(3):
            with pytest.raises(JobAttemptFailed):
                queue.process(job_id, _failing(RuntimeError("boom")))

        with pytest.raises(RetryLimitExceededError):
            queue.process(job_id, lambda record: {})
        assert queue.get(job_id).attempts == 3

    def test_retry_then_success(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        with pytest.raises(JobAttemptFailed):
            queue.process(job_id, _failing(RuntimeError("flaky")))
        assert queue.get(job_id).status == JobStatus.WAITING

        queue.process(job_id, lambda record: {"ok": True})

        record = queue.get(job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.attempts == 2
        assert record.error is None

    def test_non_retryable_fails_immediately(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id

        with pytest.raises(JobAttemptFailed) as exc_info:
            queue.process(job_id, _failing(ContentValidationError("empty document")))

        assert exc_info.value.retry_in is None
        assert isinstance(exc_info.value.cause, ContentValidationError)
        record = queue.get(job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 1

    def test_completed_redelivery_returns_stored_result(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        queue.process(job_id, lambda record: {"chunks": 1})

        again = queue.process(job_id, _failing(AssertionError("must not run")))

        assert again == {"chunks": 1}
        assert queue.get(job_id).attempts == 1


class TestRun:
    def test_outcome_on_success(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        outcome = queue.run(job_id, lambda record: {"chunks": 2})
        assert outcome.result == {"chunks": 2}
        assert outcome.retry_in is None
        assert outcome.error is None

    def test_outcome_on_retryable_failure(self):
        queue, _ = _make_queue()
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        outcome = queue.run(job_id, _failing(RuntimeError("flaky")))
        assert outcome.retry_in == 2.0
        assert str(outcome.error) == "flaky"

    def test_outcome_on_terminal_failure(self):
        queue, _ = _make_queue(max_attempts=1)
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        outcome = queue.run(job_id, _failing(RuntimeError("boom")))
        assert outcome.retry_in is None
        assert str(outcome.error) == "boom"

    def test_rate_limited_delivery_keeps_attempts(self):
        clock = FakeClock()
        queue, _ = _make_queue(rate_limit=1, clock=clock)
        first = queue.enqueue(JobType.DOCUMENT, _document_payload("doc1")).id
        second = queue.enqueue(JobType.DOCUMENT, _document_payload("doc2")).id
        queue.run(first, lambda record: {})

        clock.now += 15
        outcome = queue.run(second, lambda record: {})

        assert outcome.retry_in == pytest.approx(45.0)
        assert outcome.result is None
        assert queue.get(second).attempts == 0
        assert queue.get(second).status == JobStatus.WAITING

        clock.now += 45
        assert queue.run(second, lambda record: {"late": True}).result == {"late": True}

    def test_queues_limited_independently(self):
        queue, _ = _make_queue(rate_limit=1)
        doc = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        queue.run(doc, lambda record: {})
        assert queue.acquire_slot(JobType.INVOICE) == 0.0

    def test_lost_final_attempt_fails_job(self):
        store = InMemoryJobStore()
        queue, _ = _make_queue(store=store)
        record = queue.enqueue(JobType.DOCUMENT, _document_payload())
        # The worker died during attempt 3/3, so the record never left ACTIVE
        store.save(record.model_copy(update={"status": JobStatus.ACTIVE, "attempts": 3}))

        outcome = queue.run(record.id, _failing(AssertionError("must not run")))

        assert outcome.result is None
        assert outcome.retry_in is None
        assert isinstance(outcome.error, RetryLimitExceededError)
        stored = queue.get(record.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 3
        assert "Worker lost during final attempt" in stored.error
        assert stored.finished_at is not None
        assert queue.recent(JobType.DOCUMENT, JobStatus.FAILED) == [record.id]

    def test_lost_earlier_attempt_is_retried(self):
        store = InMemoryJobStore()
        queue, _ = _make_queue(store=store)
        record = queue.enqueue(JobType.DOCUMENT, _document_payload())
        store.save(record.model_copy(update={"status": JobStatus.ACTIVE, "attempts": 1}))

        outcome = queue.run(record.id, lambda record: {"ok": True})

        assert outcome.result == {"ok": True}
        assert queue.get(record.id).status == JobStatus.COMPLETED
        assert queue.get(record.id).attempts == 2

    def test_redelivered_failed_job_reports_error(self):
        queue, _ = _make_queue(max_attempts=1)
        job_id = queue.enqueue(JobType.DOCUMENT, _document_payload()).id
        queue.run(job_id, _failing(RuntimeError("boom")))

        outcome = queue.run(job_id, lambda record: {"ok": True})

        assert outcome.result is None
        assert outcome.retry_in is None
        assert isinstance(outcome.error, RetryLimitExceededError)
        assert queue.get(job_id).status == JobStatus.FAILED
        assert queue.recent(JobType.DOCUMENT, JobStatus.FAILED) == [job_id]


# ---------------------------------------------------------------------------
# Test: Retention
# ---------------------------------------------------------------------------


class TestRetention:
    def test_oldest_completed_evicted(self):
        queue, _ = _make_queue(keep_completed=2)
        ids = [queue.enqueue(JobType.DOCUMENT, _document_payload(f"d{i}")).id for i in range(3)]
        for job_id in ids:
            queue.process(job_id, lambda record: {})

        assert queue.recent(JobType.DOCUMENT, JobStatus.COMPLETED) == [ids[2], ids[1]]
        with pytest.raises(JobNotFoundError):
            queue.get(ids[0])

    def test_failed_kept_separately(self):
        queue, _ = _make_queue(max_attempts=1, keep_completed=1, keep_failed=1)
        ok = queue.enqueue(JobType.DOCUMENT, _document_payload("ok")).id
        bad = queue.enqueue(JobType.DOCUMENT, _document_payload("bad")).id
        queue.process(ok, lambda record: {})
        with pytest.raises(JobAttemptFailed):
            queue.process(bad, _failing(RuntimeError("boom")))

        assert queue.recent(JobType.DOCUMENT, JobStatus.COMPLETED) == [ok]
        assert queue.recent(JobType.DOCUMENT, JobStatus.FAILED) == [bad]


# ---------------------------------------------------------------------------
# Test: Stalled Jobs
# ---------------------------------------------------------------------------


def _started(store: InMemoryJobStore, queue: JobQueue, minutes_ago: int) -> str:
    record = queue.enqueue(JobType.DOCUMENT, _document_payload())
    store.save(record.model_copy(update={
        "status": JobStatus.ACTIVE,
        "attempts": 1,
        "updated_at": utcnow() - timedelta(minutes=minutes_ago),
    }))
    return record.id


class TestStalled:
    def test_long_running_jobs_reported_oldest_first(self):
        store = InMemoryJobStore()
        queue, _ = _make_queue(store=store)
        half_hour = _started(store, queue, 30)
        _started(store, queue, 1)
        hour = _started(store, queue, 60)

        assert queue.stalled(JobType.DOCUMENT) == [hour, half_hour]
        assert queue.stalled(JobType.INVOICE) == []

    def test_finished_job_leaves_stalled_list(self):
        store = InMemoryJobStore()
        queue, _ = _make_queue(store=store)
        job_id = _started(store, queue, 30)

        queue.process(job_id, lambda record: {})

        assert queue.stalled(JobType.DOCUMENT) == []
        assert queue.get(job_id).status == JobStatus.COMPLETED

    def test_threshold_from_settings(self):
        settings = Settings(_env_file=None, stalled_job_seconds=120)
        policy = QueuePolicy.from_settings(settings, JobType.INVOICE)
        assert policy.stalled_after_seconds == 120


# ---------------------------------------------------------------------------
# Test: Rate Limiter
# ---------------------------------------------------------------------------


class TestSlidingWindowLimiter:
    def test_admits_up_to_limit(self):
        clock = FakeClock()
        limiter = InMemorySlidingWindowLimiter(3, 60, clock=clock)
        assert [limiter.acquire() for _ in range(3)] == [0.0, 0.0, 0.0]
        assert limiter.acquire() == 60.0

    def test_window_slides(self):
        clock = FakeClock()
        limiter = InMemorySlidingWindowLimiter(2, 60, clock=clock)
        limiter.acquire()
        clock.now += 30
        limiter.acquire()

        clock.now += 10
        assert limiter.acquire() == pytest.approx(20.0)

        clock.now += 20
        assert limiter.acquire() == 0.0


class TestCreateJobQueue:
    def test_memory_backend(self):
        dispatched = []
        settings = Settings(_env_file=None, job_backend="memory")
        queue = create_job_queue(settings, lambda record, countdown: dispatched.append(record.id))

        record = queue.enqueue(JobType.INVOICE, InvoiceJobPayload(
            file_ref="/tmp/x", filename="x.pdf", owner_id="u",
            session_thread_id="t", invoice_id="inv_1",
        ))

        assert dispatched == [record.id]
        assert queue.policy(JobType.INVOICE).retry.max_attempts == 2
