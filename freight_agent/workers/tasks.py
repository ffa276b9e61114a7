# =============================================================================
# Celery Tasks: Document and Invoice Ingestion
# =============================================================================
#
# Each task receives only a job id. The job record (payload, attempts,
# status) is loaded from the JobQueue, and the pipeline stage functions do
# the work.
#
# FLOW PER DELIVERY (JobQueue.run):
#   1. Rate limit: if the queue's window is full, the task is re-scheduled
#      with the limiter's countdown. No attempt is consumed.
#   2. One attempt through the pipeline.
#   3. On failure the queue decides: retry after backoff (self.retry with
#      that countdown), or terminal failure (the error propagates so Celery
#      records it too).
#
# Celery workers are synchronous; the pipeline drives its async model
# client on its own event loop.
#
# The worker's AppContext is built on worker_process_init and released on
# worker_process_shutdown, one per worker process.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from celery.signals import worker_process_init, worker_process_shutdown

from freight_agent.config import get_settings
from freight_agent.context import AppContext, init_context, shutdown_context
from freight_agent.logging_config import configure_logging
from freight_agent.models.jobs import JobRecord, JobType
from freight_agent.workers.celery_app import celery_app
from freight_agent.workers.queue import TASK_NAMES

logger = logging.getLogger(__name__)

_worker_context: AppContext | None = None


# ---------------------------------------------------------------------------
# Worker process lifecycle
# ---------------------------------------------------------------------------


@worker_process_init.connect
def _init_worker(**_kwargs) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    bind_worker_context(init_context(settings))
    logger.info("Worker context ready")


@worker_process_shutdown.connect
def _shutdown_worker(**_kwargs) -> None:
    global _worker_context
    if _worker_context is not None:
        shutdown_context(_worker_context)
        _worker_context = None


def bind_worker_context(ctx: AppContext | None) -> None:
    """Set the context tasks run against (worker init, tests)."""
    global _worker_context
    _worker_context = ctx


def get_worker_context() -> AppContext:
    if _worker_context is None:
        raise RuntimeError("Worker context not initialised")
    return _worker_context


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name=TASK_NAMES[JobType.DOCUMENT], max_retries=None)
def process_document(self, job_id: str) -> dict:
    ctx = get_worker_context()
    return _run_job(self, ctx, job_id, ctx.pipeline.process_document)


@celery_app.task(bind=True, name=TASK_NAMES[JobType.INVOICE], max_retries=None)
def process_invoice(self, job_id: str) -> dict:
    ctx = get_worker_context()
    return _run_job(self, ctx, job_id, ctx.pipeline.process_invoice)


def _run_job(
    task,
    ctx: AppContext,
    job_id: str,
    handler: Callable[[JobRecord], dict[str, Any]],
) -> dict[str, Any]:
    outcome = ctx.job_queue.run(job_id, handler)
    if outcome.retry_in is not None:
        raise task.retry(exc=outcome.error, countdown=outcome.retry_in)
    if outcome.error is not None:
        raise outcome.error
    return outcome.result or {}
