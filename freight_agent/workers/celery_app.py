# =============================================================================
# Celery Application: Transport for the Ingestion Queues
# =============================================================================
#
# ┌──────────┐   send_task   ┌───────┐            ┌──────────────────────┐
# │ API      │──────────────▶│ Redis │───────────▶│ worker -Q document-  │
# │ (uploads)│               │ db 0  │            │   ingestion  (-c 2)  │
# └──────────┘               └───────┘───────────▶│ worker -Q invoice-   │
#                                                 │   ingestion  (-c 1)  │
#                                                 └──────────────────────┘
#
# Job state (attempts, status, result) lives in the JobQueue's own store,
# not in the Celery result backend; Celery only carries the job id.
#
# Each queue gets its own worker process group so its concurrency cap is
# the worker's `-c` value. Start one with:
#
#   python -m freight_agent.workers.celery_app document-ingestion
# =============================================================================

from __future__ import annotations

import sys

from celery import Celery
from kombu import Queue

from freight_agent.config import Settings, get_settings
from freight_agent.models.jobs import JobType
from freight_agent.workers.queue import TASK_NAMES, QueuePolicy


def create_celery_app(settings: Settings) -> Celery:
    app = Celery(
        "freight_agent.workers",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
    )

    policies = [QueuePolicy.from_settings(settings, t) for t in JobType]

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        # Redeliver on worker crash; the job record refuses extra attempts.
        # No time limits: long-running jobs show up in JobQueue.stalled()
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        result_expires=3600,
        task_queues=[Queue(p.name) for p in policies],
        task_routes={TASK_NAMES[p.job_type]: {"queue": p.name} for p in policies},
        include=["freight_agent.workers.tasks"],
    )
    return app


celery_app = create_celery_app(get_settings())


def run_worker(queue_name: str, settings: Settings | None = None) -> None:
    """Start a worker consuming only `queue_name`, capped at its concurrency."""
    settings = settings or get_settings()
    policies = {
        p.name: p for p in (QueuePolicy.from_settings(settings, t) for t in JobType)
    }
    if queue_name not in policies:
        raise ValueError(
            f"Unknown queue '{queue_name}'. Expected one of: {', '.join(policies)}"
        )

    celery_app.worker_main([
        "worker",
        "--queues", queue_name,
        "--concurrency", str(policies[queue_name].concurrency),
        "--loglevel", settings.log_level,
        "--hostname", f"{queue_name}@%h",
    ])


if __name__ == "__main__":
    run_worker(sys.argv[1] if len(sys.argv) > 1 else get_settings().document_queue_name)
