# =============================================================================
# Health API: Service Identity and Queue Status
# =============================================================================
#
# GET /health reports, for each ingestion queue:
#   - its policy (concurrency, rate limit, retry ceiling and backoff)
#   - the newest retained completed and failed job ids
#   - jobs ACTIVE for longer than `stalled_after_seconds`
#
# FLOW:
#   1. Read each QueuePolicy from the JobQueue
#   2. Look up recent and stalled job ids in the job store
#   3. Return them with the service name and version
#
# Stalled jobs are only reported; nothing here or in the workers kills them.
# The handler is sync so FastAPI runs the store lookups in its threadpool.
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends

from freight_agent.api.deps import get_context
from freight_agent.context import AppContext
from freight_agent.models.jobs import JobStatus, JobType
from freight_agent.models.responses import HealthResponse, QueueStatus

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health(ctx: AppContext = Depends(get_context)) -> HealthResponse:
    queues = []
    for job_type in JobType:
        policy = ctx.job_queue.policy(job_type)
        queues.append(QueueStatus(
            name=policy.name,
            concurrency=policy.concurrency,
            rate_limit=policy.rate_limit,
            rate_window_seconds=policy.rate_window_seconds,
            max_attempts=policy.retry.max_attempts,
            initial_backoff_seconds=policy.retry.initial_delay,
            backoff_factor=policy.retry.backoff_factor,
            stalled_after_seconds=policy.stalled_after_seconds,
            recent_completed=ctx.job_queue.recent(job_type, JobStatus.COMPLETED),
            recent_failed=ctx.job_queue.recent(job_type, JobStatus.FAILED),
            stalled=ctx.job_queue.stalled(job_type),
        ))
    return HealthResponse(
        service=ctx.settings.app_name,
        version=ctx.settings.app_version,
        queues=queues,
    )
