# =============================================================================
# Jobs API: Background Job Status
# =============================================================================
#
# GET /jobs/{jobId} returns one JobRecord: queue, status, attempts against
# the retry ceiling, the last error and, once completed, the result.
#
# FLOW:
#   1. Upload endpoints return a jobId with 202 Accepted
#   2. The client polls this endpoint: waiting → active → completed | failed
#   3. Unknown or evicted ids give 404 (JobNotFoundError)
# =============================================================================

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends

from freight_agent.api.deps import get_context
from freight_agent.context import AppContext
from freight_agent.models.responses import JobResponse

router = APIRouter(tags=["Jobs"])


@router.get("/jobs/{job_id}", response_model=JobResponse, summary="Get a job's status")
async def get_job(job_id: str, ctx: AppContext = Depends(get_context)) -> JobResponse:
    record = await asyncio.to_thread(ctx.job_queue.get, job_id)
    return JobResponse.model_validate(record)
