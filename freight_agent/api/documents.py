# =============================================================================
# Documents API: Upload for Background Ingestion
# =============================================================================
#
# POST /documents accepts a multipart upload and returns 202 with the job id.
# The document is searchable only once the job completes.
#
# FLOW:
#   1. Validate the optional `metadata` form field (a JSON object)
#   2. UploadService stores the file, creates the document record and
#      enqueues a document-ingestion job (off the event loop)
#   3. Return 202; the client polls GET /jobs/{jobId}
#
# If enqueueing fails the service removes the file and marks the record
# failed before the error reaches the client.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from freight_agent.api.deps import get_context
from freight_agent.context import AppContext
from freight_agent.models.jobs import CollectionStrategy
from freight_agent.models.responses import UploadResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])


@router.post(
    "/documents",
    response_model=UploadResponse,
    status_code=202,
    summary="Upload a document for classification and indexing",
)
async def upload_document(
    owner_id: str = Form(..., alias="ownerId"),
    collection_strategy: CollectionStrategy = Form(
        default=CollectionStrategy.USER,
        alias="collectionStrategy",
        description="user: per-owner index; document: one index per document; "
        "shared: the shared index",
    ),
    metadata: str | None = Form(
        default=None,
        description="Optional JSON object attached to every indexed chunk",
    ),
    file: UploadFile = File(...),
    ctx: AppContext = Depends(get_context),
) -> UploadResponse:
    extra: dict = {}
    if metadata:
        try:
            extra = json.loads(metadata)
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"metadata is not valid JSON: {e}") from e
        if not isinstance(extra, dict):
            raise HTTPException(status_code=400, detail="metadata must be a JSON object")

    content = await file.read()
    receipt = await asyncio.to_thread(
        ctx.uploads.upload_document,
        owner_id,
        file.filename or "",
        content,
        collection_strategy,
        extra,
    )
    return UploadResponse(
        id=receipt.record_id,
        job_id=receipt.job_id,
        filename=receipt.filename,
        file_size=receipt.file_size,
    )
