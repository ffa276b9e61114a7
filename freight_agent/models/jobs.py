# =============================================================================
# Job Models: Background Work Records
# =============================================================================
#
# A JobRecord is created on enqueue and mutated by the worker on every
# attempt:
#
#     WAITING → ACTIVE → COMPLETED
#                      → WAITING (retry scheduled)
#                      → FAILED (attempts exhausted or non-retryable)
#
# `attempts` never exceeds `max_attempts`.
# =============================================================================

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from freight_agent.models.base import CamelModel
from freight_agent.models.session import utcnow


class JobType(str, enum.Enum):
    DOCUMENT = "document"
    INVOICE = "invoice"


class JobStatus(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class CollectionStrategy(str, enum.Enum):
    """Which vector index a document's chunks are written to."""

    USER = "user"          # user_<ownerId>
    DOCUMENT = "document"  # doc_<docId>, reset before each ingestion
    SHARED = "shared"      # the configured shared collection


class DocumentJobPayload(CamelModel):
    file_ref: str
    filename: str
    owner_id: str
    doc_id: str
    collection_strategy: CollectionStrategy = CollectionStrategy.USER
    metadata: dict[str, Any] = Field(default_factory=dict)


class InvoiceJobPayload(CamelModel):
    file_ref: str
    filename: str
    owner_id: str
    session_thread_id: str
    invoice_id: str
    booking_id: str | None = None


class JobRecord(BaseModel):
    """Persisted state of one background job."""

    id: str
    type: JobType
    queue: str
    payload: dict[str, Any]
    attempts: int = 0
    max_attempts: int
    status: JobStatus = JobStatus.WAITING
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def document_payload(self) -> DocumentJobPayload:
        return DocumentJobPayload.model_validate(self.payload)

    def invoice_payload(self) -> InvoiceJobPayload:
        return InvoiceJobPayload.model_validate(self.payload)
