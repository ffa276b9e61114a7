# =============================================================================
# API Response Models: Pydantic V2 Schemas
# =============================================================================
#
# Shapes returned by the HTTP surface. ORM rows, job records and service
# dataclasses are converted with `model_validate(..., from_attributes=True)`
# so internal columns (extracted invoice payloads, raw analysis) are only
# exposed where a response lists them.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from freight_agent.db.models import DocumentStatus
from freight_agent.models.base import CamelModel
from freight_agent.models.jobs import JobStatus, JobType
from freight_agent.models.quote import Quote
from freight_agent.models.session import Phase, ShipmentData


class _FromAttributes(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ConversationResponse(CamelModel):
    """Response for POST /shipping/start and POST /shipping/message."""

    thread_id: str
    reply: str
    phase: Phase
    completed: bool
    shipment_data: ShipmentData
    quote: Quote | None = None
    version: int


class BookingResponse(_FromAttributes):
    booking_id: str
    tracking_number: str
    carrier_id: str
    carrier_name: str
    service_level: str
    rate: float
    currency: str
    estimated_delivery: datetime
    linked_invoices: int
    message: str = "Shipment booked. Pickup is being scheduled."


# ---------------------------------------------------------------------------
# Uploads and records
# ---------------------------------------------------------------------------


class UploadResponse(CamelModel):
    """
    Response for document and invoice uploads (202 Accepted).

    Processing happens in the background; poll GET /jobs/{jobId}.
    """

    id: str = Field(description="Document or invoice id")
    job_id: str
    filename: str
    file_size: int
    status: str = "queued"
    message: str = "Upload accepted. Processing in progress."


class InvoiceResponse(_FromAttributes):
    invoice_id: str
    filename: str
    file_size: int
    status: DocumentStatus
    processed: bool
    document_type: str | None = None
    booking_id: str | None = None
    job_id: str | None = None
    error_message: str | None = None
    uploaded_at: datetime
    processed_at: datetime | None = None


class InvoiceListResponse(CamelModel):
    thread_id: str
    invoices: list[InvoiceResponse]


class JobResponse(_FromAttributes):
    """Response for GET /jobs/{jobId}."""

    id: str
    type: JobType
    queue: str
    status: JobStatus
    attempts: int
    max_attempts: int
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None


# ---------------------------------------------------------------------------
# Shipments
# ---------------------------------------------------------------------------


class ShipmentResponse(_FromAttributes):
    tracking_number: str
    booking_id: str
    carrier_id: str
    carrier_name: str
    service_level: str
    origin: str | None = None
    destination: str | None = None
    rate: float
    currency: str
    status: str
    estimated_delivery: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ShipmentListResponse(CamelModel):
    user_id: str
    total: int
    active: list[ShipmentResponse]
    recent: list[ShipmentResponse]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class QueueStatus(CamelModel):
    name: str
    concurrency: int
    rate_limit: int
    rate_window_seconds: float
    max_attempts: int
    initial_backoff_seconds: float
    backoff_factor: float
    stalled_after_seconds: float
    recent_completed: list[str] = Field(default_factory=list)
    recent_failed: list[str] = Field(default_factory=list)
    stalled: list[str] = Field(default_factory=list)  # ACTIVE past the threshold


class HealthResponse(CamelModel):
    """Response for GET /health."""

    status: str = "ok"
    service: str
    version: str
    queues: list[QueueStatus]
