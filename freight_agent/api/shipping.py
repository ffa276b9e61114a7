# =============================================================================
# Shipping API: Conversation Turns, Booking, Invoices
# =============================================================================
#
# ENDPOINTS:
#   POST /shipping/start              : open a thread, return the greeting
#   POST /shipping/message            : run one conversation turn
#   POST /shipping/book               : book a carrier offer from the quote
#   POST /shipping/invoices           : upload an invoice for a thread (202)
#   GET  /shipping/invoices/{threadId}: invoices recorded for a thread
#
# FLOW (one message):
#   1. Load the thread's checkpoint (404 when unknown)
#   2. The workflow extracts fields, derives the phase, replies or quotes
#   3. The new checkpoint is written with its version (409 on a lost race
#      that the workflow could not rebase)
#   4. Return the reply, phase, collected fields and any quote
#
# Model failures inside a turn never surface here: the workflow answers
# with its apology message instead.
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile

from freight_agent.agents.workflow import TurnResult
from freight_agent.api.deps import get_context
from freight_agent.context import AppContext
from freight_agent.models.requests import (
    BookingRequest,
    MessageRequest,
    StartConversationRequest,
)
from freight_agent.models.responses import (
    BookingResponse,
    ConversationResponse,
    InvoiceListResponse,
    InvoiceResponse,
    UploadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["Shipping"])


def _conversation_response(turn: TurnResult) -> ConversationResponse:
    session = turn.session
    return ConversationResponse(
        thread_id=session.thread_id,
        reply=turn.output,
        phase=session.current_phase,
        completed=session.completed,
        shipment_data=session.shipment_data,
        quote=session.quote,
        version=session.version,
    )


@router.post("/start", response_model=ConversationResponse, summary="Start a conversation")
async def start_conversation(
    request: StartConversationRequest,
    ctx: AppContext = Depends(get_context),
) -> ConversationResponse:
    turn = await ctx.workflow.start(request.user_id)
    return _conversation_response(turn)


@router.post("/message", response_model=ConversationResponse, summary="Send a message")
async def send_message(
    request: MessageRequest,
    ctx: AppContext = Depends(get_context),
) -> ConversationResponse:
    turn = await ctx.workflow.handle_message(request.thread_id, request.message)
    return _conversation_response(turn)


@router.post("/book", response_model=BookingResponse, summary="Book a quoted carrier")
async def book_shipment(
    request: BookingRequest,
    ctx: AppContext = Depends(get_context),
) -> BookingResponse:
    result = await asyncio.to_thread(
        ctx.booking.book,
        request.thread_id,
        request.carrier_id,
        request.service_level,
    )
    return BookingResponse.model_validate(result)


@router.post(
    "/invoices",
    response_model=UploadResponse,
    status_code=202,
    summary="Upload an invoice for a conversation",
)
async def upload_invoice(
    thread_id: str = Form(..., alias="threadId"),
    booking_id: str | None = Form(default=None, alias="bookingId"),
    file: UploadFile = File(..., description="Invoice (PDF or text)"),
    ctx: AppContext = Depends(get_context),
) -> UploadResponse:
    content = await file.read()
    receipt = await asyncio.to_thread(
        ctx.uploads.upload_invoice,
        thread_id,
        file.filename or "",
        content,
        booking_id,
    )
    return UploadResponse(
        id=receipt.record_id,
        job_id=receipt.job_id,
        filename=receipt.filename,
        file_size=receipt.file_size,
        message="Invoice uploaded. Analysis in progress.",
    )


@router.get(
    "/invoices/{thread_id}",
    response_model=InvoiceListResponse,
    summary="List a conversation's invoices",
)
async def list_invoices(
    thread_id: str,
    ctx: AppContext = Depends(get_context),
) -> InvoiceListResponse:
    rows = await asyncio.to_thread(ctx.records.list_invoices, thread_id)
    return InvoiceListResponse(
        thread_id=thread_id,
        invoices=[InvoiceResponse.model_validate(r) for r in rows],
    )
