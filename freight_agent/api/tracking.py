# =============================================================================
# Tracking API: Shipment Lookup
# =============================================================================
#   GET /track/{trackingNumber}: one shipment
#   GET /shipments/{userId}    : a user's shipments, active and recent
# =============================================================================

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException

from freight_agent.api.deps import get_context
from freight_agent.context import AppContext
from freight_agent.models.responses import ShipmentListResponse, ShipmentResponse

router = APIRouter(tags=["Tracking"])


@router.get(
    "/track/{tracking_number}",
    response_model=ShipmentResponse,
    summary="Track a shipment",
)
async def track_shipment(
    tracking_number: str,
    ctx: AppContext = Depends(get_context),
) -> ShipmentResponse:
    shipment = await asyncio.to_thread(ctx.booking.track, tracking_number)
    if shipment is None:
        raise HTTPException(
            status_code=404,
            detail=f"No shipment with tracking number {tracking_number}",
        )
    return ShipmentResponse.model_validate(shipment)


@router.get(
    "/shipments/{user_id}",
    response_model=ShipmentListResponse,
    summary="List a user's shipments",
)
async def list_shipments(
    user_id: str,
    ctx: AppContext = Depends(get_context),
) -> ShipmentListResponse:
    listing = await asyncio.to_thread(ctx.booking.list_shipments, user_id)
    return ShipmentListResponse(
        user_id=user_id,
        total=listing.total,
        active=[ShipmentResponse.model_validate(s) for s in listing.active],
        recent=[ShipmentResponse.model_validate(s) for s in listing.recent],
    )
