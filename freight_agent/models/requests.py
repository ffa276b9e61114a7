# =============================================================================
# API Request Models: Pydantic V2 Schemas
# =============================================================================
#
# Bodies accepted by the HTTP surface. Wire names are camelCase
# (`threadId`, `carrierId`); snake_case is accepted too.
# =============================================================================

from __future__ import annotations

from pydantic import Field

from freight_agent.models.base import CamelModel


class StartConversationRequest(CamelModel):
    """
    Request body for POST /shipping/start.

    Example:
        {"userId": "user_42"}
    """

    user_id: str = Field(..., min_length=1, max_length=255)


class MessageRequest(CamelModel):
    """
    Request body for POST /shipping/message.

    Example:
        {"threadId": "thread_1718000000000_9f2c...", "message": "50kg of electronics"}
    """

    thread_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=4000)


class BookingRequest(CamelModel):
    """Request body for POST /shipping/book."""

    thread_id: str = Field(..., min_length=1)
    carrier_id: str = Field(..., min_length=1)
    # Defaults to the service level of the chosen offer
    service_level: str | None = None
