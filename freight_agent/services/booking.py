# =============================================================================
# Booking Service: Book a Quoted Offer, Track Shipments
# =============================================================================
#
# Booking turns one carrier offer of a completed session into a shipment:
#
#   1. Load the session; it must hold a quote containing the carrier
#   2. Create ids: booking `BK<epoch-ms>`, tracking `FCP<10 hex upper>`
#   3. Insert the shipment (status pickup_scheduled)
#   4. Link the session's invoices to the booking
#   5. Append a system message to the session (versioned update)
# =============================================================================

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime

from freight_agent.db.models import Shipment
from freight_agent.errors import BookingError, SessionNotFoundError
from freight_agent.models.session import Message, Role, Session
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import SessionStore

logger = logging.getLogger(__name__)

INITIAL_SHIPMENT_STATUS = "pickup_scheduled"
INACTIVE_STATUSES = frozenset({"delivered", "returned"})
RECENT_SHIPMENTS = 10


@dataclass
class BookingResult:
    booking_id: str
    tracking_number: str
    carrier_id: str
    carrier_name: str
    service_level: str
    rate: float
    currency: str
    estimated_delivery: datetime
    linked_invoices: int


@dataclass
class ShipmentListing:
    total: int
    active: list[Shipment] = field(default_factory=list)
    recent: list[Shipment] = field(default_factory=list)


class BookingService:
    """Books quoted offers and reads shipments back."""

    def __init__(
        self,
        store: SessionStore,
        records: SqlRecordStore,
        write_retries: int = 3,
    ) -> None:
        self._store = store
        self._records = records
        self._write_retries = write_retries

    def book(
        self,
        thread_id: str,
        carrier_id: str,
        service_level: str | None = None,
    ) -> BookingResult:
        """
        Book `carrier_id`'s offer from the thread's quote.

        Raises:
            SessionNotFoundError: The thread has no checkpoint.
            BookingError: The session has no quote, or the quote has no
                offer from `carrier_id`.
        """
        session = self._store.get(thread_id)
        if session is None:
            raise SessionNotFoundError(thread_id)
        if not session.completed or session.quote is None:
            raise BookingError(f"Thread {thread_id} has no quote to book yet")

        offer = session.quote.offer_for(carrier_id)
        if offer is None:
            raise BookingError(
                f"Carrier {carrier_id} is not part of the quote for {thread_id}"
            )

        booking_id = f"BK{int(time.time() * 1000)}"
        tracking_number = f"FCP{secrets.token_hex(5).upper()}"
        level = service_level or offer.service_level

        self._records.create_shipment(
            tracking_number=tracking_number,
            booking_id=booking_id,
            user_id=session.user_id,
            thread_id=thread_id,
            carrier_id=offer.carrier_id,
            carrier_name=offer.name,
            service_level=level,
            rate=offer.rate,
            currency=offer.currency,
            status=INITIAL_SHIPMENT_STATUS,
            origin=session.shipment_data.origin,
            destination=session.shipment_data.destination,
            estimated_delivery=offer.estimated_delivery,
        )

        invoice_ids = [ref.invoice_id for ref in session.shipment_data.invoices]
        linked = self._records.link_invoices(invoice_ids, booking_id)

        note = (
            f"Shipment booked with {offer.name}. Booking ID: {booking_id}, "
            f"tracking number: {tracking_number}."
        )

        def _append_note(current: Session) -> Session:
            current.messages.append(Message(role=Role.SYSTEM, content=note))
            return current

        self._store.update(thread_id, _append_note, retries=self._write_retries)

        logger.info(
            "Booked %s for thread %s: booking=%s tracking=%s (%d invoices linked)",
            carrier_id, thread_id, booking_id, tracking_number, linked,
        )
        return BookingResult(
            booking_id=booking_id,
            tracking_number=tracking_number,
            carrier_id=offer.carrier_id,
            carrier_name=offer.name,
            service_level=level,
            rate=offer.rate,
            currency=offer.currency,
            estimated_delivery=offer.estimated_delivery,
            linked_invoices=linked,
        )

    def track(self, tracking_number: str) -> Shipment | None:
        return self._records.get_shipment(tracking_number)

    def list_shipments(self, user_id: str) -> ShipmentListing:
        shipments = self._records.list_shipments(user_id)
        return ShipmentListing(
            total=len(shipments),
            active=[s for s in shipments if s.status not in INACTIVE_STATUSES],
            recent=shipments[:RECENT_SHIPMENTS],
        )
