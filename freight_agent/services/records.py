# =============================================================================
# Record Store: Relational Persistence for Documents, Invoices, Quotes,
# Shipments
# =============================================================================
#
# Every method opens its own short transaction through Database.session(),
# so a status written at one pipeline stage is committed immediately even
# if a later stage fails.
#
# Rows are returned detached (expire_on_commit=False); API response models
# read them with `from_attributes=True`.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select, update

from freight_agent.db.engine import Database
from freight_agent.db.models import (
    Document,
    DocumentStatus,
    Invoice,
    Shipment,
    ShippingQuote,
)
from freight_agent.models.session import Session, utcnow

logger = logging.getLogger(__name__)

# Stored error messages are truncated to this length
_MAX_ERROR_CHARS = 1000


class SqlRecordStore:
    """Relational records behind the pipeline and the booking flow."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    def create_document(
        self,
        doc_id: str,
        owner_id: str,
        filename: str,
        file_size: int,
        collection_strategy: str,
    ) -> Document:
        doc = Document(
            id=doc_id,
            owner_id=owner_id,
            filename=filename,
            file_size=file_size,
            collection_strategy=collection_strategy,
            status=DocumentStatus.PENDING,
        )
        with self._db.session() as session:
            session.add(doc)
        return doc

    def get_document(self, doc_id: str) -> Document | None:
        with self._db.session() as session:
            return session.get(Document, doc_id)

    def set_document_job(self, doc_id: str, job_id: str) -> None:
        self._update(Document, Document.id == doc_id, job_id=job_id)

    def mark_document_processing(self, doc_id: str) -> None:
        self._update(Document, Document.id == doc_id, status=DocumentStatus.PROCESSING)

    def complete_document(
        self,
        doc_id: str,
        analysis: dict,
        collection_name: str,
        chunk_count: int,
        page_count: int,
    ) -> None:
        self._update(
            Document,
            Document.id == doc_id,
            status=DocumentStatus.COMPLETED,
            analysis=analysis,
            collection_name=collection_name,
            chunk_count=chunk_count,
            page_count=page_count,
            error_message=None,
            processed_at=utcnow(),
        )

    def fail_document(self, doc_id: str, error: str) -> None:
        self._update(
            Document,
            Document.id == doc_id,
            status=DocumentStatus.FAILED,
            error_message=error[:_MAX_ERROR_CHARS],
        )

    # -----------------------------------------------------------------------
    # Invoices
    # -----------------------------------------------------------------------

    def create_invoice(
        self,
        invoice_id: str,
        user_id: str,
        thread_id: str,
        filename: str,
        file_size: int,
        booking_id: str | None = None,
    ) -> Invoice:
        invoice = Invoice(
            invoice_id=invoice_id,
            user_id=user_id,
            thread_id=thread_id,
            booking_id=booking_id,
            filename=filename,
            file_size=file_size,
            status=DocumentStatus.PENDING,
            processed=False,
        )
        with self._db.session() as session:
            session.add(invoice)
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        with self._db.session() as session:
            return session.get(Invoice, invoice_id)

    def set_invoice_job(self, invoice_id: str, job_id: str) -> None:
        self._update(Invoice, Invoice.invoice_id == invoice_id, job_id=job_id)

    def mark_invoice_processing(self, invoice_id: str) -> None:
        self._update(
            Invoice, Invoice.invoice_id == invoice_id,
            status=DocumentStatus.PROCESSING,
        )

    def complete_invoice(
        self,
        invoice_id: str,
        document_type: str,
        extracted_data: dict,
    ) -> None:
        self._update(
            Invoice,
            Invoice.invoice_id == invoice_id,
            status=DocumentStatus.COMPLETED,
            processed=True,
            document_type=document_type,
            extracted_data=extracted_data,
            error_message=None,
            processed_at=utcnow(),
        )

    def fail_invoice(self, invoice_id: str, error: str) -> None:
        self._update(
            Invoice,
            Invoice.invoice_id == invoice_id,
            status=DocumentStatus.FAILED,
            processed=False,
            error_message=error[:_MAX_ERROR_CHARS],
        )

    def list_invoices(self, thread_id: str) -> list[Invoice]:
        with self._db.session() as session:
            rows = session.scalars(
                select(Invoice)
                .where(Invoice.thread_id == thread_id)
                .order_by(Invoice.uploaded_at)
            )
            return list(rows)

    def link_invoices(self, invoice_ids: Iterable[str], booking_id: str) -> int:
        ids = list(invoice_ids)
        if not ids:
            return 0
        with self._db.session() as session:
            result = session.execute(
                update(Invoice)
                .where(Invoice.invoice_id.in_(ids))
                .values(booking_id=booking_id)
            )
            return result.rowcount or 0

    # -----------------------------------------------------------------------
    # Quotes
    # -----------------------------------------------------------------------

    def save_quote(self, session_state: Session) -> int:
        """Persist the quote of a completed session; returns the row id."""
        quote = session_state.quote
        if quote is None:
            raise ValueError(f"Session {session_state.thread_id} has no quote")

        details = quote.shipment_details
        row = ShippingQuote(
            thread_id=session_state.thread_id,
            user_id=session_state.user_id,
            origin=session_state.shipment_data.origin,
            destination=session_state.shipment_data.destination,
            route_type=details.route_type,
            service_level=details.service_level,
            total_estimate=quote.total_estimate,
            currency=quote.currency,
            quote_data=quote.model_dump(mode="json", by_alias=True),
            valid_until=quote.valid_until,
        )
        with self._db.session() as session:
            session.add(row)
            session.flush()
            quote_id = row.id

        logger.info(
            "Saved quote %d for thread %s (%.2f %s)",
            quote_id, session_state.thread_id, quote.total_estimate, quote.currency,
        )
        return quote_id

    def list_quotes(self, thread_id: str) -> list[ShippingQuote]:
        with self._db.session() as session:
            return list(session.scalars(
                select(ShippingQuote)
                .where(ShippingQuote.thread_id == thread_id)
                .order_by(ShippingQuote.created_at)
            ))

    # -----------------------------------------------------------------------
    # Shipments
    # -----------------------------------------------------------------------

    def create_shipment(
        self,
        tracking_number: str,
        booking_id: str,
        user_id: str,
        thread_id: str,
        carrier_id: str,
        carrier_name: str,
        service_level: str,
        rate: float,
        currency: str,
        status: str,
        origin: str | None = None,
        destination: str | None = None,
        estimated_delivery: datetime | None = None,
    ) -> Shipment:
        shipment = Shipment(
            tracking_number=tracking_number,
            booking_id=booking_id,
            user_id=user_id,
            thread_id=thread_id,
            carrier_id=carrier_id,
            carrier_name=carrier_name,
            service_level=service_level,
            rate=rate,
            currency=currency,
            status=status,
            origin=origin,
            destination=destination,
            estimated_delivery=estimated_delivery,
        )
        with self._db.session() as session:
            session.add(shipment)
        return shipment

    def get_shipment(self, tracking_number: str) -> Shipment | None:
        with self._db.session() as session:
            return session.get(Shipment, tracking_number)

    def list_shipments(self, user_id: str) -> list[Shipment]:
        with self._db.session() as session:
            return list(session.scalars(
                select(Shipment)
                .where(Shipment.user_id == user_id)
                .order_by(Shipment.created_at.desc())
            ))

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _update(self, model: type, criterion, **values) -> None:
        with self._db.session() as session:
            session.execute(update(model).where(criterion).values(**values))
