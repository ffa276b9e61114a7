# =============================================================================
# Unit Tests: Record Store and Booking Service
# =============================================================================
#
# Runs against in-memory SQLite, so no PostgreSQL is needed.
# =============================================================================

import pytest

from freight_agent.db.engine import Database
from freight_agent.db.models import DocumentStatus
from freight_agent.errors import BookingError, SessionNotFoundError
from freight_agent.models.session import (
    InvoiceRef,
    Message,
    Role,
    Session,
    ShipmentData,
)
from freight_agent.services.booking import BookingService
from freight_agent.services.quote_engine import quote
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import InMemorySessionStore

SHIPMENT = {
    "origin": "Mumbai, India",
    "destination": "New York, USA",
    "cargo": "electronics",
    "weight": "50kg",
}


def _records() -> SqlRecordStore:
    db = Database("sqlite://")
    db.create_all()
    return SqlRecordStore(db)


def _quoted_session(thread_id: str = "thread_1") -> Session:
    return Session(
        thread_id=thread_id,
        user_id="user_1",
        shipment_data=ShipmentData.model_validate(SHIPMENT),
        quote=quote(SHIPMENT),
        completed=True,
    )


def _shipment(records: SqlRecordStore, tracking: str, status: str = "pickup_scheduled"):
    return records.create_shipment(
        tracking_number=tracking,
        booking_id=f"BK_{tracking}",
        user_id="user_1",
        thread_id="thread_1",
        carrier_id="dhl_express_001",
        carrier_name="DHL Express",
        service_level="Standard",
        rate=506.0,
        currency="USD",
        status=status,
    )


# ---------------------------------------------------------------------------
# Test: Documents and Invoices
# ---------------------------------------------------------------------------


class TestDocumentRecords:
    def test_lifecycle(self):
        records = _records()
        records.create_document("doc1", "user_1", "bl.pdf", 1024, "user")
        records.set_document_job("doc1", "job1")
        records.mark_document_processing("doc1")
        assert records.get_document("doc1").status == DocumentStatus.PROCESSING

        records.complete_document(
            "doc1", {"documentType": "bill_of_lading"}, "user_user_1", 4, 2,
        )
        doc = records.get_document("doc1")
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.job_id == "job1"
        assert doc.analysis == {"documentType": "bill_of_lading"}
        assert (doc.collection_name, doc.chunk_count, doc.page_count) == ("user_user_1", 4, 2)
        assert doc.processed_at is not None

    def test_failure_message_truncated(self):
        records = _records()
        records.create_document("doc1", "user_1", "bl.pdf", 1, "user")
        records.fail_document("doc1", "x" * 5000)
        doc = records.get_document("doc1")
        assert doc.status == DocumentStatus.FAILED
        assert len(doc.error_message) == 1000

    def test_missing_document(self):
        assert _records().get_document("nope") is None


class TestInvoiceRecords:
    def test_lifecycle(self):
        records = _records()
        records.create_invoice("inv_1", "user_1", "thread_1", "a.pdf", 10)
        records.mark_invoice_processing("inv_1")
        records.complete_invoice("inv_1", "Commercial Invoice", {"confidence": 0.9})

        invoice = records.get_invoice("inv_1")
        assert invoice.status == DocumentStatus.COMPLETED
        assert invoice.processed is True
        assert invoice.document_type == "Commercial Invoice"

    def test_list_and_link(self):
        records = _records()
        records.create_invoice("inv_1", "user_1", "thread_1", "a.pdf", 10)
        records.create_invoice("inv_2", "user_1", "thread_1", "b.pdf", 10)
        records.create_invoice("inv_3", "user_1", "thread_2", "c.pdf", 10)

        assert sorted(i.invoice_id for i in records.list_invoices("thread_1")) == ["inv_1", "inv_2"]
        assert records.link_invoices(["inv_1", "inv_2"], "BK1") == 2
        assert records.link_invoices([], "BK1") == 0
        assert records.get_invoice("inv_1").booking_id == "BK1"
        assert records.get_invoice("inv_3").booking_id is None

    def test_failed_invoice_not_processed(self):
        records = _records()
        records.create_invoice("inv_1", "user_1", "thread_1", "a.pdf", 10)
        records.fail_invoice("inv_1", "boom")
        invoice = records.get_invoice("inv_1")
        assert invoice.status == DocumentStatus.FAILED
        assert invoice.processed is False


class TestQuoteRecords:
    def test_save_quote(self):
        records = _records()
        quote_id = records.save_quote(_quoted_session())
        [row] = records.list_quotes("thread_1")
        assert row.id == quote_id
        assert row.route_type == "international"
        assert row.total_estimate == 506.0
        assert len(row.quote_data["quotes"]) == 3

    def test_session_without_quote_rejected(self):
        with pytest.raises(ValueError):
            _records().save_quote(Session(thread_id="t", user_id="u"))


# ---------------------------------------------------------------------------
# Test: Booking
# ---------------------------------------------------------------------------


class TestBookingService:
    def _service(self, session: Session | None = None):
        store = InMemorySessionStore()
        if session is not None:
            store.put(session.thread_id, session)
        records = _records()
        return BookingService(store, records), store, records

    def test_books_quoted_offer(self):
        session = _quoted_session()
        session.shipment_data.invoices.append(InvoiceRef(invoice_id="inv_1", filename="a.pdf"))
        service, store, records = self._service(session)
        records.create_invoice("inv_1", "user_1", "thread_1", "a.pdf", 10)

        result = service.book("thread_1", "fedex_intl_002")

        assert result.booking_id.startswith("BK")
        assert result.tracking_number.startswith("FCP")
        assert len(result.tracking_number) == 13
        assert result.rate == 552.0
        assert result.service_level == "Standard"
        assert result.linked_invoices == 1

        shipment = service.track(result.tracking_number)
        assert shipment.status == "pickup_scheduled"
        assert shipment.origin == "Mumbai, India"
        assert records.get_invoice("inv_1").booking_id == result.booking_id

        note = store.get("thread_1").messages[-1]
        assert note.role == Role.SYSTEM
        assert result.tracking_number in note.content

    def test_service_level_override(self):
        service, _, _ = self._service(_quoted_session())
        result = service.book("thread_1", "dhl_express_001", service_level="Express")
        assert result.service_level == "Express"

    def test_unknown_thread(self):
        service, _, _ = self._service()
        with pytest.raises(SessionNotFoundError):
            service.book("missing", "dhl_express_001")

    def test_requires_quote(self):
        session = Session(thread_id="thread_1", user_id="user_1")
        session.messages.append(Message(role=Role.ASSISTANT, content="hi"))
        service, _, _ = self._service(session)
        with pytest.raises(BookingError):
            service.book("thread_1", "dhl_express_001")

    def test_unknown_carrier(self):
        service, _, _ = self._service(_quoted_session())
        with pytest.raises(BookingError):
            service.book("thread_1", "pigeon_post_999")

    def test_track_unknown(self):
        service, _, _ = self._service()
        assert service.track("FCPNOPE") is None

    def test_list_shipments(self):
        service, _, records = self._service()
        _shipment(records, "FCP1")
        _shipment(records, "FCP2", status="in_transit")
        _shipment(records, "FCP3", status="delivered")

        listing = service.list_shipments("user_1")

        assert listing.total == 3
        assert {s.tracking_number for s in listing.active} == {"FCP1", "FCP2"}
        assert len(listing.recent) == 3
        assert service.list_shipments("someone_else").total == 0
