# =============================================================================
# API Tests: FastAPI TestClient over an In-Memory Context
# =============================================================================
#
# The context uses SQLite, in-memory sessions and jobs, a scripted LLM and
# a no-op job dispatcher, so uploads stay queued and nothing leaves the
# process.
# =============================================================================

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from freight_agent.api.app import create_app
from freight_agent.config import Settings
from freight_agent.context import init_context, shutdown_context
from freight_agent.services.llm import LLMResponse

SHIPMENT_FIELDS = {
    "origin": "Mumbai, India",
    "destination": "New York, USA",
    "cargo": "electronics",
    "weight": "50kg",
}


def _scripted_llm() -> AsyncMock:
    """Extraction returns the full shipment; replies ask to quote."""

    async def _complete(messages, system=None, temperature=None, max_tokens=None):
        if system and system.startswith("You extract"):
            content = json.dumps(SHIPMENT_FIELDS)
        else:
            content = json.dumps({"readyToQuote": True, "reply": "Generating your quote."})
        return LLMResponse(content=content, model="test", input_tokens=0, output_tokens=0)

    llm = AsyncMock()
    llm.complete.side_effect = _complete
    return llm


@pytest.fixture
def client(tmp_path):
    settings = Settings(
        _env_file=None,
        database_url="sqlite://",
        upload_dir=str(tmp_path / "uploads"),
        session_backend="memory",
        job_backend="memory",
    )
    dispatched = []
    ctx = init_context(
        settings,
        llm=_scripted_llm(),
        worker_llm=AsyncMock(),
        embedder=MagicMock(),
        index=MagicMock(),
        dispatcher=lambda record, countdown: dispatched.append(record.id),
    )
    with TestClient(create_app(settings, context=ctx)) as test_client:
        test_client.dispatched = dispatched
        yield test_client
    shutdown_context(ctx)


def _start(client) -> str:
    response = client.post("/shipping/start", json={"userId": "user_1"})
    assert response.status_code == 200
    return response.json()["threadId"]


# ---------------------------------------------------------------------------
# Test: Conversation
# ---------------------------------------------------------------------------


class TestConversationEndpoints:
    def test_start_returns_greeting(self, client):
        body = client.post("/shipping/start", json={"userId": "user_1"}).json()
        assert body["threadId"].startswith("thread_")
        assert body["reply"].startswith("Hello! I'm your AI shipping agent.")
        assert body["phase"] == "route_collection"
        assert body["completed"] is False
        assert body["quote"] is None
        assert body["version"] == 1

    def test_message_generates_quote(self, client):
        thread_id = _start(client)

        body = client.post(
            "/shipping/message",
            json={"threadId": thread_id, "message": "50kg electronics Mumbai to New York"},
        ).json()

        assert body["completed"] is True
        assert body["phase"] == "quote_generated"
        assert body["shipmentData"]["origin"] == "Mumbai, India"
        assert len(body["quote"]["quotes"]) == 3
        assert body["quote"]["recommendedQuote"]["carrierId"] == "dhl_express_001"

    def test_unknown_thread_is_404(self, client):
        response = client.post(
            "/shipping/message", json={"threadId": "thread_nope", "message": "hi"},
        )
        assert response.status_code == 404

    def test_empty_message_rejected(self, client):
        thread_id = _start(client)
        response = client.post("/shipping/message", json={"threadId": thread_id, "message": ""})
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Test: Booking and Tracking
# ---------------------------------------------------------------------------


class TestBookingEndpoints:
    def test_book_then_track(self, client):
        thread_id = _start(client)
        client.post("/shipping/message", json={"threadId": thread_id, "message": "quote please"})

        booking = client.post(
            "/shipping/book",
            json={"threadId": thread_id, "carrierId": "ups_worldwide_003"},
        )
        assert booking.status_code == 200
        body = booking.json()
        assert body["carrierId"] == "ups_worldwide_003"
        assert body["rate"] == 598.0

        tracked = client.get(f"/track/{body['trackingNumber']}")
        assert tracked.status_code == 200
        assert tracked.json()["status"] == "pickup_scheduled"

        listing = client.get("/shipments/user_1").json()
        assert listing["total"] == 1
        assert listing["active"][0]["bookingId"] == body["bookingId"]

    def test_book_without_quote_is_400(self, client):
        thread_id = _start(client)
        response = client.post(
            "/shipping/book", json={"threadId": thread_id, "carrierId": "dhl_express_001"},
        )
        assert response.status_code == 400

    def test_unknown_tracking_number_is_404(self, client):
        assert client.get("/track/FCP0000000000").status_code == 404


# ---------------------------------------------------------------------------
# Test: Uploads and Jobs
# ---------------------------------------------------------------------------


class TestUploadEndpoints:
    def test_document_upload_is_queued(self, client):
        response = client.post(
            "/documents",
            data={"ownerId": "user_1", "collectionStrategy": "document", "metadata": '{"a": 1}'},
            files={"file": ("bl.txt", b"bill of lading text", "text/plain")},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["fileSize"] == 19
        assert client.dispatched == [body["jobId"]]

        job = client.get(f"/jobs/{body['jobId']}").json()
        assert job["status"] == "waiting"
        assert job["queue"] == "document-ingestion"
        assert job["attempts"] == 0
        assert job["maxAttempts"] == 3

    def test_bad_metadata_is_400(self, client):
        response = client.post(
            "/documents",
            data={"ownerId": "user_1", "metadata": "[1, 2]"},
            files={"file": ("bl.txt", b"text", "text/plain")},
        )
        assert response.status_code == 400

    def test_empty_file_is_400(self, client):
        response = client.post(
            "/documents",
            data={"ownerId": "user_1"},
            files={"file": ("bl.txt", b"", "text/plain")},
        )
        assert response.status_code == 400

    def test_invoice_upload_and_listing(self, client):
        thread_id = _start(client)

        response = client.post(
            "/shipping/invoices",
            data={"threadId": thread_id},
            files={"file": ("invoice.pdf", b"%PDF-1.4", "application/pdf")},
        )
        assert response.status_code == 202
        invoice_id = response.json()["id"]

        listing = client.get(f"/shipping/invoices/{thread_id}").json()
        assert listing["threadId"] == thread_id
        assert [i["invoiceId"] for i in listing["invoices"]] == [invoice_id]
        assert listing["invoices"][0]["status"] == "pending"

    def test_invoice_for_unknown_thread_is_404(self, client):
        response = client.post(
            "/shipping/invoices",
            data={"threadId": "thread_nope"},
            files={"file": ("invoice.pdf", b"%PDF-1.4", "application/pdf")},
        )
        assert response.status_code == 404

    def test_unknown_job_is_404(self, client):
        assert client.get("/jobs/nope").status_code == 404


class TestHealth:
    def test_reports_both_queues(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert [q["name"] for q in body["queues"]] == ["document-ingestion", "invoice-ingestion"]
        invoice = body["queues"][1]
        assert (invoice["concurrency"], invoice["rateLimit"], invoice["maxAttempts"]) == (1, 5, 2)
        assert invoice["recentCompleted"] == []
        assert invoice["stalled"] == []
        assert invoice["stalledAfterSeconds"] == 900.0
