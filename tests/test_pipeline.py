# =============================================================================
# Unit Tests: Document Pipeline
# =============================================================================
#
# Runs the six ingestion stages on real text files with a mocked LLM,
# embedder and vector index, and real SQLite records.
# =============================================================================

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from freight_agent.db.engine import Database
from freight_agent.db.models import DocumentStatus
from freight_agent.errors import ContentValidationError, ExternalServiceError
from freight_agent.models.jobs import (
    CollectionStrategy,
    DocumentJobPayload,
    InvoiceJobPayload,
    JobRecord,
    JobType,
)
from freight_agent.models.session import InvoiceRef, Session
from freight_agent.services.classifier import DocumentClassifier
from freight_agent.services.llm import LLMResponse
from freight_agent.services.parser import DocumentLoader
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import InMemorySessionStore
from freight_agent.workers.pipeline import DocumentPipeline

BILL_OF_LADING = (
    "BILL OF LADING\n\n"
    "Shipper: Acme Exports Pvt Ltd, Mumbai, India\n\n"
    "Consignee: Globex Imports LLC, New York, USA\n\n"
    "Vessel: MSC Aurora, Voyage 112W. Port of loading: Nhava Sheva.\n\n"
    "Description: 40 cartons of consumer electronics, gross weight 850 kg."
)


def _llm(answer: dict) -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=json.dumps(answer), model="test", input_tokens=0, output_tokens=0,
    )
    return llm


def _embedder() -> MagicMock:
    embedder = MagicMock()
    embedder.embed_batch.side_effect = lambda texts: [[0.1, 0.2, 0.3] for _ in texts]
    return embedder


def _index() -> MagicMock:
    index = MagicMock()
    index.index_for.return_value = "user_user_1"
    index.invoice_index_for.return_value = "invoices_user_1"
    index.upsert.side_effect = lambda name, ids, contents, embeddings, metadatas: len(ids)
    return index


def _make_pipeline(llm=None, embedder=None, index=None, **kwargs):
    db = Database("sqlite://")
    db.create_all()
    records = SqlRecordStore(db)
    sessions = InMemorySessionStore()
    pipeline = DocumentPipeline(
        loader=DocumentLoader(min_content_chars=50),
        classifier=DocumentClassifier(llm or _llm({"documentType": "bill_of_lading", "confidence": 0.9})),
        embedder=embedder or _embedder(),
        index=index or _index(),
        records=records,
        sessions=sessions,
        **kwargs,
    )
    return pipeline, records, sessions


def _document_job(path, strategy=CollectionStrategy.USER) -> JobRecord:
    payload = DocumentJobPayload(
        file_ref=str(path),
        filename="bl.txt",
        owner_id="user_1",
        doc_id="doc1",
        collection_strategy=strategy,
        metadata={"project": "q3"},
    )
    return JobRecord(
        id="job1",
        type=JobType.DOCUMENT,
        queue="document-ingestion",
        payload=payload.model_dump(mode="json", by_alias=True),
        max_attempts=3,
    )


def _invoice_job(path, thread_id="thread_1") -> JobRecord:
    payload = InvoiceJobPayload(
        file_ref=str(path),
        filename="invoice.txt",
        owner_id="user_1",
        session_thread_id=thread_id,
        invoice_id="inv_1",
    )
    return JobRecord(
        id="job2",
        type=JobType.INVOICE,
        queue="invoice-ingestion",
        payload=payload.model_dump(mode="json", by_alias=True),
        max_attempts=2,
    )


# ---------------------------------------------------------------------------
# Test: Document Jobs
# ---------------------------------------------------------------------------


class TestDocumentJobs:
    def test_all_stages(self, tmp_path):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        index = _index()
        pipeline, records, _ = _make_pipeline(index=index)
        records.create_document("doc1", "user_1", "bl.txt", 100, "user")

        result = pipeline.process_document(_document_job(upload))
        pipeline.close()

        assert result["docId"] == "doc1"
        assert result["collectionName"] == "user_user_1"
        assert result["chunks"] == result["totalChunks"] >= 1
        assert result["documentType"] == "bill_of_lading"
        assert not upload.exists()

        doc = records.get_document("doc1")
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.collection_name == "user_user_1"
        assert doc.analysis["documentType"] == "bill_of_lading"

        _, kwargs = index.upsert.call_args
        assert kwargs["ids"][0] == "doc1_chunk0"
        metadata = kwargs["metadatas"][0]
        assert metadata["project"] == "q3"
        assert metadata["document_type"] == "bill_of_lading"
        assert metadata["chunk_index"] == 0
        index.reset.assert_not_called()

    def test_short_content_rejected_before_classifier(self, tmp_path):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text("too short", encoding="utf-8")
        llm = _llm({})
        pipeline, records, _ = _make_pipeline(llm=llm)
        records.create_document("doc1", "user_1", "bl.txt", 9, "user")

        with pytest.raises(ContentValidationError):
            pipeline.process_document(_document_job(upload))
        pipeline.close()

        llm.complete.assert_not_called()
        assert records.get_document("doc1").status == DocumentStatus.FAILED
        assert not upload.exists()

    def test_failed_batch_is_skipped(self, tmp_path):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text(BILL_OF_LADING * 4, encoding="utf-8")
        embedder = _embedder()
        calls = []

        def _flaky(texts):
            calls.append(len(texts))
            if len(calls) == 1:
                raise ExternalServiceError("rate limited")
            return [[0.1, 0.2, 0.3] for _ in texts]

        embedder.embed_batch.side_effect = _flaky
        pipeline, records, _ = _make_pipeline(
            embedder=embedder, chunk_size=32, chunk_overlap=0, batch_size=1,
        )
        records.create_document("doc1", "user_1", "bl.txt", 100, "user")

        result = pipeline.process_document(_document_job(upload))
        pipeline.close()

        assert result["totalChunks"] == len(calls) > 1
        assert result["chunks"] == result["totalChunks"] - 1
        assert records.get_document("doc1").chunk_count == result["chunks"]

    def test_document_strategy_resets_index(self, tmp_path):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        index = _index()
        index.index_for.return_value = "doc_doc1"
        pipeline, records, _ = _make_pipeline(index=index)
        records.create_document("doc1", "user_1", "bl.txt", 100, "document")

        pipeline.process_document(_document_job(upload, CollectionStrategy.DOCUMENT))
        pipeline.close()

        index.index_for.assert_called_once_with(CollectionStrategy.DOCUMENT, "user_1", "doc1")
        index.reset.assert_called_once_with("doc_doc1")

    def test_unclassifiable_document_still_indexed(self, tmp_path):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        llm = AsyncMock()
        llm.complete.side_effect = ConnectionError("model down")
        pipeline, records, _ = _make_pipeline(llm=llm)
        records.create_document("doc1", "user_1", "bl.txt", 100, "user")

        result = pipeline.process_document(_document_job(upload))
        pipeline.close()

        assert result["documentType"] == "unknown"
        assert result["confidence"] == 0.2
        assert records.get_document("doc1").status == DocumentStatus.COMPLETED

    def test_index_failure_marks_record_failed(self, tmp_path):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        index = _index()
        index.index_for.side_effect = RuntimeError("chroma unreachable")
        pipeline, records, _ = _make_pipeline(index=index)
        records.create_document("doc1", "user_1", "bl.txt", 100, "user")

        with pytest.raises(RuntimeError):
            pipeline.process_document(_document_job(upload))
        pipeline.close()

        doc = records.get_document("doc1")
        assert doc.status == DocumentStatus.FAILED
        assert "chroma unreachable" in doc.error_message
        assert not upload.exists()

    def test_bookkeeping_failure_keeps_stage_error(self, tmp_path, monkeypatch):
        upload = tmp_path / "doc1_bl.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        index = _index()
        index.index_for.side_effect = RuntimeError("chroma unreachable")
        pipeline, records, _ = _make_pipeline(index=index)
        records.create_document("doc1", "user_1", "bl.txt", 100, "user")
        fail_document = MagicMock(side_effect=ConnectionError("database down"))
        monkeypatch.setattr(records, "fail_document", fail_document)

        with pytest.raises(RuntimeError, match="chroma unreachable"):
            pipeline.process_document(_document_job(upload))
        pipeline.close()

        fail_document.assert_called_once_with("doc1", "chroma unreachable")
        assert not upload.exists()


# ---------------------------------------------------------------------------
# Test: Invoice Jobs
# ---------------------------------------------------------------------------

INVOICE_ANALYSIS = {
    "documentType": "Commercial Invoice",
    "confidence": 0.85,
    "invoiceDetails": {"invoiceNumber": "INV-2025-001"},
    "validation": {"isComplete": True, "readyForBooking": True},
}


class TestInvoiceJobs:
    def _session_with_ref(self, sessions, processed=False):
        session = Session(thread_id="thread_1", user_id="user_1")
        if processed is not None:
            session.shipment_data.invoices.append(
                InvoiceRef(invoice_id="inv_1", filename="invoice.txt", processed=processed)
            )
        sessions.put("thread_1", session)

    def test_marks_session_reference(self, tmp_path):
        upload = tmp_path / "inv_1_invoice.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        pipeline, records, sessions = _make_pipeline(llm=_llm(INVOICE_ANALYSIS))
        records.create_invoice("inv_1", "user_1", "thread_1", "invoice.txt", 100)
        self._session_with_ref(sessions)

        result = pipeline.process_invoice(_invoice_job(upload))
        pipeline.close()

        assert result["invoiceId"] == "inv_1"
        assert result["collectionName"] == "invoices_user_1"
        assert result["readyForBooking"] is True
        assert result["sessionUpdated"] is True

        [ref] = sessions.get("thread_1").shipment_data.invoices
        assert ref.processed is True
        assert ref.document_type == "Commercial Invoice"

        invoice = records.get_invoice("inv_1")
        assert invoice.status == DocumentStatus.COMPLETED
        assert invoice.extracted_data["invoiceDetails"] == {"invoiceNumber": "INV-2025-001"}
        assert not upload.exists()

    def test_missing_reference_is_added(self, tmp_path):
        upload = tmp_path / "inv_1_invoice.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        pipeline, records, sessions = _make_pipeline(llm=_llm(INVOICE_ANALYSIS))
        records.create_invoice("inv_1", "user_1", "thread_1", "invoice.txt", 100)
        self._session_with_ref(sessions, processed=None)

        pipeline.process_invoice(_invoice_job(upload))
        pipeline.close()

        [ref] = sessions.get("thread_1").shipment_data.invoices
        assert (ref.invoice_id, ref.processed) == ("inv_1", True)

    def test_session_gone(self, tmp_path):
        upload = tmp_path / "inv_1_invoice.txt"
        upload.write_text(BILL_OF_LADING, encoding="utf-8")
        pipeline, records, sessions = _make_pipeline(llm=_llm(INVOICE_ANALYSIS))
        records.create_invoice("inv_1", "user_1", "thread_1", "invoice.txt", 100)

        result = pipeline.process_invoice(_invoice_job(upload))
        pipeline.close()

        assert result["sessionUpdated"] is False
        assert sessions.get("thread_1") is None
        assert records.get_invoice("inv_1").processed is True

    def test_unreadable_invoice_fails_record(self, tmp_path):
        upload = tmp_path / "inv_1_invoice.txt"
        upload.write_text("", encoding="utf-8")
        pipeline, records, sessions = _make_pipeline(llm=_llm(INVOICE_ANALYSIS))
        records.create_invoice("inv_1", "user_1", "thread_1", "invoice.txt", 0)
        self._session_with_ref(sessions)

        with pytest.raises(ContentValidationError):
            pipeline.process_invoice(_invoice_job(upload))
        pipeline.close()

        invoice = records.get_invoice("inv_1")
        assert invoice.status == DocumentStatus.FAILED
        assert invoice.processed is False
        assert sessions.get("thread_1").shipment_data.invoices[0].processed is False

    def test_bookkeeping_failure_keeps_load_error(self, tmp_path, monkeypatch):
        upload = tmp_path / "inv_1_invoice.txt"
        upload.write_text("", encoding="utf-8")
        pipeline, records, _ = _make_pipeline(llm=_llm(INVOICE_ANALYSIS))
        records.create_invoice("inv_1", "user_1", "thread_1", "invoice.txt", 0)
        monkeypatch.setattr(
            records, "fail_invoice", MagicMock(side_effect=ConnectionError("database down")),
        )

        with pytest.raises(ContentValidationError):
            pipeline.process_invoice(_invoice_job(upload))
        pipeline.close()

        assert records.get_invoice("inv_1").status == DocumentStatus.PROCESSING
