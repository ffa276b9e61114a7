# =============================================================================
# Document Pipeline: Load → Classify → Chunk → Index → Persist → Cleanup
# =============================================================================
#
# Runs one document or invoice job to completion inside a worker process:
#
#   Stage 1/6  load      parse the uploaded file; near-empty text fails fast
#                        with ContentValidationError (no model call is made)
#   Stage 2/6  classify  LLM classification / invoice extraction; never
#                        raises (falls back to an "unknown" analysis)
#   Stage 3/6  chunk     recursive token-bounded split with overlap
#   Stage 4/6  index     embed + upsert in fixed-size batches; a failed batch
#                        is logged and skipped
#   Stage 5/6  persist   relational record; for invoices, the session's
#                        invoice reference is marked processed
#   Stage 6/6  cleanup   delete the uploaded file, always
#
# Any exception from stages 1-5 marks the owning record failed and is
# re-raised for the job queue to retry or fail the job.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

from freight_agent.errors import ContentValidationError
from freight_agent.models.jobs import CollectionStrategy, JobRecord
from freight_agent.models.session import InvoiceRef, Session, utcnow
from freight_agent.services.chunker import ChunkResult, chunk_document
from freight_agent.services.classifier import DocumentClassifier
from freight_agent.services.embedder import Embedder
from freight_agent.services.parser import DocumentLoader
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import SessionStore
from freight_agent.services.vectorstore import ChromaVectorIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocumentPipeline:
    """Ingestion stages shared by the document and invoice tasks."""

    def __init__(
        self,
        loader: DocumentLoader,
        classifier: DocumentClassifier,
        embedder: Embedder,
        index: ChromaVectorIndex,
        records: SqlRecordStore,
        sessions: SessionStore,
        chunk_size: int = 256,
        chunk_overlap: int = 50,
        batch_size: int = 25,
        write_retries: int = 3,
    ) -> None:
        self._loader = loader
        self._classifier = classifier
        self._embedder = embedder
        self._index = index
        self._records = records
        self._sessions = sessions
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._batch_size = batch_size
        self._write_retries = write_retries

        # The classifier's client is async; workers are sync, so the
        # pipeline owns one loop and drives it one call at a time.
        self._loop = asyncio.new_event_loop()
        self._loop_lock = threading.Lock()

    def close(self) -> None:
        with self._loop_lock:
            if not self._loop.is_closed():
                self._loop.close()

    # -----------------------------------------------------------------------
    # Document jobs
    # -----------------------------------------------------------------------

    def process_document(self, job: JobRecord) -> dict[str, Any]:
        payload = job.document_payload()
        doc_id = payload.doc_id
        tag = f"[{job.id}]"

        try:
            self._records.mark_document_processing(doc_id)

            logger.info("%s Stage 1/6: Loading %s", tag, payload.filename)
            parsed = self._loader.load(payload.file_ref, payload.filename)

            logger.info("%s Stage 2/6: Classifying document", tag)
            analysis = self.run_async(
                self._classifier.classify_document(parsed.text, payload.filename)
            )

            logger.info("%s Stage 3/6: Chunking", tag)
            chunks = self._chunk(parsed)

            logger.info("%s Stage 4/6: Indexing %d chunks", tag, len(chunks))
            index_name = self._index.index_for(
                payload.collection_strategy, payload.owner_id, doc_id,
            )
            if payload.collection_strategy == CollectionStrategy.DOCUMENT:
                self._index.reset(index_name)

            base_metadata = {
                **payload.metadata,
                "source": payload.filename,
                "doc_id": doc_id,
                "owner_id": payload.owner_id,
                "document_type": analysis.document_type,
                "confidence": analysis.confidence,
                "language": analysis.language,
                "topics": ", ".join(analysis.topics),
                "processed_at": utcnow().isoformat(),
            }
            stored = self._index_chunks(tag, index_name, doc_id, chunks, base_metadata)

            logger.info("%s Stage 5/6: Saving document record", tag)
            self._records.complete_document(
                doc_id,
                analysis=analysis.model_dump(mode="json", by_alias=True),
                collection_name=index_name,
                chunk_count=stored,
                page_count=parsed.page_count,
            )
        except Exception as e:
            logger.exception("%s Document %s failed: %s", tag, doc_id, e)
            self._record_failure(tag, self._records.fail_document, doc_id, e)
            raise
        finally:
            logger.info("%s Stage 6/6: Cleanup", tag)
            _remove_upload(payload.file_ref)

        logger.info(
            "%s Document %s complete: %d/%d chunks indexed into %s",
            tag, doc_id, stored, len(chunks), index_name,
        )
        return {
            "docId": doc_id,
            "collectionName": index_name,
            "chunks": stored,
            "totalChunks": len(chunks),
            "pageCount": parsed.page_count,
            "documentType": analysis.document_type,
            "confidence": analysis.confidence,
        }

    # -----------------------------------------------------------------------
    # Invoice jobs
    # -----------------------------------------------------------------------

    def process_invoice(self, job: JobRecord) -> dict[str, Any]:
        payload = job.invoice_payload()
        invoice_id = payload.invoice_id
        tag = f"[{job.id}]"

        try:
            self._records.mark_invoice_processing(invoice_id)

            logger.info("%s Stage 1/6: Loading invoice %s", tag, payload.filename)
            parsed = self._loader.load(payload.file_ref, payload.filename)

            logger.info("%s Stage 2/6: Analysing invoice", tag)
            analysis = self.run_async(
                self._classifier.analyze_invoice(parsed.text, payload.filename)
            )

            logger.info("%s Stage 3/6: Chunking", tag)
            chunks = self._chunk(parsed)

            logger.info("%s Stage 4/6: Indexing %d chunks", tag, len(chunks))
            index_name = self._index.invoice_index_for(payload.owner_id)
            base_metadata = {
                "source": payload.filename,
                "invoice_id": invoice_id,
                "owner_id": payload.owner_id,
                "thread_id": payload.session_thread_id,
                "booking_id": payload.booking_id or "",
                "document_type": analysis.document_type,
                "confidence": analysis.confidence,
                "processed_at": utcnow().isoformat(),
            }
            stored = self._index_chunks(tag, index_name, invoice_id, chunks, base_metadata)

            logger.info("%s Stage 5/6: Saving invoice record", tag)
            self._records.complete_invoice(
                invoice_id,
                document_type=analysis.document_type,
                extracted_data=analysis.model_dump(mode="json", by_alias=True),
            )
            linked = self._mark_session_invoice(
                payload.session_thread_id,
                InvoiceRef(
                    invoice_id=invoice_id,
                    filename=payload.filename,
                    processed=True,
                    document_type=analysis.document_type,
                ),
            )
        except Exception as e:
            logger.exception("%s Invoice %s failed: %s", tag, invoice_id, e)
            self._record_failure(tag, self._records.fail_invoice, invoice_id, e)
            raise
        finally:
            logger.info("%s Stage 6/6: Cleanup", tag)
            _remove_upload(payload.file_ref)

        return {
            "invoiceId": invoice_id,
            "collectionName": index_name,
            "chunks": stored,
            "totalChunks": len(chunks),
            "documentType": analysis.document_type,
            "confidence": analysis.confidence,
            "readyForBooking": analysis.validation.ready_for_booking,
            "sessionUpdated": linked,
        }

    # -----------------------------------------------------------------------
    # Stage helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _record_failure(
        tag: str,
        fail: Callable[[str, str], None],
        record_id: str,
        error: Exception,
    ) -> None:
        """Mark the record failed; the stage error stays the one re-raised."""
        try:
            fail(record_id, str(error))
        except Exception:
            logger.exception("%s Could not mark %s failed", tag, record_id)

    def _chunk(self, parsed) -> list[ChunkResult]:
        chunks = chunk_document(parsed, self._chunk_size, self._chunk_overlap)
        if not chunks:
            raise ContentValidationError(f"No indexable text in {parsed.filename}")
        return chunks

    def _index_chunks(
        self,
        tag: str,
        index_name: str,
        source_id: str,
        chunks: list[ChunkResult],
        base_metadata: dict[str, Any],
    ) -> int:
        """Embed and upsert in batches; returns how many chunks were stored."""
        stored = 0
        batches = range(0, len(chunks), self._batch_size)
        for number, start in enumerate(batches, start=1):
            batch = chunks[start : start + self._batch_size]
            try:
                embeddings = self._embedder.embed_batch([c.content for c in batch])
                stored += self._index.upsert(
                    index_name,
                    ids=[f"{source_id}_chunk{c.chunk_index}" for c in batch],
                    contents=[c.content for c in batch],
                    embeddings=embeddings,
                    metadatas=[{**base_metadata, **c.metadata} for c in batch],
                )
            except Exception as e:
                logger.warning(
                    "%s Batch %d/%d (%d chunks) not indexed: %s",
                    tag, number, len(batches), len(batch), e,
                )

        if stored == 0:
            logger.warning("%s No chunks were indexed into %s", tag, index_name)
        return stored

    def _mark_session_invoice(self, thread_id: str, ref: InvoiceRef) -> bool:
        """Flag the session's reference as processed; False if the session is gone."""

        def _mark(current: Session) -> Session:
            invoices = current.shipment_data.invoices
            for existing in invoices:
                if existing.invoice_id == ref.invoice_id:
                    existing.processed = True
                    existing.document_type = ref.document_type
                    break
            else:
                invoices.append(ref)
            return current

        updated = self._sessions.update(thread_id, _mark, retries=self._write_retries)
        if updated is None:
            logger.info("Session %s no longer exists; invoice ref not added", thread_id)
            return False
        return True

    def run_async(self, coro: Coroutine[Any, Any, T]) -> T:
        with self._loop_lock:
            return self._loop.run_until_complete(coro)


def _remove_upload(file_ref: str) -> None:
    try:
        Path(file_ref).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not delete upload %s: %s", file_ref, e)
