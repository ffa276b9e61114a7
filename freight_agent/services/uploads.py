# =============================================================================
# Upload Service: Accept Files and Enqueue Ingestion Jobs
# =============================================================================
#
# The synchronous half of ingestion. An upload is accepted when:
#   1. the content is non-empty
#   2. it is written to `upload_dir` as `<recordId>_<filename>`
#   3. its relational record exists (status pending)
#   4. (invoices) the session holds an InvoiceRef + "Invoice uploaded" note
#   5. a job is on the queue, and its id is stored on the record
#
# If steps 3-5 fail (database, checkpoint store or broker down) the file is
# deleted, the record is marked failed and the invoice ref and note are
# taken back out of the session before the error propagates.
#
# Everything after that happens in the worker (see workers/pipeline.py),
# which also deletes the file.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from freight_agent.errors import ContentValidationError, SessionNotFoundError
from freight_agent.models.jobs import (
    CollectionStrategy,
    DocumentJobPayload,
    InvoiceJobPayload,
    JobType,
)
from freight_agent.models.session import InvoiceRef, Message, Role, Session
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import SessionStore
from freight_agent.workers.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class UploadReceipt:
    record_id: str
    job_id: str
    filename: str
    file_size: int


class UploadService:
    def __init__(
        self,
        upload_dir: str,
        records: SqlRecordStore,
        sessions: SessionStore,
        jobs: JobQueue,
        write_retries: int = 3,
    ) -> None:
        self._upload_dir = Path(upload_dir)
        self._records = records
        self._sessions = sessions
        self._jobs = jobs
        self._write_retries = write_retries

    def upload_document(
        self,
        owner_id: str,
        filename: str,
        content: bytes,
        collection_strategy: CollectionStrategy = CollectionStrategy.USER,
        metadata: dict[str, Any] | None = None,
    ) -> UploadReceipt:
        """
        Store a document upload and enqueue its ingestion job.

        Raises:
            ContentValidationError: The upload is empty.
        """
        name = _safe_name(filename)
        doc_id = uuid.uuid4().hex
        file_ref = self._write(doc_id, name, content)

        try:
            self._records.create_document(
                doc_id=doc_id,
                owner_id=owner_id,
                filename=name,
                file_size=len(content),
                collection_strategy=collection_strategy.value,
            )
            job = self._jobs.enqueue(
                JobType.DOCUMENT,
                DocumentJobPayload(
                    file_ref=file_ref,
                    filename=name,
                    owner_id=owner_id,
                    doc_id=doc_id,
                    collection_strategy=collection_strategy,
                    metadata=metadata or {},
                ),
            )
        except Exception as exc:
            logger.error("Could not enqueue document %s: %s", doc_id, exc)
            self._discard(file_ref)
            self._cleanup(self._records.fail_document, doc_id, f"Enqueue failed: {exc}")
            raise

        self._records.set_document_job(doc_id, job.id)

        logger.info("Accepted document %s (%s, %d bytes), job %s", doc_id, name, len(content), job.id)
        return UploadReceipt(doc_id, job.id, name, len(content))

    def upload_invoice(
        self,
        thread_id: str,
        filename: str,
        content: bytes,
        booking_id: str | None = None,
    ) -> UploadReceipt:
        """
        Store an invoice for a conversation and enqueue its analysis job.

        Raises:
            SessionNotFoundError: The thread has no checkpoint.
            ContentValidationError: The upload is empty.
        """
        session = self._sessions.get(thread_id)
        if session is None:
            raise SessionNotFoundError(thread_id)

        name = _safe_name(filename)
        invoice_id = f"inv_{uuid.uuid4().hex[:16]}"
        file_ref = self._write(invoice_id, name, content)
        note = f"Invoice uploaded: {name}"
        attached = False

        def _attach(current: Session) -> Session:
            current.shipment_data.invoices.append(
                InvoiceRef(invoice_id=invoice_id, filename=name)
            )
            current.messages.append(Message(role=Role.SYSTEM, content=note))
            return current

        try:
            self._records.create_invoice(
                invoice_id=invoice_id,
                user_id=session.user_id,
                thread_id=thread_id,
                filename=name,
                file_size=len(content),
                booking_id=booking_id,
            )
            if self._sessions.update(thread_id, _attach, retries=self._write_retries) is None:
                raise SessionNotFoundError(thread_id)
            attached = True

            job = self._jobs.enqueue(
                JobType.INVOICE,
                InvoiceJobPayload(
                    file_ref=file_ref,
                    filename=name,
                    owner_id=session.user_id,
                    session_thread_id=thread_id,
                    invoice_id=invoice_id,
                    booking_id=booking_id,
                ),
            )
        except Exception as exc:
            logger.error("Could not enqueue invoice %s: %s", invoice_id, exc)
            self._discard(file_ref)
            self._cleanup(self._records.fail_invoice, invoice_id, f"Enqueue failed: {exc}")
            if attached:
                self._cleanup(self._detach, thread_id, invoice_id, note)
            raise

        self._records.set_invoice_job(invoice_id, job.id)

        logger.info("Accepted invoice %s for %s, job %s", invoice_id, thread_id, job.id)
        return UploadReceipt(invoice_id, job.id, name, len(content))

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _write(self, record_id: str, name: str, content: bytes) -> str:
        if not content:
            raise ContentValidationError(f"Uploaded file {name} is empty")
        self._upload_dir.mkdir(parents=True, exist_ok=True)
        path = self._upload_dir / f"{record_id}_{name}"
        path.write_bytes(content)
        return str(path)

    def _detach(self, thread_id: str, invoice_id: str, note: str) -> None:
        """Remove an invoice's ref and its upload note from the session."""

        def _remove(current: Session) -> Session:
            current.shipment_data.invoices = [
                ref for ref in current.shipment_data.invoices
                if ref.invoice_id != invoice_id
            ]
            for i in range(len(current.messages) - 1, -1, -1):
                message = current.messages[i]
                if message.role == Role.SYSTEM and message.content == note:
                    del current.messages[i]
                    break
            return current

        self._sessions.update(thread_id, _remove, retries=self._write_retries)

    @staticmethod
    def _discard(file_ref: str) -> None:
        try:
            Path(file_ref).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove upload %s: %s", file_ref, e)

    @staticmethod
    def _cleanup(step, *args) -> None:
        # Runs while another error propagates; that error is the one raised
        try:
            step(*args)
        except Exception:
            logger.exception("Rollback step %s failed", getattr(step, "__name__", step))


def _safe_name(filename: str) -> str:
    name = Path(filename or "").name.strip()
    if not name:
        raise ContentValidationError("Uploaded file has no name")
    return name
