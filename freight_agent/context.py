# =============================================================================
# Application Context: Composition Root
# =============================================================================
#
# Every long-lived handle (Redis client, session store, job queue, LLM
# clients, vector index, database engine) is built here and handed to the
# components that need it by constructor. Nothing else creates clients.
#
#   ctx = init_context(settings)      # API lifespan / worker_process_init
#   ...
#   await aclose_context(ctx)         # API lifespan (closes async clients)
#   shutdown_context(ctx)             # worker_process_shutdown
#
# Two LLM clients are built: one for conversation turns (used on the API's
# event loop) and one for the pipeline (driven on the pipeline's own loop).
# Async HTTP clients must not cross event loops.
#
# Tests pass ready-made handles as keyword overrides.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from redis import Redis

from freight_agent.agents.responder import ReplyGenerator
from freight_agent.agents.workflow import ConversationWorkflow
from freight_agent.config import Settings
from freight_agent.db.engine import Database
from freight_agent.models.jobs import JobType
from freight_agent.services.booking import BookingService
from freight_agent.services.classifier import DocumentClassifier
from freight_agent.services.embedder import Embedder
from freight_agent.services.extraction import ExtractionAdapter
from freight_agent.services.llm import LLMProvider, create_llm_provider
from freight_agent.services.parser import DocumentLoader
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import SessionStore, create_session_store
from freight_agent.services.uploads import UploadService
from freight_agent.services.vectorstore import ChromaVectorIndex, create_vector_index
from freight_agent.workers.local import LocalWorkerPool
from freight_agent.workers.pipeline import DocumentPipeline
from freight_agent.workers.queue import (
    Dispatcher,
    JobQueue,
    QueuePolicy,
    celery_dispatcher,
    create_job_queue,
)

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    sessions: SessionStore
    job_queue: JobQueue
    llm: LLMProvider
    worker_llm: LLMProvider
    workflow: ConversationWorkflow
    db: Database
    records: SqlRecordStore
    booking: BookingService
    uploads: UploadService
    pipeline: DocumentPipeline
    embedder: Embedder
    index: ChromaVectorIndex
    redis: Redis | None = None
    worker_pool: LocalWorkerPool | None = None
    _closed: bool = field(default=False, repr=False)


def init_context(
    settings: Settings,
    *,
    sessions: SessionStore | None = None,
    llm: LLMProvider | None = None,
    worker_llm: LLMProvider | None = None,
    embedder: Embedder | None = None,
    index: ChromaVectorIndex | None = None,
    db: Database | None = None,
    dispatcher: Dispatcher | None = None,
    redis_client: Redis | None = None,
) -> AppContext:
    """
    Build every handle from `settings`.

    Keyword arguments replace the handle that would otherwise be built.
    `dispatcher` replaces the job transport: by default Celery for the
    redis job backend and a LocalWorkerPool for the memory backend.
    """
    uses_redis = "redis" in (settings.session_backend, settings.job_backend)
    if redis_client is None and uses_redis:
        redis_client = Redis.from_url(settings.redis_url)

    sessions = sessions or create_session_store(settings, redis_client)

    # --- Relational store ---
    db = db or Database(settings.database_url, echo=settings.debug)
    db.create_all()
    records = SqlRecordStore(db)

    # --- Model clients ---
    llm = llm or create_llm_provider(settings)
    worker_llm = worker_llm or create_llm_provider(settings)
    embedder = embedder or Embedder(settings)
    index = index or create_vector_index(settings)

    # --- Conversation ---
    workflow = ConversationWorkflow(
        store=sessions,
        extractor=ExtractionAdapter(llm),
        responder=ReplyGenerator(
            llm,
            history_window=settings.history_window,
        ),
        records=records,
        quote_validity_hours=settings.quote_validity_hours,
        write_retries=settings.session_write_retries,
    )

    # --- Jobs ---
    pipeline = DocumentPipeline(
        loader=DocumentLoader(min_content_chars=settings.min_content_chars),
        classifier=DocumentClassifier(
            worker_llm,
            char_limit=settings.classification_char_limit,
            max_tokens=settings.llm_max_tokens,
        ),
        embedder=embedder,
        index=index,
        records=records,
        sessions=sessions,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        batch_size=settings.vector_batch_size,
        write_retries=settings.session_write_retries,
    )

    worker_pool = None
    if dispatcher is None:
        if settings.job_backend == "redis":
            from freight_agent.workers.celery_app import celery_app

            dispatcher = celery_dispatcher(celery_app)
        else:
            worker_pool = LocalWorkerPool({
                t: QueuePolicy.from_settings(settings, t) for t in JobType
            })
            dispatcher = worker_pool.dispatch

    job_queue = create_job_queue(settings, dispatcher, redis_client)
    if worker_pool is not None:
        worker_pool.start(job_queue, {
            JobType.DOCUMENT: pipeline.process_document,
            JobType.INVOICE: pipeline.process_invoice,
        })

    ctx = AppContext(
        settings=settings,
        sessions=sessions,
        job_queue=job_queue,
        llm=llm,
        worker_llm=worker_llm,
        workflow=workflow,
        db=db,
        records=records,
        booking=BookingService(sessions, records, settings.session_write_retries),
        uploads=UploadService(
            settings.upload_dir,
            records,
            sessions,
            job_queue,
            settings.session_write_retries,
        ),
        pipeline=pipeline,
        embedder=embedder,
        index=index,
        redis=redis_client,
        worker_pool=worker_pool,
    )
    logger.info(
        "Context ready (sessions=%s, jobs=%s, llm=%s)",
        settings.session_backend, settings.job_backend, settings.llm_provider,
    )
    return ctx


async def aclose_context(ctx: AppContext) -> None:
    """Close the conversation LLM client on the running loop, then the rest."""
    await ctx.llm.close()
    shutdown_context(ctx)


def shutdown_context(ctx: AppContext) -> None:
    """Release every handle in `ctx` (idempotent)."""
    if ctx._closed:
        return
    ctx._closed = True

    if ctx.worker_pool is not None:
        ctx.worker_pool.shutdown(wait=True)

    try:
        ctx.pipeline.run_async(ctx.worker_llm.close())
    except Exception as e:
        logger.warning("Error closing pipeline LLM client: %s", e)
    ctx.pipeline.close()

    ctx.embedder.close()
    ctx.sessions.close()
    ctx.db.dispose()
    if ctx.redis is not None:
        ctx.redis.close()
    logger.info("Context closed")
