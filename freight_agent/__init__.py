# =============================================================================
# Freight Quote Agent
# =============================================================================
# A conversational freight-quoting agent with a background document pipeline.
# A checkpointed conversation collects shipment fields turn by turn and emits
# a ranked carrier quote; uploaded documents and invoices are classified,
# chunked and indexed by Celery workers that feed results back into the
# same conversation checkpoint.
#
# Package structure:
#   freight_agent/
#   ├── agents/     → LangGraph conversation workflow + reply generation
#   ├── api/        → Thin FastAPI surface (start/message/book, uploads)
#   ├── context.py  → Composition root (init_context / shutdown_context)
#   ├── db/         → Sync SQLAlchemy engine and ORM models
#   ├── models/     → Pydantic V2 schemas (session, quote, jobs, API)
#   ├── services/   → Session store, quote engine, extraction, LLM, parsing,
#   │                  chunking, embeddings, vector index, records, booking
#   └── workers/    → Celery app, job queue, document pipeline, tasks
# =============================================================================

__version__ = "0.1.0"
