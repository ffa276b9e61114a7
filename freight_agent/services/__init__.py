# =============================================================================
# Services Package: Core Business Logic
# =============================================================================
# Contains the core logic, separated from API handlers and Celery tasks:
#   - session_store.py: Versioned checkpoint store (in-memory, Redis)
#   - quote_engine.py: Deterministic carrier quotes from rule tables
#   - extraction.py: Free text → shipment field updates via the LLM
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - parser.py: Upload loading (Docling for PDFs, plain text otherwise)
#   - chunker.py: Separator-aware chunking measured in tiktoken tokens
#   - embedder.py: Batch embedding generation (OpenAI-compatible API)
#   - vectorstore.py: ChromaDB index per collection strategy
#   - classifier.py: Document classification / invoice analysis
#   - records.py: Relational records (documents, invoices, quotes, shipments)
#   - booking.py: Booking, tracking and shipment listing
#   - uploads.py: Accept uploads and enqueue ingestion jobs
#   - rate_limiter.py: Sliding-window limiter for job queues
# =============================================================================
