# =============================================================================
# Vector Index: ChromaDB Collections per Owner / Document
# =============================================================================
#
# Chunks are written to a named collection chosen by the job's collection
# strategy:
#
#   user      → user_<ownerId>       (all of one user's documents)
#   document  → doc_<docId>          (reset before every ingestion)
#   shared    → settings.shared_collection
#   invoices  → invoices_<ownerId>
#
# Upserts are best-effort per batch: the pipeline calls `upsert()` once per
# batch and a failing batch does not undo earlier ones.
#
# ChromaDB supports both in-process and client/server modes:
# - In-process (default): no extra infra, data held in memory
# - Client/server: set CHROMA_URL for a Docker deployment
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from urllib.parse import urlparse

import chromadb

from freight_agent.config import Settings
from freight_agent.models.jobs import CollectionStrategy

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")


class ChromaVectorIndex:
    """Thin wrapper over a Chroma client, one collection per index name."""

    def __init__(self, client: chromadb.ClientAPI, shared_collection: str) -> None:
        self._client = client
        self._shared = shared_collection

    # -----------------------------------------------------------------------
    # Naming
    # -----------------------------------------------------------------------

    def index_for(
        self,
        strategy: CollectionStrategy,
        owner_id: str,
        doc_id: str,
    ) -> str:
        if strategy == CollectionStrategy.DOCUMENT:
            return collection_name(f"doc_{doc_id}")
        if strategy == CollectionStrategy.SHARED:
            return collection_name(self._shared)
        return collection_name(f"user_{owner_id}")

    def invoice_index_for(self, owner_id: str) -> str:
        return collection_name(f"invoices_{owner_id}")

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def reset(self, index_name: str) -> None:
        """Drop `index_name` if it exists."""
        existing = {_name_of(c) for c in self._client.list_collections()}
        if index_name in existing:
            self._client.delete_collection(index_name)
            logger.info("Cleared collection: %s", index_name)

    def upsert(
        self,
        index_name: str,
        ids: list[str],
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> int:
        """Write one batch; returns the number of chunks stored."""
        collection = self._client.get_or_create_collection(
            name=index_name,
            metadata={"hnsw:space": "cosine"},
        )
        collection.upsert(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=[_sanitise_chroma_metadata(m) for m in metadatas],
        )
        logger.debug("Upserted %d chunks into %s", len(ids), index_name)
        return len(ids)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def count(self, index_name: str) -> int:
        existing = {_name_of(c) for c in self._client.list_collections()}
        if index_name not in existing:
            return 0
        return self._client.get_collection(index_name).count()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_vector_index(settings: Settings) -> ChromaVectorIndex:
    if settings.chroma_url:
        parsed = urlparse(settings.chroma_url)
        client = chromadb.HttpClient(
            host=parsed.hostname or settings.chroma_url,
            port=parsed.port or 8000,
            ssl=parsed.scheme == "https",
        )
        logger.info("Using ChromaDB server at %s", settings.chroma_url)
    else:
        client = chromadb.Client()
        logger.info("Using in-process ChromaDB")
    return ChromaVectorIndex(client, settings.shared_collection)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def collection_name(raw: str) -> str:
    """
    Coerce `raw` into a valid Chroma collection name.

    Chroma requires 3-63 characters of [a-zA-Z0-9._-], starting and
    ending with an alphanumeric character.
    """
    name = _INVALID_NAME_CHARS.sub("_", raw).strip("._-")[:63].rstrip("._-")
    return name.ljust(3, "0")


def _name_of(collection: object) -> str:
    # list_collections() yields names in chromadb>=0.6, objects before
    return collection if isinstance(collection, str) else collection.name


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool:
    - None → empty string
    - list → comma-separated string
    - dict → JSON string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, dict):
            sanitised[key] = json.dumps(value, default=str)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
