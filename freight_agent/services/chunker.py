# =============================================================================
# Separator-Aware Text Chunker: tiktoken
# =============================================================================
#
# Splits loaded documents into overlapping chunks for the vector index.
#
# Boundaries prefer structure: paragraphs first, then lines, sentences and
# words, and only as a last resort arbitrary characters. Size and overlap
# are measured in tokens (cl100k_base, the encoding used by
# text-embedding-3-small) so every chunk fits the embedding model.
#
# ALGORITHM (recursive):
# 1. Pick the first separator in SEPARATORS that occurs in the text
# 2. Split on it; pieces that fit are merged greedily up to chunk_size,
#    carrying up to chunk_overlap tokens of trailing pieces into the next
#    chunk
# 3. Pieces that are still too large are split again with the remaining,
#    finer separators
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import tiktoken

from freight_agent.services.parser import ParsedDocument

logger = logging.getLogger(__name__)

SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ", "")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """A single chunk ready for embedding and storage."""

    content: str
    chunk_index: int  # 0-indexed position within the document
    token_count: int
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Tiktoken Encoder: Cached
# ---------------------------------------------------------------------------
# Loading the encoder reads a ~1.7MB BPE file from disk; it is loaded
# once per process and shared.
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    return len(_get_encoder().encode(text)) if text else 0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_document(
    parsed_doc: ParsedDocument,
    chunk_size: int = 256,
    chunk_overlap: int = 50,
) -> list[ChunkResult]:
    """
    Split a loaded document into overlapping token-bounded chunks.

    Args:
        parsed_doc: The loaded document.
        chunk_size: Maximum tokens per chunk.
        chunk_overlap: Tokens of trailing context repeated in the next chunk.

    Returns:
        List of ChunkResult in document order.
    """
    pieces = split_text(parsed_doc.text, chunk_size, chunk_overlap)
    chunks = [
        ChunkResult(
            content=piece,
            chunk_index=index,
            token_count=count_tokens(piece),
            metadata={"chunk_index": index, "total_chunks": len(pieces)},
        )
        for index, piece in enumerate(pieces)
    ]

    if chunks:
        logger.info(
            "Chunked '%s' into %d chunks (avg %d tokens/chunk)",
            parsed_doc.filename,
            len(chunks),
            sum(c.token_count for c in chunks) // len(chunks),
        )
    else:
        logger.warning("No chunks produced for '%s'", parsed_doc.filename)
    return chunks


def split_text(
    text: str,
    chunk_size: int = 256,
    chunk_overlap: int = 50,
) -> list[str]:
    """Split `text` into chunks of at most `chunk_size` tokens."""
    if chunk_overlap >= chunk_size:
        raise ValueError(
            f"chunk_overlap ({chunk_overlap}) must be smaller than "
            f"chunk_size ({chunk_size})"
        )
    if not text.strip():
        return []
    return _split(text, SEPARATORS, chunk_size, chunk_overlap)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _split(
    text: str,
    separators: tuple[str, ...],
    chunk_size: int,
    chunk_overlap: int,
) -> list[str]:
    separator = separators[-1]
    finer: tuple[str, ...] = ()
    for i, candidate in enumerate(separators):
        if candidate == "" or candidate in text:
            separator = candidate
            finer = separators[i + 1:]
            break

    pieces = text.split(separator) if separator else list(text)

    chunks: list[str] = []
    fitting: list[str] = []
    for piece in pieces:
        if count_tokens(piece) <= chunk_size:
            fitting.append(piece)
            continue
        if fitting:
            chunks.extend(_merge(fitting, separator, chunk_size, chunk_overlap))
            fitting = []
        if finer:
            chunks.extend(_split(piece, finer, chunk_size, chunk_overlap))
        else:
            chunks.append(piece)

    if fitting:
        chunks.extend(_merge(fitting, separator, chunk_size, chunk_overlap))
    return chunks


def _merge(
    pieces: list[str],
    separator: str,
    chunk_size: int,
    chunk_overlap: int,
) -> list[str]:
    """Greedily join pieces into chunks, keeping an overlapping tail."""
    sep_tokens = count_tokens(separator)
    merged: list[str] = []
    window: list[tuple[str, int]] = []
    total = 0

    for piece in pieces:
        size = count_tokens(piece)
        joined_size = total + size + (sep_tokens if window else 0)

        if window and joined_size > chunk_size:
            chunk = separator.join(p for p, _ in window).strip()
            if chunk:
                merged.append(chunk)
            # Drop from the front until only the overlap remains and the
            # next piece fits
            while window and (
                total > chunk_overlap
                or total + size + sep_tokens > chunk_size
            ):
                _, dropped = window.pop(0)
                total -= dropped + (sep_tokens if window else 0)
            total = max(total, 0)

        total += size + (sep_tokens if window else 0)
        window.append((piece, size))

    chunk = separator.join(p for p, _ in window).strip()
    if chunk:
        merged.append(chunk)
    return merged
