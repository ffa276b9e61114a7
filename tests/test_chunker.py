# =============================================================================
# Unit Tests: Chunker and Document Loader
# =============================================================================
#
# Tests the token-bounded splitting logic and plain-text loading without
# external dependencies. No API keys, databases, or network calls needed.
# =============================================================================

import pytest

from freight_agent.errors import ContentValidationError
from freight_agent.services.chunker import (
    chunk_document,
    count_tokens,
    split_text,
)
from freight_agent.services.parser import (
    DocumentLoader,
    ParsedDocument,
    ParsedElement,
)


def _make_parsed_doc(texts: list[str]) -> ParsedDocument:
    """Helper to build a ParsedDocument from simple text lists."""
    return ParsedDocument(
        elements=[
            ParsedElement(text=text, page_number=1, element_type="text")
            for text in texts
        ],
        page_count=1 if texts else 0,
        filename="test.txt",
    )


class TestChunkDocument:
    """Tests for chunk_document()."""

    def test_empty_document_returns_no_chunks(self):
        assert chunk_document(_make_parsed_doc([]), chunk_size=64, chunk_overlap=10) == []

    def test_whitespace_only_document_returns_no_chunks(self):
        doc = _make_parsed_doc(["   ", "\n"])
        assert chunk_document(doc, chunk_size=64, chunk_overlap=10) == []

    def test_single_short_element_produces_one_chunk(self):
        doc = _make_parsed_doc(["Bill of lading for 40 cartons of textiles."])
        chunks = chunk_document(doc, chunk_size=64, chunk_overlap=10)
        assert len(chunks) == 1
        assert "40 cartons" in chunks[0].content
        assert chunks[0].chunk_index == 0

    def test_chunk_indices_are_sequential(self):
        doc = _make_parsed_doc(["word " * 200])
        chunks = chunk_document(doc, chunk_size=32, chunk_overlap=5)
        assert len(chunks) > 1
        for i, chunk in enumerate(chunks):
            assert chunk.chunk_index == i
            assert chunk.metadata == {"chunk_index": i, "total_chunks": len(chunks)}

    def test_token_count_respects_chunk_size(self):
        doc = _make_parsed_doc(["Freight charges are payable at destination. " * 100])
        chunks = chunk_document(doc, chunk_size=64, chunk_overlap=10)
        for chunk in chunks:
            assert chunk.token_count <= 64
            assert chunk.token_count == count_tokens(chunk.content)

    def test_overlap_produces_more_chunks(self):
        text = "Container sealed at origin port. " * 50
        doc = _make_parsed_doc([text])
        without = chunk_document(doc, chunk_size=64, chunk_overlap=0)
        with_overlap = chunk_document(doc, chunk_size=64, chunk_overlap=20)
        assert len(with_overlap) >= len(without)

    def test_paragraphs_kept_together_when_they_fit(self):
        doc = _make_parsed_doc(["Shipper: Acme Exports.", "Consignee: Globex Imports."])
        chunks = chunk_document(doc, chunk_size=512, chunk_overlap=0)
        assert len(chunks) == 1
        assert chunks[0].content == "Shipper: Acme Exports.\n\nConsignee: Globex Imports."


class TestSplitText:
    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(ValueError):
            split_text("anything", chunk_size=10, chunk_overlap=10)

    def test_prefers_paragraph_boundaries(self):
        first = "Invoice number 1234. " * 10
        second = "Packing list follows. " * 10
        pieces = split_text(f"{first}\n\n{second}", chunk_size=count_tokens(first) + 5, chunk_overlap=0)
        assert pieces[0] == first.strip()
        assert pieces[1] == second.strip()

    def test_unbroken_text_still_splits(self):
        pieces = split_text("x" * 2000, chunk_size=50, chunk_overlap=0)
        assert len(pieces) > 1
        assert all(count_tokens(p) <= 50 for p in pieces)


# ---------------------------------------------------------------------------
# Test: Document Loader (text formats)
# ---------------------------------------------------------------------------


class TestDocumentLoader:
    def test_loads_paragraphs(self, tmp_path):
        path = tmp_path / "invoice.txt"
        path.write_text(
            "COMMERCIAL INVOICE\n\nInvoice No: INV-2025-001\n\n"
            "Seller: Acme Exports Pvt Ltd, Mumbai\n\nTotal: USD 12,500.00",
            encoding="utf-8",
        )
        parsed = DocumentLoader(min_content_chars=20).load(str(path))
        assert parsed.filename == "invoice.txt"
        assert [e.text for e in parsed.elements][0] == "COMMERCIAL INVOICE"
        assert len(parsed.elements) == 4
        assert parsed.page_count == 0

    def test_display_name_overrides_path(self, tmp_path):
        path = tmp_path / "abc123_invoice.txt"
        path.write_text("A" * 60, encoding="utf-8")
        parsed = DocumentLoader().load(str(path), filename="invoice.txt")
        assert parsed.filename == "invoice.txt"

    def test_short_content_rejected(self, tmp_path):
        path = tmp_path / "tiny.txt"
        path.write_text("too short", encoding="utf-8")
        with pytest.raises(ContentValidationError) as exc_info:
            DocumentLoader(min_content_chars=50).load(str(path))
        assert exc_info.value.retryable is False

    def test_missing_file_rejected(self, tmp_path):
        with pytest.raises(ContentValidationError):
            DocumentLoader().load(str(tmp_path / "gone.txt"))
