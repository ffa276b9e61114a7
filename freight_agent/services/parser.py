# =============================================================================
# Document Loader: Docling for PDFs, Plain Text Otherwise
# =============================================================================
#
# First stage of the document pipeline: turn an uploaded file into text.
#
# PDFs go through IBM's Docling (text, tables as markdown, headings, with
# page provenance). Text-like uploads (.txt, .md, .csv, .json, ...) are
# read as UTF-8. Anything too short to be worth classifying is rejected
# here with ContentValidationError, before any model call is made.
#
# Docling loads ML models on first use, so its converter is built lazily
# and only for PDF input; text-only deployments never import it.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from freight_agent.errors import ContentValidationError

if TYPE_CHECKING:
    from docling.document_converter import DocumentConverter

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".md", ".csv", ".json", ".xml", ".html", ".htm"}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedElement:
    """One paragraph, heading or table from the source file."""

    text: str
    page_number: int  # 1-indexed; 0 when the format has no pages
    element_type: str  # "text", "table", or "heading"


@dataclass
class ParsedDocument:
    """The loaded content of one upload, in reading order."""

    elements: list[ParsedElement] = field(default_factory=list)
    page_count: int = 0
    filename: str = ""

    @property
    def text(self) -> str:
        return "\n\n".join(e.text for e in self.elements)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class DocumentLoader:
    """
    Loads uploads into ParsedDocument.

    Args:
        min_content_chars: Uploads whose stripped text is shorter than this
            are rejected as unreadable.
    """

    def __init__(self, min_content_chars: int = 50) -> None:
        self._min_chars = min_content_chars
        self._converter: DocumentConverter | None = None

    def load(self, file_path: str, filename: str | None = None) -> ParsedDocument:
        """
        Load `file_path` and validate that it has usable text.

        Raises:
            ContentValidationError: Missing file, unreadable content, or
                fewer than `min_content_chars` characters of text.
        """
        path = Path(file_path)
        name = filename or path.name
        if not path.is_file():
            raise ContentValidationError(f"File not found: {file_path}")

        if path.suffix.lower() == ".pdf":
            parsed = self._load_pdf(path, name)
        else:
            parsed = self._load_text(path, name)

        length = len(parsed.text.strip())
        if length < self._min_chars:
            raise ContentValidationError(
                f"'{name}' has {length} characters of text; "
                f"at least {self._min_chars} are required"
            )

        logger.info(
            "Loaded '%s': %d elements, %d pages, %d characters",
            name, len(parsed.elements), parsed.page_count, length,
        )
        return parsed

    # -----------------------------------------------------------------------
    # Formats
    # -----------------------------------------------------------------------

    def _load_text(self, path: Path, name: str) -> ParsedDocument:
        if path.suffix.lower() not in TEXT_SUFFIXES:
            logger.info("Unknown suffix for '%s', reading as text", name)
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ContentValidationError(f"Could not read '{name}': {exc}") from exc

        paragraphs = [p.strip() for p in raw.split("\n\n")]
        return ParsedDocument(
            elements=[
                ParsedElement(text=p, page_number=0, element_type="text")
                for p in paragraphs if p
            ],
            page_count=0,
            filename=name,
        )

    def _load_pdf(self, path: Path, name: str) -> ParsedDocument:
        try:
            result = self._get_converter().convert(str(path))
        except Exception as exc:
            raise ContentValidationError(
                f"Docling failed to parse '{name}': {exc}"
            ) from exc

        kinds = _element_kinds()
        elements: list[ParsedElement] = []
        pages: set[int] = set()

        for item, _level in result.document.iterate_items():
            kind = kinds.get(getattr(item, "label", None))
            if kind is None:
                continue
            provenance = getattr(item, "prov", None)
            page_no = provenance[0].page_no if provenance else 0
            pages.add(page_no)

            if kind == "table":
                text = _table_to_markdown(item)
            else:
                text = (getattr(item, "text", None) or "").strip()
            if text:
                elements.append(ParsedElement(text, page_no, kind))

        return ParsedDocument(elements, max(pages - {0}, default=0), name)

    def _get_converter(self) -> DocumentConverter:
        if self._converter is None:
            from docling.datamodel.base_models import InputFormat
            from docling.datamodel.pipeline_options import PdfPipelineOptions
            from docling.document_converter import DocumentConverter, PdfFormatOption

            logger.info("Loading Docling models for PDF conversion")
            # Bills of lading and invoices are table-heavy and often scanned
            options = PdfPipelineOptions(do_table_structure=True, do_ocr=True)
            self._converter = DocumentConverter(
                format_options={InputFormat.PDF: PdfFormatOption(pipeline_options=options)}
            )
        return self._converter


def _element_kinds() -> dict:
    """Docling item labels kept from a PDF, mapped to ParsedElement types."""
    from docling_core.types.doc.labels import DocItemLabel

    return {
        DocItemLabel.TITLE: "heading",
        DocItemLabel.SECTION_HEADER: "heading",
        DocItemLabel.TABLE: "table",
        DocItemLabel.TEXT: "text",
        DocItemLabel.LIST_ITEM: "text",
        DocItemLabel.CAPTION: "text",
        DocItemLabel.FOOTNOTE: "text",
    }


def _table_to_markdown(table_item: object) -> str:
    """Markdown for a Docling table; its plain text when export fails."""
    export = getattr(table_item, "export_to_dataframe", None)
    if export is not None:
        try:
            return export().to_markdown(index=False)
        except Exception as exc:
            logger.warning("Table markdown export failed, using plain text: %s", exc)
    return (getattr(table_item, "text", None) or "").strip()
