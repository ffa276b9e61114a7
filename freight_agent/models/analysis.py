# =============================================================================
# Analysis Models: Document Classification and Invoice Extraction
# =============================================================================
#
# Output of the classification stage of the document pipeline. Model output
# is validated leniently: unknown keys are kept, missing groups default to
# empty, so a partially filled answer is still usable.
# =============================================================================

from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from freight_agent.models.base import CamelModel

FALLBACK_DOCUMENT_TYPE = "unknown"
FALLBACK_CONFIDENCE = 0.2


class _LenientModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class KeyEntities(_LenientModel):
    companies: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    dates: list[str] = Field(default_factory=list)
    amounts: list[str] = Field(default_factory=list)


class DocumentAnalysis(_LenientModel):
    """General classification of an uploaded document."""

    document_type: str = FALLBACK_DOCUMENT_TYPE
    confidence: float = FALLBACK_CONFIDENCE
    language: str = "en"
    summary: str = ""
    key_entities: KeyEntities = Field(default_factory=KeyEntities)
    topics: list[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    error: str | None = None

    @classmethod
    def fallback(cls, error: str) -> DocumentAnalysis:
        return cls(summary="Analysis unavailable", error=error)


class InvoiceValidation(_LenientModel):
    is_complete: bool = False
    missing_critical_fields: list[str] = Field(default_factory=list)
    compliance_score: float = 0.0
    ready_for_booking: bool = False


class InvoiceAnalysis(_LenientModel):
    """Structured fields extracted from an invoice or shipping document."""

    document_type: str = FALLBACK_DOCUMENT_TYPE
    confidence: float = FALLBACK_CONFIDENCE
    invoice_details: dict[str, Any] = Field(default_factory=dict)
    seller: dict[str, Any] = Field(default_factory=dict)
    buyer: dict[str, Any] = Field(default_factory=dict)
    shipment_details: dict[str, Any] = Field(default_factory=dict)
    cargo_details: dict[str, Any] = Field(default_factory=dict)
    financials: dict[str, Any] = Field(default_factory=dict)
    items: list[dict[str, Any]] = Field(default_factory=list)
    compliance: dict[str, Any] = Field(default_factory=dict)
    validation: InvoiceValidation = Field(default_factory=InvoiceValidation)
    extracted_text: str = ""
    error: str | None = None

    @classmethod
    def fallback(cls, error: str) -> InvoiceAnalysis:
        return cls(
            validation=InvoiceValidation(
                missing_critical_fields=[f"Analysis failed: {error}"],
            ),
            extracted_text=f"Analysis failed: {error}",
            error=error,
        )
