# =============================================================================
# Document Classifier: LLM Classification and Invoice Analysis
# =============================================================================
#
# Second stage of the document pipeline. Sends the first
# `classification_char_limit` characters of a document to the LLM and
# validates the JSON answer into DocumentAnalysis / InvoiceAnalysis.
#
# Never raises: a failed call, unparseable content or a schema mismatch
# yields the fallback object (documentType="unknown", confidence 0.2,
# empty field groups) with the error recorded on it.
# =============================================================================

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from freight_agent.models.analysis import DocumentAnalysis, InvoiceAnalysis
from freight_agent.services.llm import LLMProvider, parse_json_response

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_DOCUMENT_SYSTEM = (
    "You are a document analysis expert for a freight forwarder. "
    "Return only valid JSON."
)

_DOCUMENT_PROMPT = """\
Analyze this document and extract key information.

Filename: {filename}
Content:
{content}

Return JSON:
{{
  "documentType": "invoice|bill_of_lading|packing_list|certificate|contract|manual|other",
  "confidence": 0.0-1.0,
  "language": "en|es|fr|de|zh|other",
  "summary": "brief summary",
  "keyEntities": {{
    "companies": [], "locations": [], "dates": [], "amounts": []
  }},
  "topics": ["main topics"],
  "sentiment": "positive|neutral|negative|technical"
}}"""

_INVOICE_SYSTEM = (
    "You are an expert in shipping documents and invoice processing. "
    "Extract ALL available information accurately. Return ONLY valid JSON, "
    "no markdown formatting."
)

_INVOICE_PROMPT = """\
Analyze this invoice/shipping document and extract all relevant information.

Filename: {filename}

Document Content:
{content}

Return JSON with every field you can find (null when absent):
{{
  "documentType": "Commercial Invoice|Proforma Invoice|Bill of Lading|Packing List|Certificate of Origin|Air Waybill|Sea Waybill|Customs Declaration|Insurance Certificate|Delivery Order|Other",
  "confidence": 0.0-1.0,
  "invoiceDetails": {{"invoiceNumber", "invoiceDate", "dueDate", "poNumber", "currency"}},
  "seller": {{"name", "address", "city", "country", "taxId", "contact", "email", "phone"}},
  "buyer": {{"name", "address", "city", "country", "taxId", "contact", "email", "phone"}},
  "shipmentDetails": {{"portOfLoading", "portOfDischarge", "placeOfDelivery",
                      "countryOfOrigin", "countryOfDestination", "vessel",
                      "voyageNumber", "containerNumber", "sealNumber",
                      "bookingNumber", "blNumber"}},
  "cargoDetails": {{"description", "hsCode", "quantity", "unit", "grossWeight",
                   "netWeight", "volume", "packages", "packageType"}},
  "financials": {{"subtotal", "taxAmount", "shippingCost", "insuranceCost",
                 "totalAmount", "currency", "paymentTerms", "incoterms"}},
  "items": [{{"itemNumber", "description", "quantity", "unitPrice", "totalPrice"}}],
  "compliance": {{"customsValue", "exportLicense", "certificateNumber", "inspectionDate"}},
  "validation": {{
    "isComplete": true|false,
    "missingCriticalFields": [],
    "complianceScore": 0.0-1.0,
    "readyForBooking": true|false
  }},
  "extractedText": "key information summary"
}}"""


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class DocumentClassifier:
    """LLM-backed classification with a safe fallback."""

    def __init__(
        self,
        llm: LLMProvider,
        char_limit: int = 8000,
        max_tokens: int = 3000,
    ) -> None:
        self._llm = llm
        self._char_limit = char_limit
        self._max_tokens = max_tokens

    async def classify_document(self, text: str, filename: str) -> DocumentAnalysis:
        """Classify a general document (type, language, entities, topics)."""
        try:
            raw = await self._ask(_DOCUMENT_SYSTEM, _DOCUMENT_PROMPT, text, filename)
            analysis = DocumentAnalysis.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Unusable classification for '%s': %s", filename, e)
            return DocumentAnalysis.fallback(f"parse error: {e}")
        except Exception as e:
            logger.warning("Classification call failed for '%s': %s", filename, e)
            return DocumentAnalysis.fallback(str(e))

        logger.info(
            "Classified '%s' as %s (confidence %.2f)",
            filename, analysis.document_type, analysis.confidence,
        )
        return analysis

    async def analyze_invoice(self, text: str, filename: str) -> InvoiceAnalysis:
        """Extract invoice field groups and a booking-readiness verdict."""
        try:
            raw = await self._ask(_INVOICE_SYSTEM, _INVOICE_PROMPT, text, filename)
            analysis = InvoiceAnalysis.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Unusable invoice analysis for '%s': %s", filename, e)
            return InvoiceAnalysis.fallback(f"parse error: {e}")
        except Exception as e:
            logger.warning("Invoice analysis call failed for '%s': %s", filename, e)
            return InvoiceAnalysis.fallback(str(e))

        logger.info(
            "Analysed invoice '%s': %s (confidence %.2f, ready for booking: %s)",
            filename, analysis.document_type, analysis.confidence,
            analysis.validation.ready_for_booking,
        )
        return analysis

    async def _ask(
        self,
        system: str,
        template: str,
        text: str,
        filename: str,
    ) -> dict:
        prompt = template.format(filename=filename, content=text[: self._char_limit])
        response = await self._llm.complete(
            messages=[{"role": "user", "content": prompt}],
            system=system,
            temperature=0.1,
            max_tokens=self._max_tokens,
        )
        return parse_json_response(response.content)
