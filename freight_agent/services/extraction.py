# =============================================================================
# Extraction Adapter: Free Text → Shipment Field Updates
# =============================================================================
#
# Wraps the one external call that turns a user's message into a partial
# field-update record, using the same field names as ShipmentData.
#
# The model may be unreachable or may answer with something that is not a
# JSON object. Both outcomes collapse into the same result: an empty delta
# with `failed=True`, so the caller has a single failure path to handle.
# The adapter itself never raises.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from freight_agent.models.session import ShipmentData
from freight_agent.services.llm import LLMProvider, parse_json_response

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_EXTRACTION_SYSTEM = """\
You extract shipping information from a customer's message.

Current data (already collected):
{current}

Return a JSON object containing ONLY the fields for which the message
gives new information:
{{
  "origin": "city, country",
  "destination": "city, country",
  "cargo": "description",
  "weight": "number with unit",
  "serviceLevel": "Express|Standard|Economy",
  "specialRequirements": "description",
  "declaredValue": "amount",
  "contactName": "name",
  "contactEmail": "email",
  "contactPhone": "phone"
}}

Omit fields the message does not mention. Return valid JSON only."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ExtractionResult:
    """Outcome of one extraction call."""

    fields: dict[str, str] = field(default_factory=dict)
    failed: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ExtractionAdapter:
    """Calls the LLM to turn a message into ShipmentData field updates."""

    def __init__(self, llm: LLMProvider, max_tokens: int = 512) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    async def extract(
        self,
        message: str,
        current: ShipmentData,
    ) -> ExtractionResult:
        """
        Extract field updates from `message`.

        Args:
            message: Raw user text.
            current: Snapshot of the fields collected so far.

        Returns:
            ExtractionResult whose `fields` only holds non-empty values for
            extractable fields. On any failure `fields` is empty and
            `failed` is set.
        """
        snapshot = current.model_dump(
            by_alias=True, exclude={"invoices"}, exclude_none=True,
        )
        system = _EXTRACTION_SYSTEM.format(current=json.dumps(snapshot, indent=2))

        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": message}],
                system=system,
                temperature=0.0,
                max_tokens=self._max_tokens,
            )
            raw = parse_json_response(response.content)

        except json.JSONDecodeError as e:
            logger.warning("Extraction returned unparseable content: %s", e)
            return ExtractionResult(failed=True, error=f"parse error: {e}")

        except Exception as e:
            logger.warning("Extraction call failed: %s", e)
            return ExtractionResult(failed=True, error=str(e))

        fields = ShipmentData.normalise_updates(raw)
        logger.debug("Extracted fields: %s", sorted(fields))
        return ExtractionResult(fields=fields)
