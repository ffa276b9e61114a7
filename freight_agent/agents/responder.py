# =============================================================================
# Reply Generator: Conversational Turn Text + Ready-to-Quote Flag
# =============================================================================
#
# Asks the LLM for the assistant's next message. The model answers with a
# JSON object:
#
#     {"readyToQuote": true|false, "reply": "..."}
#
# The flag is a separate field, never parsed out of the display text, so a
# reply that happens to mention quoting cannot trigger one.
#
# If the answer is not valid JSON, the raw text is used as the reply and
# the flag is False. Transport failures propagate to the workflow engine,
# which turns them into the apology message.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from freight_agent.errors import ExternalServiceError
from freight_agent.models.session import Role, Session
from freight_agent.services.llm import LLMProvider, parse_json_response

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_COLLECTION_SYSTEM = """\
You are a professional freight shipping assistant helping users book shipments.

Current Phase: {phase}
Collected Data:
{data}

Your task:
1. Guide the user through providing: route (origin and destination), cargo
   description and weight, service level (Express, Standard or Economy),
   special requirements, declared value and contact details.
2. Ask for ONE piece of information at a time, naturally and conversationally.
3. Once origin, destination and cargo (with approximate weight) are known,
   you may generate a quote.

Respond with a JSON object only:
{{"readyToQuote": <true when a quote should be generated now, else false>,
  "reply": "<your message to the user>"}}"""

_FOLLOWUP_SYSTEM = """\
You are a professional freight shipping assistant. A quote has already been
generated for this shipment:

{quote}

Shipment data:
{data}

Answer the user's questions about the quote, the carriers, booking, invoices
or documents. Do not produce a new quote.

Respond with a JSON object only:
{{"readyToQuote": false, "reply": "<your message to the user>"}}"""


@dataclass
class GeneratedReply:
    ready_to_quote: bool
    reply: str


class ReplyGenerator:
    """Produces the assistant's conversational message for one turn."""

    def __init__(
        self,
        llm: LLMProvider,
        history_window: int = 6,
        max_tokens: int = 1024,
    ) -> None:
        self._llm = llm
        self._history_window = history_window
        self._max_tokens = max_tokens

    async def generate(self, session: Session) -> GeneratedReply:
        """
        Reply to the latest user message of `session`.

        Completed sessions get a follow-up answer; the flag is then always
        False.

        Raises:
            Exception: Whatever the provider raises on transport failure.
            ExternalServiceError: The model returned no content.
        """
        data = json.dumps(
            session.shipment_data.model_dump(
                mode="json", by_alias=True, exclude_none=True,
            ),
            indent=2,
        )
        if session.completed and session.quote is not None:
            summary = session.quote.model_dump(
                mode="json", by_alias=True,
                include={"quotes", "recommended_quote", "total_estimate", "valid_until"},
            )
            system = _FOLLOWUP_SYSTEM.format(
                quote=json.dumps(summary, indent=2), data=data,
            )
        else:
            system = _COLLECTION_SYSTEM.format(
                phase=session.current_phase.value, data=data,
            )

        response = await self._llm.complete(
            messages=self._history(session),
            system=system,
            max_tokens=self._max_tokens,
        )
        content = response.content.strip()
        if not content:
            raise ExternalServiceError("Reply model returned no content")

        try:
            parsed = parse_json_response(content)
        except json.JSONDecodeError:
            logger.warning("Reply was not JSON; using it verbatim")
            return GeneratedReply(ready_to_quote=False, reply=content)

        reply = str(parsed.get("reply") or "").strip()
        if not reply:
            raise ExternalServiceError("Reply model returned an empty reply")

        ready = parsed.get("readyToQuote", parsed.get("ready_to_quote")) is True
        if session.completed:
            ready = False
        return GeneratedReply(ready_to_quote=ready, reply=reply)

    def _history(self, session: Session) -> list[dict[str, str]]:
        """Most recent messages as provider messages, starting on a user turn."""
        window = session.messages[-self._history_window:]
        history: list[dict[str, str]] = []
        for message in window:
            if message.role == Role.ASSISTANT:
                if not history:
                    continue
                history.append({"role": "assistant", "content": message.content})
            elif message.role == Role.SYSTEM:
                history.append({"role": "user", "content": f"[System note] {message.content}"})
            else:
                history.append({"role": "user", "content": message.content})
        return history
