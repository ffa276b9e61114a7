# =============================================================================
# Conversation Workflow: LangGraph Turn Graph over a Versioned Checkpoint
# =============================================================================
#
# One call to `invoke()` is one conversation turn:
#
#   empty log            → fixed greeting (no model call)
#   no new user message  → replay: state unchanged, output = last reply
#   otherwise            → run the turn graph, then persist
#
# TURN GRAPH:
#
#   START ─┬─(collecting)─▶ extract ──▶ generate ─┬─(ready + fields)─▶ quote ──▶ END
#          │                   │                  ├─(otherwise)──────▶ respond ─▶ END
#          │                   └──(failed)────────┴─(failed)─────────▶ apology ─▶ END
#          └─(quote exists)──────────────────────▶ generate
#
# Nodes never mutate the stored checkpoint. They produce a turn delta
# (new messages, field updates, optional quote) that is applied to the
# checkpoint at persist time. If another writer got there first (a second
# turn, or a worker adding an invoice), the delta is re-applied to the
# fresh checkpoint and the write retried; no model call is repeated.
#
# Phase is never chosen by a node: it is derived from field completeness
# every time a delta is applied.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import NamedTuple

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from freight_agent.agents.responder import GeneratedReply, ReplyGenerator
from freight_agent.errors import SessionConflictError, SessionNotFoundError
from freight_agent.models.quote import Quote
from freight_agent.models.session import Message, Phase, Role, Session, ShipmentData
from freight_agent.services.extraction import ExtractionAdapter
from freight_agent.services.quote_engine import (
    DEFAULT_VALIDITY_HOURS,
    format_quote_message,
    quote,
)
from freight_agent.services.records import SqlRecordStore
from freight_agent.services.session_store import SessionStore

logger = logging.getLogger(__name__)

GREETING = (
    "Hello! I'm your AI shipping agent. I'll help you get the best freight "
    "quotes. To start, could you tell me where you're shipping from and to? "
    "(Example: From Mumbai, India to New York, USA)"
)
APOLOGY = "I apologize, I encountered an error. Could you please repeat that?"

# Fields that must be known before a quote can be issued
QUOTE_REQUIRED_FIELDS = ("origin", "destination", "cargo")


# ---------------------------------------------------------------------------
# Phase Derivation
# ---------------------------------------------------------------------------


def derive_phase(data: ShipmentData, quote_result: Quote | None = None) -> Phase:
    """Phase as a pure function of field completeness (and quote presence)."""
    if quote_result is not None:
        return Phase.QUOTE_GENERATED
    if not data.has("origin", "destination"):
        return Phase.ROUTE_COLLECTION
    if not data.has("cargo", "weight"):
        return Phase.CARGO_COLLECTION
    if not data.has("service_level"):
        return Phase.SERVICE_SELECTION
    return Phase.READY_FOR_QUOTE


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class TurnResult(NamedTuple):
    session: Session
    output: str


@dataclass
class TurnDelta:
    """What one turn adds to a checkpoint."""

    messages: list[Message] = field(default_factory=list)
    field_updates: dict[str, str] = field(default_factory=dict)
    quote: Quote | None = None

    def apply(self, base: Session) -> Session:
        session = base.model_copy(deep=True)
        session.messages.extend(self.messages)
        if not session.completed:
            session.shipment_data = session.shipment_data.merged(self.field_updates)
            if self.quote is not None:
                session.quote = self.quote
                session.completed = True
        session.current_phase = derive_phase(session.shipment_data, session.quote)
        return session


class TurnState(TypedDict, total=False):
    """State flowing through the turn graph."""

    session: Session  # Working view: checkpoint + this turn's changes
    message: str
    new_messages: list[Message]
    field_updates: dict[str, str]
    reply: GeneratedReply | None
    quote: Quote | None
    output: str
    failed: bool


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConversationWorkflow:
    """Runs conversation turns against the session store."""

    def __init__(
        self,
        store: SessionStore,
        extractor: ExtractionAdapter,
        responder: ReplyGenerator,
        records: SqlRecordStore | None = None,
        quote_validity_hours: int = DEFAULT_VALIDITY_HOURS,
        write_retries: int = 3,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._responder = responder
        self._records = records
        self._validity_hours = quote_validity_hours
        self._write_retries = write_retries
        self._graph = self._build_graph()

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def start(self, user_id: str) -> TurnResult:
        """Open a new thread and return its greeting."""
        thread_id = f"thread_{int(time.time() * 1000)}_{secrets.token_hex(8)}"
        logger.info("Starting thread %s for user %s", thread_id, user_id)
        return await self.invoke(Session(thread_id=thread_id, user_id=user_id))

    async def handle_message(self, thread_id: str, text: str) -> TurnResult:
        """
        Run one turn on an existing thread.

        Raises:
            SessionNotFoundError: The thread has no checkpoint.
        """
        session = await asyncio.to_thread(self._store.get, thread_id)
        if session is None:
            raise SessionNotFoundError(thread_id)
        return await self.invoke(session, text)

    async def invoke(self, state: Session, message: str | None = None) -> TurnResult:
        """
        Advance `state` by one turn and persist the result.

        Args:
            state: The checkpoint as last read.
            message: New user text. When omitted, a trailing user message
                already in `state` is processed; if there is none, the turn
                is a replay.

        Returns:
            The stored session and the assistant's output for this turn.
        """
        if not state.messages:
            return await self._greet(state)

        text = (message or "").strip()
        last = state.last_message
        if not text and last.role != Role.USER:
            return self._replay(state)

        new_messages = [Message(role=Role.USER, content=text)] if text else []
        working = state.model_copy(deep=True)
        working.messages.extend(new_messages)

        final: TurnState = await self._graph.ainvoke({
            "session": working,
            "message": text or last.content,
            "new_messages": new_messages,
            "field_updates": {},
            "reply": None,
            "quote": None,
            "failed": False,
        })

        delta = TurnDelta(
            messages=final["new_messages"],
            field_updates=final["field_updates"],
            quote=final["quote"],
        )
        stored = await self._persist(state, delta)

        if delta.quote is not None and stored.quote == delta.quote:
            await self._save_quote(stored)

        logger.info(
            "Turn on %s: phase=%s completed=%s (v%d)",
            stored.thread_id, stored.current_phase.value,
            stored.completed, stored.version,
        )
        return TurnResult(stored, final["output"])

    # -----------------------------------------------------------------------
    # Turns that need no model call
    # -----------------------------------------------------------------------

    async def _greet(self, state: Session) -> TurnResult:
        session = state.model_copy(deep=True)
        session.messages.append(Message(role=Role.ASSISTANT, content=GREETING))
        session.current_phase = Phase.ROUTE_COLLECTION
        session.completed = False
        session.quote = None
        stored = await asyncio.to_thread(
            self._store.put, session.thread_id, session, state.version,
        )
        return TurnResult(stored, GREETING)

    def _replay(self, state: Session) -> TurnResult:
        last_reply = state.last_assistant_message()
        logger.debug("Replay on %s: no new user message", state.thread_id)
        return TurnResult(state, last_reply.content if last_reply else "")

    # -----------------------------------------------------------------------
    # Graph
    # -----------------------------------------------------------------------

    def _build_graph(self):
        builder = StateGraph(TurnState)
        builder.add_node("extract", self._extract_node)
        builder.add_node("generate", self._generate_node)
        builder.add_node("quote", self._quote_node)
        builder.add_node("respond", self._respond_node)
        builder.add_node("apology", self._apology_node)

        builder.add_conditional_edges(
            START, _route_entry, {"extract": "extract", "generate": "generate"},
        )
        builder.add_conditional_edges(
            "extract", _route_after_extract,
            {"generate": "generate", "apology": "apology"},
        )
        builder.add_conditional_edges(
            "generate", _route_after_generate,
            {"quote": "quote", "respond": "respond", "apology": "apology"},
        )
        builder.add_edge("quote", END)
        builder.add_edge("respond", END)
        builder.add_edge("apology", END)
        return builder.compile()

    async def _extract_node(self, state: TurnState) -> dict:
        session = state["session"]
        result = await self._extractor.extract(state["message"], session.shipment_data)
        if result.failed:
            return {"failed": True}

        updated = session.model_copy(deep=True)
        updated.shipment_data = updated.shipment_data.merged(result.fields)
        updated.current_phase = derive_phase(updated.shipment_data)
        return {"session": updated, "field_updates": result.fields}

    async def _generate_node(self, state: TurnState) -> dict:
        try:
            reply = await self._responder.generate(state["session"])
        except Exception as e:
            logger.warning(
                "Reply generation failed on %s: %s",
                state["session"].thread_id, e,
            )
            return {"failed": True}
        return {"reply": reply}

    async def _quote_node(self, state: TurnState) -> dict:
        result = quote(
            state["session"].shipment_data,
            validity_hours=self._validity_hours,
        )
        text = format_quote_message(result)
        return {
            "quote": result,
            "output": text,
            "new_messages": [
                *state["new_messages"],
                Message(role=Role.ASSISTANT, content=text),
            ],
        }

    async def _respond_node(self, state: TurnState) -> dict:
        text = state["reply"].reply
        return {
            "output": text,
            "new_messages": [
                *state["new_messages"],
                Message(role=Role.ASSISTANT, content=text),
            ],
        }

    async def _apology_node(self, state: TurnState) -> dict:
        # Updates extracted earlier in a failed turn are discarded
        return {
            "output": APOLOGY,
            "field_updates": {},
            "quote": None,
            "new_messages": [
                *state["new_messages"],
                Message(role=Role.ASSISTANT, content=APOLOGY),
            ],
        }

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    async def _persist(self, base: Session, delta: TurnDelta) -> Session:
        """Write `delta` onto `base`, rebasing onto newer checkpoints on conflict."""
        for attempt in range(self._write_retries + 1):
            candidate = delta.apply(base)
            try:
                return await asyncio.to_thread(
                    self._store.put, base.thread_id, candidate, base.version,
                )
            except SessionConflictError:
                if attempt == self._write_retries:
                    raise
                logger.info(
                    "Checkpoint for %s moved past v%d, rebasing turn",
                    base.thread_id, base.version,
                )
                latest = await asyncio.to_thread(self._store.get, base.thread_id)
                if latest is None:
                    raise SessionNotFoundError(base.thread_id)
                base = latest
        raise AssertionError("unreachable")

    async def _save_quote(self, session: Session) -> None:
        if self._records is None:
            return
        try:
            await asyncio.to_thread(self._records.save_quote, session)
        except Exception:
            # The quote is already in the checkpoint; the row is a copy
            logger.exception("Failed to save quote for %s", session.thread_id)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_entry(state: TurnState) -> str:
    return "generate" if state["session"].completed else "extract"


def _route_after_extract(state: TurnState) -> str:
    return "apology" if state.get("failed") else "generate"


def _route_after_generate(state: TurnState) -> str:
    if state.get("failed"):
        return "apology"
    reply = state["reply"]
    session = state["session"]
    if (
        reply.ready_to_quote
        and not session.completed
        and session.shipment_data.has(*QUOTE_REQUIRED_FIELDS)
    ):
        return "quote"
    return "respond"
