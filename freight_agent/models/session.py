# =============================================================================
# Session Models: The Conversation Checkpoint
# =============================================================================
#
# One Session per conversation thread, read and written wholesale by the
# session store. Invariants enforced here:
#   - `messages` is append-only and keeps its order
#   - shipment fields are set-once-then-refined: merging never erases a
#     known field with an empty value
#   - `quote` is non-null exactly when `completed` is true
# =============================================================================

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import Field, model_validator

from freight_agent.models.base import CamelModel
from freight_agent.models.quote import Quote


def utcnow() -> datetime:
    return datetime.now(UTC)


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Phase(str, enum.Enum):
    """
    Derived label describing which shipment fields are still missing.

        greeting → route_collection → cargo_collection
                 → service_selection → ready_for_quote → quote_generated
    """

    GREETING = "greeting"
    ROUTE_COLLECTION = "route_collection"
    CARGO_COLLECTION = "cargo_collection"
    SERVICE_SELECTION = "service_selection"
    READY_FOR_QUOTE = "ready_for_quote"
    QUOTE_GENERATED = "quote_generated"


class Message(CamelModel):
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class InvoiceRef(CamelModel):
    """A pointer from the conversation to an uploaded invoice."""

    invoice_id: str
    filename: str
    uploaded_at: datetime = Field(default_factory=utcnow)
    processed: bool = False
    document_type: str | None = None


# Fields the extraction step is allowed to write. `invoices` is owned by
# the upload/worker path, never by free-text extraction.
EXTRACTABLE_FIELDS: tuple[str, ...] = (
    "origin",
    "destination",
    "cargo",
    "weight",
    "service_level",
    "special_requirements",
    "declared_value",
    "contact_name",
    "contact_email",
    "contact_phone",
)

# Strings models use to mean "no information"
_EMPTY_MARKERS = {"", "null", "none", "n/a", "na", "unknown", "not provided"}


class ShipmentData(CamelModel):
    """Shipment fields collected over the conversation."""

    origin: str | None = None
    destination: str | None = None
    cargo: str | None = None
    weight: str | None = None
    service_level: str | None = None
    special_requirements: str | None = None
    declared_value: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    invoices: list[InvoiceRef] = Field(default_factory=list)

    def has(self, *fields: str) -> bool:
        """True when every named field holds a non-empty value."""
        return all(bool(getattr(self, name)) for name in fields)

    def merged(self, updates: dict[str, str]) -> ShipmentData:
        """
        Return a copy with `updates` applied monotonically.

        Only non-empty values overwrite; absent or empty values leave the
        stored field untouched.
        """
        clean = {
            name: value
            for name, value in updates.items()
            if name in EXTRACTABLE_FIELDS and value
        }
        if not clean:
            return self.model_copy(deep=True)
        return self.model_copy(update=clean, deep=True)

    @classmethod
    def normalise_updates(cls, raw: dict[str, Any]) -> dict[str, str]:
        """
        Map a model's field-update record onto extractable field names.

        Accepts camelCase or snake_case keys, coerces scalars to text and
        drops anything that means "no new information".
        """
        by_wire_name = {
            (info.alias or name): name for name, info in cls.model_fields.items()
        }
        updates: dict[str, str] = {}
        for key, value in raw.items():
            name = by_wire_name.get(key, key)
            if name not in EXTRACTABLE_FIELDS:
                continue
            text = _as_text(value)
            if text:
                updates[name] = text
        return updates


class Session(CamelModel):
    """The persisted state of one conversation thread."""

    thread_id: str
    user_id: str
    messages: list[Message] = Field(default_factory=list)
    shipment_data: ShipmentData = Field(default_factory=ShipmentData)
    current_phase: Phase = Phase.GREETING
    completed: bool = False
    quote: Quote | None = None
    # Incremented by the store on every successful write
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _quote_iff_completed(self) -> Session:
        if self.completed != (self.quote is not None):
            raise ValueError("a session is completed exactly when it holds a quote")
        return self

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def last_assistant_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return f"{value:g}"
    if isinstance(value, str):
        text = value.strip()
        return "" if text.lower() in _EMPTY_MARKERS else text
    if isinstance(value, list):
        parts = [_as_text(v) for v in value]
        return ", ".join(p for p in parts if p)
    return ""
