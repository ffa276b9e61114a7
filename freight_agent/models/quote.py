# =============================================================================
# Quote Models: Immutable Carrier Offers
# =============================================================================
#
# A Quote is produced once per completed conversation cycle and never
# mutated afterwards. All models here are frozen; a new cycle builds a
# new Quote.
# =============================================================================

from __future__ import annotations

from datetime import datetime

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from freight_agent.models.base import CamelModel


class _FrozenModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class TransitTimeRange(_FrozenModel):
    """Inclusive transit window in days."""

    min_days: int
    max_days: int

    def __str__(self) -> str:
        return f"{self.min_days}-{self.max_days} days"


class CarrierOffer(_FrozenModel):
    """A single carrier's synthetic rate offer."""

    carrier_id: str
    name: str
    service_level: str
    rate: float = Field(description="Total rate in `currency`, rounded to cents")
    currency: str = "USD"
    transit_time_range: TransitTimeRange
    reliability: float = Field(description="On-time percentage, e.g. 98.7")
    reputation: float
    estimated_delivery: datetime


class ShipmentSummary(_FrozenModel):
    """The parsed inputs a quote was computed from."""

    weight_kg: float
    declared_value: float
    route: str
    route_type: str
    service_level: str
    surcharges: dict[str, float] = Field(default_factory=dict)


class Quote(_FrozenModel):
    """Ranked carrier offers, cheapest first."""

    quotes: tuple[CarrierOffer, ...]
    recommended_quote: CarrierOffer
    total_estimate: float
    currency: str = "USD"
    valid_until: datetime
    created_at: datetime
    shipment_details: ShipmentSummary

    def offer_for(self, carrier_id: str) -> CarrierOffer | None:
        """Return the offer made by `carrier_id`, if any."""
        return next((q for q in self.quotes if q.carrier_id == carrier_id), None)
