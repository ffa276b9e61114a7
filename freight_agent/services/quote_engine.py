# =============================================================================
# Quote Engine: Deterministic Synthetic Carrier Rates
# =============================================================================
#
# Maps collected shipment fields to a ranked list of carrier offers. No I/O:
# identical input always yields identical rates, transit ranges and order;
# only the timestamp fields (created/valid-until/estimated delivery) depend
# on `now`, which callers may pin.
#
# PIPELINE:
#   1. Parse weight (kg) and declared value from free text (with defaults)
#   2. Classify the route: domestic / regional / international
#   3. base = route rate + ceil(weight/10)*18 + ceil(value/1000)*5
#   4. Apply the service-level multiplier and transit window
#   5. Add surcharges for keywords found in special requirements
#   6. One offer per carrier, each with a fixed rate variation and a
#      +1 day transit offset per position
#   7. Sort by rate; cheapest is recommended; valid for 48 hours
#
# All rules below are plain data tables so they can be tested and tuned
# without touching the control flow.
# =============================================================================

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from freight_agent.models.quote import (
    CarrierOffer,
    Quote,
    ShipmentSummary,
    TransitTimeRange,
)
from freight_agent.models.session import ShipmentData, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rule Tables
# ---------------------------------------------------------------------------

DEFAULT_WEIGHT_KG = 50.0
DEFAULT_DECLARED_VALUE = 1000.0
DEFAULT_VALIDITY_HOURS = 48

ROUTE_BASE_RATES: dict[str, float] = {
    "domestic": 120.0,
    "regional": 280.0,
    "international": 480.0,
}

WEIGHT_UNIT_KG = 10
WEIGHT_UNIT_RATE = 18.0
VALUE_UNIT = 1000
VALUE_UNIT_RATE = 5.0


@dataclass(frozen=True)
class ServiceLevelRule:
    name: str
    multiplier: float
    min_days: int
    max_days: int


SERVICE_LEVELS: dict[str, ServiceLevelRule] = {
    "express": ServiceLevelRule("Express", 2.5, 1, 3),
    "standard": ServiceLevelRule("Standard", 1.0, 4, 7),
    "economy": ServiceLevelRule("Economy", 0.75, 8, 14),
}
DEFAULT_SERVICE_LEVEL = "standard"


@dataclass(frozen=True)
class SurchargeRule:
    """
    A flat or value-proportional surcharge triggered by keywords.

    amount = max(flat, minimum, declared_value * value_rate)
    """

    category: str
    keywords: tuple[str, ...]
    flat: float = 0.0
    minimum: float = 0.0
    value_rate: float = 0.0

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)

    def amount(self, declared_value: float) -> float:
        return max(self.flat, self.minimum, declared_value * self.value_rate)


SURCHARGE_RULES: tuple[SurchargeRule, ...] = (
    SurchargeRule("insurance", ("insurance", "insured", "insure"),
                  minimum=60.0, value_rate=0.008),
    SurchargeRule("fragile", ("fragile", "delicate"), flat=35.0),
    SurchargeRule("hazardous", ("hazardous", "hazmat", "dangerous goods"),
                  flat=150.0),
    SurchargeRule("temperature_controlled",
                  ("temperature", "refrigerat", "cold chain", "frozen"),
                  flat=95.0),
    SurchargeRule("customs", ("customs", "clearance", "brokerage"), flat=55.0),
    SurchargeRule("expedite", ("expedite", "urgent", "rush"), flat=75.0),
)


@dataclass(frozen=True)
class Carrier:
    carrier_id: str
    name: str
    reputation: float
    reliability: float


# Order is significant: position drives rate variation and transit offset.
CARRIERS: tuple[Carrier, ...] = (
    Carrier("dhl_express_001", "DHL Express Worldwide", 9.4, 98.7),
    Carrier("fedex_intl_002", "FedEx International Premium", 9.2, 98.2),
    Carrier("ups_worldwide_003", "UPS Worldwide Express", 9.0, 97.8),
)
CARRIER_RATE_BASE = 0.88
CARRIER_RATE_STEP = 0.08

# Country → recognisable place keywords (country names and major hubs)
COUNTRY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "india": ("india", "mumbai", "delhi", "bangalore", "bengaluru", "chennai",
              "kolkata", "hyderabad", "pune", "ahmedabad", "nhava sheva"),
    "pakistan": ("pakistan", "karachi", "lahore"),
    "bangladesh": ("bangladesh", "dhaka", "chittagong"),
    "sri_lanka": ("sri lanka", "colombo"),
    "usa": ("usa", "united states", "u.s.", "america", "new york",
            "los angeles", "chicago", "houston", "miami", "san francisco",
            "seattle", "atlanta", "newark"),
    "canada": ("canada", "toronto", "vancouver", "montreal"),
    "mexico": ("mexico", "guadalajara", "monterrey"),
    "uk": ("uk", "united kingdom", "england", "britain", "london",
           "manchester", "felixstowe"),
    "germany": ("germany", "berlin", "hamburg", "munich", "frankfurt"),
    "france": ("france", "paris", "marseille", "lyon", "le havre"),
    "netherlands": ("netherlands", "holland", "rotterdam", "amsterdam"),
    "spain": ("spain", "madrid", "barcelona", "valencia"),
    "italy": ("italy", "milan", "rome", "genoa"),
    "china": ("china", "shanghai", "beijing", "shenzhen", "guangzhou",
              "ningbo"),
    "japan": ("japan", "tokyo", "osaka", "yokohama"),
    "south_korea": ("south korea", "korea", "seoul", "busan"),
    "singapore": ("singapore",),
    "malaysia": ("malaysia", "kuala lumpur", "port klang"),
    "uae": ("uae", "united arab emirates", "dubai", "abu dhabi", "jebel ali"),
    "saudi_arabia": ("saudi arabia", "riyadh", "jeddah"),
    "australia": ("australia", "sydney", "melbourne", "brisbane"),
    "brazil": ("brazil", "sao paulo", "rio de janeiro", "santos"),
}

COUNTRY_REGIONS: dict[str, str] = {
    "india": "south_asia", "pakistan": "south_asia",
    "bangladesh": "south_asia", "sri_lanka": "south_asia",
    "usa": "north_america", "canada": "north_america",
    "mexico": "north_america",
    "uk": "europe", "germany": "europe", "france": "europe",
    "netherlands": "europe", "spain": "europe", "italy": "europe",
    "china": "east_asia", "japan": "east_asia", "south_korea": "east_asia",
    "singapore": "southeast_asia", "malaysia": "southeast_asia",
    "uae": "middle_east", "saudi_arabia": "middle_east",
    "australia": "oceania",
    "brazil": "south_america",
}

_KEYWORD_PATTERNS: dict[str, re.Pattern[str]] = {
    country: re.compile(
        r"(?<![a-z])(" + "|".join(re.escape(k) for k in keywords) + r")(?![a-z])"
    )
    for country, keywords in COUNTRY_KEYWORDS.items()
}

_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?")
_WEIGHT = re.compile(
    r"(\d[\d,]*(?:\.\d+)?)\s*"
    r"(kgs?|kilo(?:gram)?s?|lbs?|pounds?|tonnes?|tons?|t)?(?![a-z])",
    re.IGNORECASE,
)
_UNIT_TO_KG: dict[str, float] = {
    "lb": 0.45359237, "lbs": 0.45359237, "pound": 0.45359237,
    "pounds": 0.45359237,
    "t": 1000.0, "ton": 1000.0, "tons": 1000.0, "tonne": 1000.0,
    "tonnes": 1000.0,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def quote(
    shipment_data: ShipmentData | Mapping[str, Any],
    now: datetime | None = None,
    validity_hours: int = DEFAULT_VALIDITY_HOURS,
) -> Quote:
    """
    Compute ranked carrier offers for a shipment.

    Never raises on missing or unparseable fields; defaults apply instead.

    Args:
        shipment_data: Collected fields (model or camelCase/snake_case dict).
        now: Reference time for timestamp fields (default: current UTC).
        validity_hours: How long the quote stays valid.

    Returns:
        A frozen Quote with offers sorted ascending by rate.
    """
    data = (
        shipment_data
        if isinstance(shipment_data, ShipmentData)
        else ShipmentData.model_validate(dict(shipment_data))
    )
    now = now or utcnow()

    weight_kg = parse_weight_kg(data.weight, data.cargo)
    declared_value = parse_declared_value(data.declared_value)
    route_type = classify_route(data.origin, data.destination)
    service = resolve_service_level(data.service_level)
    surcharges = compute_surcharges(data.special_requirements, declared_value)
    surcharge_total = sum(surcharges.values())
    base = base_rate(route_type, weight_kg, declared_value)

    offers: list[CarrierOffer] = []
    for index, carrier in enumerate(CARRIERS):
        variation = CARRIER_RATE_BASE + index * CARRIER_RATE_STEP
        rate = round(base * service.multiplier * variation + surcharge_total, 2)
        transit = TransitTimeRange(
            min_days=service.min_days + index,
            max_days=service.max_days + index,
        )
        offers.append(CarrierOffer(
            carrier_id=carrier.carrier_id,
            name=carrier.name,
            service_level=service.name,
            rate=rate,
            transit_time_range=transit,
            reliability=carrier.reliability,
            reputation=carrier.reputation,
            estimated_delivery=now + timedelta(days=transit.min_days + 1),
        ))

    # Stable sort keeps carrier order for equal rates
    offers.sort(key=lambda offer: offer.rate)

    result = Quote(
        quotes=tuple(offers),
        recommended_quote=offers[0],
        total_estimate=offers[0].rate,
        valid_until=now + timedelta(hours=validity_hours),
        created_at=now,
        shipment_details=ShipmentSummary(
            weight_kg=weight_kg,
            declared_value=declared_value,
            route=f"{data.origin or 'Origin'} → {data.destination or 'Destination'}",
            route_type=route_type,
            service_level=service.name,
            surcharges=surcharges,
        ),
    )

    logger.info(
        "Quoted %s route (%.1f kg, %s): best %s at %.2f",
        route_type, weight_kg, service.name,
        result.recommended_quote.carrier_id, result.total_estimate,
    )
    return result


def format_quote_message(result: Quote) -> str:
    """Render a quote as the assistant's chat message."""
    lines = [
        "Great! I've found the best shipping options for you:",
        "",
        f"**Top {len(result.quotes)} Carriers:**",
        "",
    ]
    for position, offer in enumerate(result.quotes, 1):
        lines.extend([
            f"{position}. **{offer.name}** - ${offer.rate:,.2f}",
            f"   - Transit: {offer.transit_time_range}",
            f"   - Reliability: {offer.reliability}%",
            "",
        ])
    details = result.shipment_details
    lines.extend([
        "**Shipment Details:**",
        f"- Route: {details.route}",
        f"- Weight: {details.weight_kg:g} kg",
        f"- Service: {details.service_level}",
        f"- Valid until: {result.valid_until:%Y-%m-%d %H:%M} UTC",
        "",
        "Would you like to book one of these options?",
    ])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Rule Evaluation
# ---------------------------------------------------------------------------


def parse_weight_kg(weight: str | None, cargo: str | None = None) -> float:
    """
    Extract a weight in kilograms.

    The `weight` field's first number is used (unit optional, kg assumed);
    failing that, a number with an explicit unit in the cargo description.
    """
    for text, unit_required in ((weight, False), (cargo, True)):
        if not text:
            continue
        for match in _WEIGHT.finditer(text):
            unit = (match.group(2) or "").lower()
            if unit_required and not unit:
                continue
            value = float(match.group(1).replace(",", ""))
            value *= _UNIT_TO_KG.get(unit, 1.0)
            if value > 0:
                return value
    return DEFAULT_WEIGHT_KG


def parse_declared_value(declared_value: str | None) -> float:
    if declared_value:
        match = _NUMBER.search(declared_value)
        if match:
            value = float(match.group().replace(",", ""))
            if value > 0:
                return value
    return DEFAULT_DECLARED_VALUE


def country_of(location: str | None) -> str | None:
    """Return the country whose keyword appears last in `location`."""
    if not location:
        return None
    text = location.lower()
    best: tuple[int, str] | None = None
    for country, pattern in _KEYWORD_PATTERNS.items():
        for match in pattern.finditer(text):
            if best is None or match.end() > best[0]:
                best = (match.end(), country)
    return best[1] if best else None


def classify_route(origin: str | None, destination: str | None) -> str:
    """
    domestic / regional / international.

    Same country is domestic, same region is regional, anything else is
    international. When a country cannot be recognised for both ends, the
    trailing comma-separated parts are compared instead; with no evidence
    of a border crossing the route is domestic.
    """
    if not origin or not destination:
        return "domestic"

    origin_country = country_of(origin)
    destination_country = country_of(destination)
    if origin_country and destination_country:
        if origin_country == destination_country:
            return "domestic"
        if COUNTRY_REGIONS.get(origin_country) == COUNTRY_REGIONS.get(destination_country):
            return "regional"
        return "international"

    origin_tail = _trailing_part(origin)
    destination_tail = _trailing_part(destination)
    if origin_tail and destination_tail and origin_tail != destination_tail:
        return "international"
    return "domestic"


def resolve_service_level(service_level: str | None) -> ServiceLevelRule:
    text = (service_level or "").lower()
    for key, rule in SERVICE_LEVELS.items():
        if key in text:
            return rule
    return SERVICE_LEVELS[DEFAULT_SERVICE_LEVEL]


def compute_surcharges(
    special_requirements: str | None,
    declared_value: float,
) -> dict[str, float]:
    """Surcharge per matched category; unmatched text contributes nothing."""
    if not special_requirements:
        return {}
    text = special_requirements.lower()
    return {
        rule.category: round(rule.amount(declared_value), 2)
        for rule in SURCHARGE_RULES
        if rule.matches(text)
    }


def base_rate(route_type: str, weight_kg: float, declared_value: float) -> float:
    route_rate = ROUTE_BASE_RATES.get(route_type, ROUTE_BASE_RATES["domestic"])
    weight_rate = math.ceil(weight_kg / WEIGHT_UNIT_KG) * WEIGHT_UNIT_RATE
    value_rate = math.ceil(declared_value / VALUE_UNIT) * VALUE_UNIT_RATE
    return route_rate + weight_rate + value_rate


def _trailing_part(location: str) -> str | None:
    if "," not in location:
        return None
    return location.rsplit(",", 1)[1].strip().lower() or None
