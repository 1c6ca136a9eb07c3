"""
Tiered (distance x volume band) rate tables and the exact-match
rate-record cache.

Lookup policy is FIRST MATCH in table order: when bands overlap, the rule
listed earlier wins even if a later one fits tighter.
"""
import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from ml_config import CURRENCY

logger = logging.getLogger(__name__)

FLAT = "FLAT"
VARIABLE = "VARIABLE"
UNKNOWN = "UNKNOWN"

# Source sheets spell it the Dutch way
RATE_TYPE_ALIASES = {"VARIABEL": VARIABLE, "FLEX": VARIABLE, "FLEXIBEL": VARIABLE}

ROLE_TO_RULE_TYPE = {
    "origin": "ORIGIN",
    "source": "ORIGIN",
    "transport": "ORIGIN",
    "destination": "DESTINATION",
}


def canonical_rate_type(value):
    v = str(value or "").strip().upper()
    return RATE_TYPE_ALIASES.get(v, v)


def rule_type_for_role(role):
    """Maps a caller role (origin/destination/transport) to a rule Type."""
    key = str(role or "").strip().lower()
    return ROLE_TO_RULE_TYPE.get(key, str(role or "").strip().upper())


def _same(a, b):
    return str(a or "").strip().lower() == str(b or "").strip().lower()


@dataclass
class TieredRateRule:
    operation: str
    type: str
    distance_start: float
    distance_end: float
    min_value: float
    max_value: float
    rate_type: str
    flat_rate: float = 0.0
    flex_rate: float = 0.0

    def matches(self, distance, volume, rule_type, operation):
        return (
            _same(self.operation, operation)
            and _same(self.type, rule_type)
            and self.distance_start <= distance <= self.distance_end
            and self.min_value <= volume <= self.max_value
        )

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, d):
        return cls(
            operation=str(d["operation"]),
            type=str(d["type"]),
            distance_start=float(d["distance_start"]),
            distance_end=float(d["distance_end"]),
            min_value=float(d["min_value"]),
            max_value=float(d["max_value"]),
            rate_type=canonical_rate_type(d["rate_type"]),
            flat_rate=float(d.get("flat_rate") or 0),
            flex_rate=float(d.get("flex_rate") or 0),
        )


@dataclass
class RateQuote:
    rate_type: str
    rate: float
    rate_per_unit: Optional[float] = None

    @property
    def available(self):
        # Zero means "cost unavailable", never "free"
        return self.rate_type != UNKNOWN and bool(self.rate)


class TieredRateTable:
    def __init__(self, rules: List[TieredRateRule]):
        self.rules = list(rules)

    def __len__(self):
        return len(self.rules)

    def find_rule(self, distance, volume, rule_type, operation):
        if operation is None or distance is None or volume is None:
            return None
        for rule in self.rules:
            if rule.matches(distance, volume, rule_type, operation):
                return rule
        return None

    def lookup(self, distance, volume, rule_type, operation) -> RateQuote:
        rule = self.find_rule(distance, volume, rule_type, operation)
        if rule is None:
            logger.warning("No matching range for operation=%r type=%r distance=%s volume=%s",
                           operation, rule_type, distance, volume)
            return RateQuote(UNKNOWN, 0)

        if rule.rate_type == FLAT:
            return RateQuote(FLAT, rule.flat_rate)
        if rule.rate_type == VARIABLE:
            return RateQuote(VARIABLE, rule.flex_rate * volume, rate_per_unit=rule.flex_rate)

        logger.warning("Rule for %r has unsupported rate type %r", rule.operation, rule.rate_type)
        return RateQuote(UNKNOWN, 0)

    def operations(self):
        """Distinct operation names in table order."""
        return list(dict.fromkeys(r.operation for r in self.rules if r.operation))


@dataclass
class RateRecord:
    origin: str
    destination: str
    cost: float
    equipment_type: str

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, d):
        return cls(
            origin=str(d["origin"]),
            destination=str(d["destination"]),
            cost=float(d["cost"]),
            equipment_type=str(d["equipment_type"]),
        )


class RateCache:
    """Exact (case-insensitive, trimmed) lookup of previously seen lanes."""

    def __init__(self, records: List[RateRecord]):
        self.records = list(records)

    def __len__(self):
        return len(self.records)

    def lookup(self, origin, destination, equipment_type) -> Optional[RateRecord]:
        for r in self.records:
            if _same(r.origin, origin) and _same(r.destination, destination) \
                    and _same(r.equipment_type, equipment_type):
                return r
        return None

    def lookup_cost(self, origin, destination, equipment_type):
        match = self.lookup(origin, destination, equipment_type)
        if match is None:
            logger.info("No exact rate for %r -> %r (%s)", origin, destination, equipment_type)
            return None
        return {"cost": round(match.cost, 2), "currency": CURRENCY}
