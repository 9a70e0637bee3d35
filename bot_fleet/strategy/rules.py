"""
Closed rule/condition types for bot strategies.

A parsed rule set only ever contains these node types; untyped JSON stops at
``bot_fleet.strategy.parser``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple, Union

from bot_fleet.indicators import is_indicator_fact
from bot_fleet.models import DecisionType

ALLOWED_FACTS = frozenset(
    {
        "currentPrice",
        "previousPrice",
        "lastMinuteAverage",
        "isPriceUp",
        "isPriceDown",
        "hasPosition",
        "openOrders",
        "volatility",
        "availableBalance",
        "sharesOwned",
        "botId",
        "stockId",
        "priceChangePercent",
        "timestamp",
        "orderPrice",
        "orderAge",
        "orderDeviation",
        "volume",
        "randomChance",
        "ma",
        "rsi",
        "bollingerUpper",
        "bollingerLower",
        "atr",
        "supertrend",
    }
)

COMPARISON_OPERATORS = frozenset({"lessThan", "greaterThan", "equal"})
RANGE_OPERATORS = frozenset({"between", "notBetween"})
RANDOM_CHANCE_OPERATOR = "randomChance"
ALLOWED_OPERATORS = COMPARISON_OPERATORS | RANGE_OPERATORS | {RANDOM_CHANCE_OPERATOR}

ALLOWED_EVENTS = frozenset(t.value for t in DecisionType)


def is_allowed_fact(name: str) -> bool:
    return name in ALLOWED_FACTS or is_indicator_fact(name)


@dataclass(frozen=True)
class FactRef:
    """Compare against another fact instead of a literal."""

    fact: str

    def to_dict(self) -> Dict[str, Any]:
        return {"fact": self.fact}


LeafValue = Union[bool, int, float, FactRef]


@dataclass(frozen=True)
class Comparison:
    fact: str
    operator: str  # lessThan | greaterThan | equal
    value: LeafValue

    def to_dict(self) -> Dict[str, Any]:
        value = self.value.to_dict() if isinstance(self.value, FactRef) else self.value
        return {"fact": self.fact, "operator": self.operator, "value": value}


@dataclass(frozen=True)
class RangeCondition:
    fact: str
    operator: str  # between | notBetween
    min: float
    max: float

    def to_dict(self) -> Dict[str, Any]:
        return {"fact": self.fact, "operator": self.operator, "valueMin": self.min, "valueMax": self.max}


@dataclass(frozen=True)
class RandomChance:
    """True with probability ``probability``/100, drawn from the ``randomChance`` fact."""

    probability: float
    fact: str = "randomChance"

    def to_dict(self) -> Dict[str, Any]:
        return {"fact": self.fact, "operator": RANDOM_CHANCE_OPERATOR, "randomProbability": self.probability}


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple["Condition", ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"all": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class AnyOf:
    conditions: Tuple["Condition", ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"any": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class Not:
    condition: "Condition"

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.condition.to_dict()}


Leaf = Union[Comparison, RangeCondition, RandomChance]
Group = Union[AllOf, AnyOf, Not]
Condition = Union[Leaf, Group]


@dataclass(frozen=True)
class RuleEvent:
    type: DecisionType
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "params": dict(self.params)}


@dataclass(frozen=True)
class Rule:
    """
    One strategy rule.

    ``priority`` is caller metadata only: evaluators pick the first matching
    rule in list order and never sort by it.
    """

    conditions: Group
    event: RuleEvent
    priority: float = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "conditions": self.conditions.to_dict(),
            "event": self.event.to_dict(),
        }


def iter_fact_names(condition: Condition) -> Iterator[str]:
    """Yield every fact name a condition tree reads, including fact references."""
    if isinstance(condition, (AllOf, AnyOf)):
        for child in condition.conditions:
            yield from iter_fact_names(child)
    elif isinstance(condition, Not):
        yield from iter_fact_names(condition.condition)
    elif isinstance(condition, Comparison):
        yield condition.fact
        if isinstance(condition.value, FactRef):
            yield condition.value.fact
    elif isinstance(condition, RangeCondition):
        yield condition.fact
    elif isinstance(condition, RandomChance):
        yield "randomChance"


def referenced_indicator_keys(rules: List[Rule]) -> List[str]:
    """Indicator fact keys (bare or parameterized) referenced anywhere in ``rules``."""
    keys: Dict[str, None] = {}
    for rule in rules:
        for name in iter_fact_names(rule.conditions):
            if is_indicator_fact(name):
                keys[name] = None
    return list(keys)


def dump_rule_set(rules: List[Rule]) -> str:
    return json.dumps([rule.to_dict() for rule in rules])
