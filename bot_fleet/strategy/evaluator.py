from __future__ import annotations

import math
from typing import Any, Mapping, Optional, Sequence, Tuple

from bot_fleet.models import Decision
from bot_fleet.strategy.rules import (
    AllOf,
    AnyOf,
    Comparison,
    Condition,
    FactRef,
    Not,
    RandomChance,
    RangeCondition,
    Rule,
    referenced_indicator_keys,
)

_MISSING = object()


class StrategyEvaluator:
    """
    First-match rule evaluation over a fact map.

    Rules are tried in the order given; the first rule whose conditions hold
    produces the decision. ``Rule.priority`` is not consulted: callers that
    want priority ordering must sort before constructing the evaluator.
    Evaluation is pure, so an instance can be shared across bots.
    """

    def __init__(self, rules: Sequence[Rule]) -> None:
        self._rules: Tuple[Rule, ...] = tuple(rules or ())
        self._indicator_keys: Tuple[str, ...] = tuple(referenced_indicator_keys(list(self._rules)))

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    @property
    def indicator_keys(self) -> Tuple[str, ...]:
        """Indicator facts referenced by any rule, discovered once at construction."""
        return self._indicator_keys

    def evaluate(self, facts: Mapping[str, Any]) -> Optional[Decision]:
        for rule in self._rules:
            if evaluate_condition(rule.conditions, facts):
                return Decision(type=rule.event.type, params=dict(rule.event.params))
        return None


def evaluate_condition(condition: Condition, facts: Mapping[str, Any]) -> bool:
    if isinstance(condition, AllOf):
        return all(evaluate_condition(c, facts) for c in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate_condition(c, facts) for c in condition.conditions)
    if isinstance(condition, Not):
        return not evaluate_condition(condition.condition, facts)
    if isinstance(condition, Comparison):
        return _compare(condition, facts)
    if isinstance(condition, RangeCondition):
        value = facts.get(condition.fact, _MISSING)
        if not _is_real(value):
            return False
        inside = condition.min <= value <= condition.max
        return inside if condition.operator == "between" else not inside
    if isinstance(condition, RandomChance):
        draw = facts.get("randomChance", _MISSING)
        return _is_real(draw) and draw < condition.probability
    return False


def _compare(condition: Comparison, facts: Mapping[str, Any]) -> bool:
    left = facts.get(condition.fact, _MISSING)
    right: Any = condition.value
    if isinstance(right, FactRef):
        right = facts.get(right.fact, _MISSING)
    if left is _MISSING or left is None or right is _MISSING or right is None:
        return False

    if condition.operator == "equal":
        if isinstance(left, bool) or isinstance(right, bool):
            return isinstance(left, bool) and isinstance(right, bool) and left == right
        return left == right

    if not _is_real(left) or not _is_real(right):
        return False
    if condition.operator == "lessThan":
        return left < right
    if condition.operator == "greaterThan":
        return left > right
    return False


def _is_real(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
