"""
Validating parse boundary for strategy rule sets.

Input may be a JSON string, a single rule object, a list of rule objects or a
list of already-parsed ``Rule`` instances. Individually invalid rules (unknown
fact, operator or event type, malformed conditions) are dropped so one bad rule
never disables a bot; only unparsable JSON text fails the whole payload.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, List, Optional

from bot_fleet.models import DecisionType
from bot_fleet.strategy.rules import (
    ALLOWED_EVENTS,
    ALLOWED_OPERATORS,
    RANDOM_CHANCE_OPERATOR,
    RANGE_OPERATORS,
    AllOf,
    AnyOf,
    Comparison,
    Condition,
    FactRef,
    Group,
    LeafValue,
    Not,
    RandomChance,
    RangeCondition,
    Rule,
    RuleEvent,
    is_allowed_fact,
)

log = logging.getLogger(__name__)

DEFAULT_PRIORITY = 1


class RuleSetParseError(ValueError):
    """Raised when a rule payload is not valid JSON."""


def parse_rule_set(payload: Any) -> List[Rule]:
    if payload is None or payload == "" or payload == []:
        return []

    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RuleSetParseError(f"Rule definition is not valid UTF-8: {exc.reason}") from exc

    if isinstance(payload, str):
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuleSetParseError(f"Invalid JSON rule definition: {exc.msg}") from exc
        except RecursionError as exc:
            raise RuleSetParseError("Invalid JSON rule definition: nested too deeply") from exc
        if not decoded:
            return []
        raw_rules = decoded if isinstance(decoded, list) else [decoded]
    elif isinstance(payload, (list, tuple)):
        raw_rules = list(payload)
    else:
        raw_rules = [payload]

    rules: List[Rule] = []
    for index, raw in enumerate(raw_rules):
        if isinstance(raw, Rule):
            rules.append(raw)
            continue
        rule = parse_rule(raw)
        if rule is None:
            log.debug("Dropping invalid rule index=%s", index)
            continue
        rules.append(rule)
    return rules


def parse_rule(raw: Any) -> Optional[Rule]:
    if not isinstance(raw, dict):
        return None
    try:
        conditions = _parse_group(raw.get("conditions"))
    except RecursionError:
        log.debug("Dropping rule with condition tree nested too deeply")
        return None
    event = _parse_event(raw.get("event"))
    if conditions is None or event is None:
        return None
    priority = raw.get("priority")
    if not _is_number(priority):
        priority = DEFAULT_PRIORITY
    return Rule(conditions=conditions, event=event, priority=priority)


def _parse_event(raw: Any) -> Optional[RuleEvent]:
    if not isinstance(raw, dict):
        return None
    event_type = raw.get("type")
    if not isinstance(event_type, str) or event_type not in ALLOWED_EVENTS:
        return None
    params = raw.get("params")
    return RuleEvent(type=DecisionType(event_type), params=dict(params) if isinstance(params, dict) else {})


def _parse_group(raw: Any) -> Optional[Group]:
    if not isinstance(raw, dict):
        return None
    if isinstance(raw.get("all"), list):
        children = _parse_children(raw["all"])
        return AllOf(children) if children else None
    if isinstance(raw.get("any"), list):
        children = _parse_children(raw["any"])
        return AnyOf(children) if children else None
    if "not" in raw:
        inner = raw["not"]
        if isinstance(inner, list):
            children = _parse_children(inner)
            return Not(AllOf(children)) if children else None
        child = _parse_node(inner)
        return Not(child) if child is not None else None
    return None


def _parse_children(raw_children: list) -> tuple:
    parsed = (_parse_node(child) for child in raw_children)
    return tuple(c for c in parsed if c is not None)


def _parse_node(raw: Any) -> Optional[Condition]:
    if not isinstance(raw, dict):
        return None
    if "fact" in raw or "operator" in raw:
        return _parse_leaf(raw)
    return _parse_group(raw)


def _parse_leaf(raw: dict) -> Optional[Condition]:
    fact = raw.get("fact")
    operator = raw.get("operator")
    if not isinstance(fact, str) or not is_allowed_fact(fact):
        return None
    if not isinstance(operator, str) or operator not in ALLOWED_OPERATORS:
        return None

    if operator in RANGE_OPERATORS:
        lo, hi = raw.get("valueMin"), raw.get("valueMax")
        value = raw.get("value")
        if (lo is None or hi is None) and isinstance(value, dict):
            lo, hi = value.get("min"), value.get("max")
        if not _is_number(lo) or not _is_number(hi):
            return None
        return RangeCondition(fact=fact, operator=operator, min=lo, max=hi)

    if operator == RANDOM_CHANCE_OPERATOR:
        probability = raw.get("randomProbability")
        if not _is_number(probability) or probability < 0 or probability > 100:
            return None
        return RandomChance(probability=probability, fact=fact)

    value = _parse_value(raw.get("value"), allow_bool=(operator == "equal"))
    if value is None:
        return None
    return Comparison(fact=fact, operator=operator, value=value)


def _parse_value(raw: Any, *, allow_bool: bool) -> Optional[LeafValue]:
    if isinstance(raw, bool):
        return raw if allow_bool else None
    if _is_number(raw):
        return raw
    if isinstance(raw, str):
        if is_allowed_fact(raw):
            return FactRef(raw)
        try:
            number = float(raw)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(raw, dict):
        ref = raw.get("fact")
        if isinstance(ref, str) and is_allowed_fact(ref):
            return FactRef(ref)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
