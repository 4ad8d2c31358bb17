"""Network filter rules.

Rules are loaded once from configuration into validated FilterRule objects
and evaluated left to right against every network:

    filters:
      - type: name
        conditions:
          - value: "prod-*"
          - value: "^lab-[0-9]+$"
            logic: or
      - type: online
        value: "true"
        operation: and
      - type: interface
        value: "ztabc*"
        operation: not

Supported types: none, name, network (alias of name), interface, network_id,
online, assigned, address, route.

Patterns:
    - "" or "*"          always matches
    - "^..."              regular expression (searched)
    - contains "*"        shell-style glob, case-sensitive
    - anything else       exact match
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Sequence, Tuple

from zeroplex.models import ConfigError, NetworkDescriptor

logger = logging.getLogger(__name__)


class FilterType(Enum):
    NONE = "none"
    NAME = "name"
    NETWORK = "network"
    INTERFACE = "interface"
    NETWORK_ID = "network_id"
    ONLINE = "online"
    ASSIGNED = "assigned"
    ADDRESS = "address"
    ROUTE = "route"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "FilterType":
        key = value.strip().lower()
        for member in cls:
            if member.value == key and member is not cls.UNKNOWN:
                return member
        return cls.UNKNOWN


class Combinator(Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"

    @classmethod
    def parse(cls, value: Any) -> "Combinator":
        key = str(value or "").strip().upper()
        try:
            return cls(key)
        except ValueError:
            return cls.AND


@dataclass(frozen=True)
class FilterCondition:
    pattern: str
    logic: Combinator = Combinator.AND


@dataclass(frozen=True)
class FilterRule:
    type: FilterType
    conditions: Tuple[FilterCondition, ...] = ()
    negate: bool = False
    combinator: Combinator = Combinator.AND
    raw_type: str = ""


# =============================================================================
# Loading
# =============================================================================


def _parse_condition(raw: Any, index: int) -> FilterCondition:
    if isinstance(raw, str):
        return FilterCondition(pattern=raw)
    if not isinstance(raw, dict):
        raise ConfigError(f"filter condition #{index + 1} must be a mapping or string")
    value = raw.get("value", "")
    if value is None:
        value = ""
    if isinstance(value, bool):
        value = "true" if value else "false"
    logic = Combinator.OR if str(raw.get("logic") or "").strip().lower() == "or" else Combinator.AND
    return FilterCondition(pattern=str(value), logic=logic)


def parse_filter_rule(raw: Any) -> FilterRule:
    """Build a FilterRule from one configuration mapping.

    Raises ConfigError for structurally invalid input. An unrecognised type
    is kept as FilterType.UNKNOWN so that it evaluates false.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"filter rule must be a mapping, got {type(raw).__name__}")

    raw_type = raw.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ConfigError("filter rule is missing a 'type'")
    filter_type = FilterType.parse(raw_type)
    if filter_type is FilterType.UNKNOWN:
        logger.warning(f"Unknown filter type '{raw_type}'; rule will never match")

    negate = raw.get("negate", False)
    if not isinstance(negate, bool):
        raise ConfigError(f"filter rule '{raw_type}': 'negate' must be a boolean")

    conditions_raw = raw.get("conditions")
    conditions: List[FilterCondition] = []
    if conditions_raw is not None:
        if not isinstance(conditions_raw, list):
            raise ConfigError(f"filter rule '{raw_type}': 'conditions' must be a list")
        for i, cond in enumerate(conditions_raw):
            conditions.append(_parse_condition(cond, i))
    elif "value" in raw:
        conditions.append(_parse_condition({"value": raw.get("value")}, 0))

    return FilterRule(
        type=filter_type,
        conditions=tuple(conditions),
        negate=negate,
        combinator=Combinator.parse(raw.get("operation")),
        raw_type=raw_type,
    )


def parse_filter_rules(raw: Any) -> List[FilterRule]:
    """Build the rule list from the 'filters' configuration value."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("'filters' must be a list of rules")
    rules = [parse_filter_rule(item) for item in raw]
    # A lone "none" rule is the same as no filtering at all.
    if len(rules) == 1 and rules[0].type is FilterType.NONE:
        return []
    return rules


# =============================================================================
# Evaluation
# =============================================================================


def matches_pattern(value: str, pattern: str) -> bool:
    if pattern in ("", "*"):
        return True

    if pattern.startswith("^"):
        try:
            return re.search(pattern, value) is not None
        except re.error as e:
            logger.debug(f"Invalid regex pattern {pattern!r}: {e}")
            return False

    if "*" in pattern:
        try:
            return re.fullmatch(fnmatch.translate(pattern), value) is not None
        except re.error:
            return pattern.strip("*").lower() in value.lower()

    return value == pattern


def _bool_condition(actual: bool, pattern: str) -> bool:
    return pattern.strip().lower() == ("true" if actual else "false")


def _any_matches(values: Sequence[str], pattern: str) -> bool:
    return any(matches_pattern(v, pattern) for v in values)


def _evaluate_condition(
    filter_type: FilterType, condition: FilterCondition, network: NetworkDescriptor
) -> bool:
    pattern = condition.pattern
    if filter_type is FilterType.NONE:
        return True
    if filter_type in (FilterType.NAME, FilterType.NETWORK):
        return matches_pattern(network.name, pattern)
    if filter_type is FilterType.INTERFACE:
        return matches_pattern(network.interface, pattern)
    if filter_type is FilterType.NETWORK_ID:
        return matches_pattern(network.id, pattern)
    if filter_type is FilterType.ONLINE:
        return _bool_condition(network.online, pattern)
    if filter_type is FilterType.ASSIGNED:
        return _bool_condition(network.assigned, pattern)
    if filter_type is FilterType.ADDRESS:
        return _any_matches(network.assigned_addresses, pattern)
    if filter_type is FilterType.ROUTE:
        return _any_matches(network.routes, pattern)
    return False


def _combine(left: bool, right: bool, combinator: Combinator) -> bool:
    if combinator is Combinator.OR:
        return left or right
    if combinator is Combinator.NOT:
        return left and not right
    return left and right


def evaluate_rule(rule: FilterRule, network: NetworkDescriptor) -> bool:
    """Evaluate one rule, including its negate flag."""
    if rule.type is FilterType.UNKNOWN:
        return False

    conditions = rule.conditions or (FilterCondition(pattern=""),)
    result = _evaluate_condition(rule.type, conditions[0], network)
    for condition in conditions[1:]:
        current = _evaluate_condition(rule.type, condition, network)
        if condition.logic is Combinator.OR:
            result = result or current
        else:
            result = result and current

    return not result if rule.negate else result


def evaluate(network: NetworkDescriptor, rules: Sequence[FilterRule]) -> bool:
    """Return True if the network passes the rule list."""
    if not rules:
        return True

    result = evaluate_rule(rules[0], network)
    for rule in rules[1:]:
        result = _combine(result, evaluate_rule(rule, network), rule.combinator)
    return result


def filter_networks(
    networks: Iterable[NetworkDescriptor], rules: Sequence[FilterRule]
) -> List[NetworkDescriptor]:
    networks = list(networks)
    if not rules:
        logger.debug("No filters configured - processing all networks")
        return networks

    kept: List[NetworkDescriptor] = []
    for network in networks:
        if evaluate(network, rules):
            kept.append(network)
            logger.debug(f"Network {network.display_name} passed filtering")
        else:
            logger.debug(f"Network {network.display_name} filtered out")
    logger.debug(f"Filtering: {len(kept)} of {len(networks)} networks passed")
    return kept
