from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from operator import eq, ge, gt, le, lt, ne
from typing import Any, Callable, Optional, Union


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"


_COMPARE: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: eq,
    ConditionOperator.NOT_EQUALS: ne,
    ConditionOperator.GREATER_THAN: gt,
    ConditionOperator.LESS_THAN: lt,
    ConditionOperator.GREATER_THAN_OR_EQUAL: ge,
    ConditionOperator.LESS_THAN_OR_EQUAL: le,
}


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class Condition:
    """``counters[field] <operator> value``; a missing counter never matches."""

    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, counters: dict) -> bool:
        actual = counters.get(self.field)
        if actual is None:
            return False
        return _COMPARE[self.operator](actual, self.value)


@dataclass(frozen=True)
class ConditionGroup:
    operator: LogicalOperator
    conditions: tuple[Union[Condition, "ConditionGroup"], ...]

    def evaluate(self, counters: dict) -> bool:
        # An empty group would qualify everyone.
        if not self.conditions:
            return False
        combine = all if self.operator == LogicalOperator.AND else any
        return combine(part.evaluate(counters) for part in self.conditions)


def parse_condition(data: dict) -> Union[Condition, ConditionGroup]:
    """Build a condition tree from its JSON form.

    ``{"field", "operator", "value"}`` is a leaf; ``{"operator", "conditions"}``
    is a group. Raises ``ValueError`` on anything else.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Condition must be an object, got {type(data).__name__}")
    if "conditions" in data:
        return ConditionGroup(
            operator=LogicalOperator(data.get("operator", LogicalOperator.AND.value)),
            conditions=tuple(parse_condition(part) for part in data["conditions"]),
        )
    if "field" not in data or "operator" not in data:
        raise ValueError("Condition needs 'field' and 'operator'")
    return Condition(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass(frozen=True)
class ThresholdRule:
    """A named payout guarded by a condition over network counters."""

    name: str
    amount: Decimal
    condition: Union[Condition, ConditionGroup]

    def matches(self, counters: dict) -> bool:
        return self.condition.evaluate(counters)


def best_matching_rule(rules: list[ThresholdRule], counters: dict) -> Optional[ThresholdRule]:
    """Highest-amount rule whose condition holds; rules never stack."""
    for rule in sorted(rules, key=lambda r: r.amount, reverse=True):
        if rule.matches(counters):
            return rule
    return None
