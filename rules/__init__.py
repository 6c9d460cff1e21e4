"""
Business rules for the wallet core.

Provides the fixed membership rank order, commission eligibility, and the
condition format used to express salary threshold tiers.
"""

from .ranks import (
    MembershipLevel,
    RANK_ORDER,
    rank_ordinal,
    is_higher,
    is_commission_eligible,
    parse_level,
)
from .rule_engine import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    ThresholdRule,
    best_matching_rule,
    parse_condition,
)

__all__ = [
    "MembershipLevel",
    "RANK_ORDER",
    "rank_ordinal",
    "is_higher",
    "is_commission_eligible",
    "parse_level",
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "LogicalOperator",
    "ThresholdRule",
    "best_matching_rule",
    "parse_condition",
]
