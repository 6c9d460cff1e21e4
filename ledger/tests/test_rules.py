"""
Tests for salary threshold conditions.
"""

import pytest
from decimal import Decimal

from ledger.config import PlatformConfig, SalaryTier
from rules.rule_engine import ConditionGroup, ThresholdRule, best_matching_rule, parse_condition


def _rule(name, amount, condition):
    return ThresholdRule(name=name, amount=Decimal(amount), condition=parse_condition(condition))


class TestConditions:
    def test_leaf_condition(self):
        """Leaves compare one counter against a value."""
        condition = parse_condition({"field": "direct_qualified", "operator": "greater_than_or_equal", "value": 15})

        assert condition.evaluate({"direct_qualified": 15}) is True
        assert condition.evaluate({"direct_qualified": 14}) is False
        assert condition.evaluate({}) is False

    def test_group_condition(self):
        """Groups combine their parts with AND or OR."""
        condition = parse_condition(
            {
                "operator": "AND",
                "conditions": [
                    {"field": "direct_qualified", "operator": "greater_than_or_equal", "value": 10},
                    {"field": "network_qualified", "operator": "greater_than_or_equal", "value": 30},
                ],
            }
        )

        assert isinstance(condition, ConditionGroup)
        assert condition.evaluate({"direct_qualified": 10, "network_qualified": 30}) is True
        assert condition.evaluate({"direct_qualified": 10, "network_qualified": 29}) is False

    def test_empty_group_never_matches(self):
        """An empty group qualifies no one."""
        assert parse_condition({"operator": "OR", "conditions": []}).evaluate({"direct_qualified": 99}) is False

    @pytest.mark.parametrize(
        "data",
        [
            {"field": "direct_qualified"},
            {"field": "direct_qualified", "operator": "roughly", "value": 1},
            ["not", "a", "dict"],
        ],
    )
    def test_malformed_conditions(self, data):
        """Malformed conditions are rejected up front."""
        with pytest.raises(ValueError):
            parse_condition(data)

    def test_malformed_tier_rejected_by_config(self):
        """Config refuses salary tiers whose condition does not parse."""
        with pytest.raises(ValueError):
            PlatformConfig(salary_tiers=[SalaryTier(name="bad", amount=Decimal("1"), condition={"field": "x"})])


class TestBestMatchingRule:
    def test_highest_amount_wins(self):
        """When several rules match, only the largest pays."""
        rules = [
            _rule("small", "15000", {"field": "direct_qualified", "operator": "greater_than_or_equal", "value": 15}),
            _rule("large", "48000", {"field": "network_qualified", "operator": "greater_than_or_equal", "value": 40}),
            _rule("medium", "20000", {"field": "direct_qualified", "operator": "greater_than_or_equal", "value": 20}),
        ]

        best = best_matching_rule(rules, {"direct_qualified": 20, "network_qualified": 40})

        assert best.name == "large"

    def test_no_match(self):
        """No rule matching yields None."""
        rules = [_rule("small", "15000", {"field": "direct_qualified", "operator": "greater_than", "value": 1})]

        assert best_matching_rule(rules, {"direct_qualified": 1}) is None
