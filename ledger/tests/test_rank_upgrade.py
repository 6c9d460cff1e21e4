"""
Tests for membership upgrades and per-video rates.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from ledger.config import PlatformConfig
from ledger.errors import InvalidRankTargetError
from ledger.models import CommissionLevel, EntryReason, UpgradeStatus
from rules.ranks import MembershipLevel, next_level, rank_ordinal
from workflows.rank_upgrade import task_reward_amount, upgrade_key


class TestRankOrder:
    """Tests for the fixed rank order."""

    def test_ordinals_follow_declaration(self):
        """Intern is lowest and Rank 10 highest."""
        assert rank_ordinal("Intern") == 0
        assert rank_ordinal(MembershipLevel.RANK_2) == 2
        assert rank_ordinal("Rank 10") == 10

    def test_next_level(self):
        """Every rank but the last has a successor."""
        assert next_level(MembershipLevel.INTERN) == MembershipLevel.RANK_1
        with pytest.raises(InvalidRankTargetError):
            next_level(MembershipLevel.RANK_10)


class TestUpgrade:
    """Tests for the atomic upgrade unit."""

    def test_rank_one_has_no_bonus(self, gateway, make_account, fund, balances):
        """Intern to Rank 1 debits the price and pays no bonus."""
        account_id = make_account()
        fund(account_id, "3300")

        result = gateway.request_rank_upgrade(account_id, "Rank 1")

        assert result.success, result.message
        request = result.data
        assert request.status == UpgradeStatus.COMPLETED
        assert request.bonus_amount == Decimal("0")
        assert balances(account_id) == (Decimal("0"), Decimal("0"))
        assert gateway.get_account(account_id).data.membership_level == MembershipLevel.RANK_1

    def test_rank_two_pays_bonus(self, gateway, make_account, fund, balances):
        """Upgrades to Rank 2 and above credit 15% of the price to income."""
        account_id = make_account(level=MembershipLevel.RANK_1)
        fund(account_id, "10000")

        result = gateway.request_rank_upgrade(account_id, MembershipLevel.RANK_2)

        assert result.data.bonus_amount == Decimal("1440.00")
        assert balances(account_id) == (Decimal("1440"), Decimal("400"))
        entries = gateway.ledger.entries_for(upgrade_key(result.data.id))
        assert [e.reason for e in entries] == [EntryReason.RANK_UPGRADE_DEBIT, EntryReason.RANK_UPGRADE_BONUS]

    def test_activation_time_recorded(self, gateway, make_account, fund, clock):
        """The membership activation time is the upgrade time."""
        account_id = make_account()
        fund(account_id, "3300")

        gateway.request_rank_upgrade(account_id, "Rank 1")

        assert gateway.get_account(account_id).data.membership_activated_at == clock.now()

    def test_skipping_ranks_is_allowed(self, gateway, make_account, fund):
        """Any strictly higher rank is a valid target."""
        account_id = make_account()
        fund(account_id, "27000")

        result = gateway.request_rank_upgrade(account_id, "Rank 3")

        assert result.success
        assert result.data.from_level == MembershipLevel.INTERN

    def test_insufficient_balance_changes_nothing(self, gateway, make_account, fund, balances):
        """A failed upgrade leaves rank and wallets untouched and is recorded."""
        account_id = make_account()
        fund(account_id, "1000")

        result = gateway.request_rank_upgrade(account_id, "Rank 1")

        assert result.error_code == "INSUFFICIENT_BALANCE"
        assert balances(account_id) == (Decimal("0"), Decimal("1000"))
        assert gateway.get_account(account_id).data.membership_level == MembershipLevel.INTERN
        history = gateway.get_rank_upgrades(account_id).data
        assert [r.status for r in history] == [UpgradeStatus.FAILED]
        assert history[0].failure_reason == "INSUFFICIENT_BALANCE"

    def test_income_wallet_does_not_pay_for_upgrades(self, gateway, make_account, fund):
        """Only the personal wallet funds an upgrade."""
        account_id = make_account()
        fund(account_id, "3300", "income")

        assert gateway.request_rank_upgrade(account_id, "Rank 1").error_code == "INSUFFICIENT_BALANCE"

    @pytest.mark.parametrize("target", ["Rank 2", "Rank 1", "Intern"])
    def test_target_must_be_higher(self, gateway, make_account, fund, target):
        """Same or lower ranks are rejected."""
        account_id = make_account(level=MembershipLevel.RANK_2)
        fund(account_id, "9600")

        assert gateway.request_rank_upgrade(account_id, target).error_code == "INVALID_RANK_TARGET"

    def test_unknown_target(self, gateway, make_account):
        """Levels outside the rank order are rejected."""
        account_id = make_account()

        assert gateway.request_rank_upgrade(account_id, "Rank 99").error_code == "INVALID_RANK_TARGET"

    def test_upgrade_pays_upstream_commissions(self, gateway, make_account, fund, balances):
        """The upgrade price cascades to eligible referrers."""
        referrer = make_account(level=MembershipLevel.RANK_5)
        account_id = make_account(referrer=referrer)
        fund(account_id, "3300")

        gateway.request_rank_upgrade(account_id, "Rank 1")

        assert balances(referrer)[0] == Decimal("330.00")

    def test_replay_uses_original_config(self, gateway, config_store, make_account, fund, balances):
        """Replaying an upgrade's cascade pays nothing twice, even after a rate change."""
        referrer = make_account(level=MembershipLevel.RANK_5)
        account_id = make_account(referrer=referrer)
        fund(account_id, "3300")
        request = gateway.request_rank_upgrade(account_id, "Rank 1").data
        config_store.publish(upgrade_commission_percent={CommissionLevel.A: Decimal("20")})

        result = gateway.replay_upgrade_commissions(request.id)

        assert result.success
        assert [c.amount_earned for c in result.data] == [Decimal("330.00")]
        assert result.data[0].config_version == 1
        assert balances(referrer)[0] == Decimal("330.00")

    def test_replay_refuses_failed_upgrades(self, gateway, make_account):
        """Only completed upgrades have a cascade to replay."""
        account_id = make_account()
        failed = gateway.request_rank_upgrade(account_id, "Rank 1")
        request = gateway.get_rank_upgrades(account_id).data[0]

        assert failed.error_code == "INSUFFICIENT_BALANCE"
        assert gateway.replay_upgrade_commissions(request.id).error_code == "INVALID_STATE_TRANSITION"
        assert gateway.replay_upgrade_commissions(uuid4()).error_code == "TRANSACTION_NOT_FOUND"


class TestTaskRewardRates:
    """Tests for per-video payments."""

    @pytest.mark.parametrize(
        "level, expected",
        [
            (MembershipLevel.INTERN, Decimal("10")),
            (MembershipLevel.RANK_1, Decimal("22.00")),
            (MembershipLevel.RANK_2, Decimal("64.00")),
            (MembershipLevel.RANK_4, Decimal("333.33")),
        ],
    )
    def test_rate_by_level(self, level, expected):
        """A rank's price is spread over 30 days of five videos."""
        assert task_reward_amount(level, PlatformConfig()) == expected

    def test_gateway_uses_current_rate(self, gateway, make_account, balances):
        """Task rewards without an amount pay the member's current rate."""
        account_id = make_account(level=MembershipLevel.RANK_1)

        result = gateway.complete_task_reward(account_id, "video-7")

        assert result.success
        assert balances(account_id)[0] == Decimal("22")
