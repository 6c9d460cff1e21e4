"""
Unit Tests for the Ledger Service

Tests cover:
1. Single-leg credits and debits
2. Idempotency (replay and conflicting reuse)
3. Non-negative balances
4. Atomic multi-leg units
5. Invariant violation, freeze and reconciliation
6. History and balance queries
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from ledger.clock import FixedClock
from ledger.errors import (
    AccountNotFoundError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidRequestError,
    LedgerInvariantViolation,
)
from ledger.models import Account, EntryReason, LedgerLeg, Wallet
from ledger.service import LedgerService


def _service_with_account():
    clock = FixedClock()
    service = LedgerService(clock=clock)
    account = Account(created_at=clock.now())
    service.storage.add_account(account)
    return service, account.id


def _entries_sum(service, account_id, wallet):
    return sum((e.delta for e in service.storage.account_entries(account_id, wallet)), Decimal("0"))


class TestApply:
    """Tests for single-leg balance mutations."""

    def test_credit_updates_balance_and_records_entry(self):
        """A credit moves the cached balance and appends one entry."""
        service, account_id = _service_with_account()

        result = service.apply(account_id, Wallet.INCOME, Decimal("500.00"), EntryReason.TASK_REWARD, "credit-001")

        assert result.replayed is False
        assert result.new_balance == Decimal("500.00")
        entry = result.entries[0]
        assert entry.delta == Decimal("500.00")
        assert entry.reason == EntryReason.TASK_REWARD
        assert entry.idempotency_key == "credit-001"
        assert service.get_balance(account_id).income_wallet == Decimal("500.00")
        assert service.get_balance(account_id).personal_wallet == Decimal("0")

    def test_wallets_are_independent(self):
        """Income and personal wallets never share a balance."""
        service, account_id = _service_with_account()

        service.apply(account_id, Wallet.INCOME, Decimal("100"), EntryReason.COMMISSION, "income-1")
        service.apply(account_id, Wallet.PERSONAL, Decimal("3300"), EntryReason.DEPOSIT, "personal-1")

        balance = service.get_balance(account_id)
        assert balance.income_wallet == Decimal("100")
        assert balance.personal_wallet == Decimal("3300")
        assert balance.total_entries == 2

    def test_debit_below_zero_is_rejected(self):
        """A debit larger than the balance fails and writes nothing."""
        service, account_id = _service_with_account()
        service.apply(account_id, Wallet.PERSONAL, Decimal("100"), EntryReason.DEPOSIT, "fund")

        with pytest.raises(InsufficientBalanceError):
            service.apply(account_id, Wallet.PERSONAL, Decimal("-100.01"), EntryReason.WITHDRAWAL, "too-much")

        assert service.get_balance(account_id).personal_wallet == Decimal("100")
        assert service.entries_for("too-much") == []

    def test_debit_to_exactly_zero_is_allowed(self):
        """Balances may reach zero but never go below it."""
        service, account_id = _service_with_account()
        service.apply(account_id, Wallet.INCOME, Decimal("3300"), EntryReason.TASK_REWARD, "fund")

        result = service.apply(account_id, Wallet.INCOME, Decimal("-3300"), EntryReason.WITHDRAWAL, "drain")

        assert result.new_balance == Decimal("0")

    def test_zero_delta_is_rejected(self):
        """Entries must move money."""
        service, account_id = _service_with_account()

        with pytest.raises(InvalidRequestError):
            service.apply(account_id, Wallet.INCOME, Decimal("0"), EntryReason.TASK_REWARD, "nothing")

    def test_unknown_account(self):
        """Mutating a missing account raises AccountNotFoundError."""
        service = LedgerService()

        with pytest.raises(AccountNotFoundError):
            service.apply(uuid4(), Wallet.INCOME, Decimal("1"), EntryReason.TASK_REWARD, "ghost")


class TestIdempotency:
    """Tests that a key is applied at most once."""

    def test_replay_returns_original_entries(self):
        """Reusing a key returns the first result without a second write."""
        service, account_id = _service_with_account()

        first = service.apply(account_id, Wallet.INCOME, Decimal("250"), EntryReason.COMMISSION, "commission-1")
        second = service.apply(account_id, Wallet.INCOME, Decimal("250"), EntryReason.COMMISSION, "commission-1")

        assert second.replayed is True
        assert [e.id for e in second.entries] == [e.id for e in first.entries]
        assert service.get_balance(account_id).income_wallet == Decimal("250")
        assert service.get_balance(account_id).total_entries == 1

    def test_key_reuse_with_different_amount_conflicts(self):
        """A key bound to one movement cannot be reused for another."""
        service, account_id = _service_with_account()
        service.apply(account_id, Wallet.INCOME, Decimal("250"), EntryReason.COMMISSION, "commission-1")

        with pytest.raises(IdempotencyConflictError):
            service.apply(account_id, Wallet.INCOME, Decimal("300"), EntryReason.COMMISSION, "commission-1")

        assert service.get_balance(account_id).income_wallet == Decimal("250")

    def test_failed_unit_does_not_consume_key(self):
        """A rejected unit leaves its key free for a later retry."""
        service, account_id = _service_with_account()

        with pytest.raises(InsufficientBalanceError):
            service.apply(account_id, Wallet.PERSONAL, Decimal("-50"), EntryReason.WITHDRAWAL, "retry-me")

        service.apply(account_id, Wallet.PERSONAL, Decimal("50"), EntryReason.DEPOSIT, "fund")
        result = service.apply(account_id, Wallet.PERSONAL, Decimal("-50"), EntryReason.WITHDRAWAL, "retry-me")

        assert result.replayed is False
        assert result.new_balance == Decimal("0")


class TestApplyMany:
    """Tests for atomic multi-leg units."""

    def test_all_legs_apply_together(self):
        """Every leg of a unit lands under the same key."""
        service, account_id = _service_with_account()
        service.apply(account_id, Wallet.PERSONAL, Decimal("9600"), EntryReason.DEPOSIT, "fund")

        legs = [
            LedgerLeg(account_id=account_id, wallet=Wallet.PERSONAL, delta=Decimal("-9600"), reason=EntryReason.RANK_UPGRADE_DEBIT),
            LedgerLeg(account_id=account_id, wallet=Wallet.INCOME, delta=Decimal("1440"), reason=EntryReason.RANK_UPGRADE_BONUS),
        ]
        result = service.apply_many(legs, "upgrade-1")

        assert [e.leg for e in result.entries] == [0, 1]
        balance = service.get_balance(account_id)
        assert balance.personal_wallet == Decimal("0")
        assert balance.income_wallet == Decimal("1440")

    def test_one_failing_leg_rolls_back_the_unit(self):
        """If any leg would go negative, no leg is written."""
        service, account_id = _service_with_account()

        legs = [
            LedgerLeg(account_id=account_id, wallet=Wallet.INCOME, delta=Decimal("1440"), reason=EntryReason.RANK_UPGRADE_BONUS),
            LedgerLeg(account_id=account_id, wallet=Wallet.PERSONAL, delta=Decimal("-9600"), reason=EntryReason.RANK_UPGRADE_DEBIT),
        ]
        with pytest.raises(InsufficientBalanceError):
            service.apply_many(legs, "upgrade-1")

        balance = service.get_balance(account_id)
        assert balance.income_wallet == Decimal("0")
        assert balance.total_entries == 0

    def test_commit_hook_failure_aborts(self):
        """An exception from on_commit leaves balances untouched."""
        service, account_id = _service_with_account()

        def refuse(accounts):
            raise InvalidRequestError("refused")

        legs = [LedgerLeg(account_id=account_id, wallet=Wallet.INCOME, delta=Decimal("10"), reason=EntryReason.TASK_REWARD)]
        with pytest.raises(InvalidRequestError):
            service.apply_many(legs, "hooked", on_commit=refuse)

        assert service.get_balance(account_id).income_wallet == Decimal("0")
        assert service.entries_for("hooked") == []

    def test_empty_unit_rejected(self):
        """A unit needs at least one leg."""
        service, _ = _service_with_account()

        with pytest.raises(InvalidRequestError):
            service.apply_many([], "empty")


class TestInvariant:
    """Tests for cached-balance drift detection."""

    def test_drift_freezes_account(self):
        """A cached balance that disagrees with its entries blocks writes."""
        service, account_id = _service_with_account()
        service.apply(account_id, Wallet.INCOME, Decimal("100"), EntryReason.TASK_REWARD, "fund")
        service.storage.account(account_id).income_wallet = Decimal("999")

        with pytest.raises(LedgerInvariantViolation) as exc_info:
            service.apply(account_id, Wallet.INCOME, Decimal("5"), EntryReason.TASK_REWARD, "next")

        assert exc_info.value.public_message == "Unable to process request at this time"
        assert service.storage.account(account_id).frozen is True

        # Frozen accounts refuse every wallet, not just the drifted one.
        with pytest.raises(LedgerInvariantViolation):
            service.apply(account_id, Wallet.PERSONAL, Decimal("5"), EntryReason.DEPOSIT, "other-wallet")

    def test_reconcile_requires_consistency(self):
        """Reconcile lifts the freeze only once balances match entries."""
        service, account_id = _service_with_account()
        service.apply(account_id, Wallet.INCOME, Decimal("100"), EntryReason.TASK_REWARD, "fund")
        account = service.storage.account(account_id)
        account.income_wallet = Decimal("999")
        with pytest.raises(LedgerInvariantViolation):
            service.verify_account(account_id)

        with pytest.raises(LedgerInvariantViolation):
            service.reconcile(account_id)
        assert account.frozen is True

        account.income_wallet = Decimal("100")
        reconciled = service.reconcile(account_id, operator_id=uuid4())

        assert reconciled.frozen is False
        result = service.apply(account_id, Wallet.INCOME, Decimal("5"), EntryReason.TASK_REWARD, "after")
        assert result.new_balance == Decimal("105")

    def test_writes_do_not_rescan_history(self, monkeypatch):
        """Per-write checks use the running entry sum, not a full scan."""
        service, account_id = _service_with_account()
        for index in range(20):
            service.apply(account_id, Wallet.INCOME, Decimal("1"), EntryReason.TASK_REWARD, f"fund-{index}")

        def no_scan(*args, **kwargs):
            raise AssertionError("entries rescanned on write")

        monkeypatch.setattr(service.storage, "account_entries", no_scan)
        result = service.apply(account_id, Wallet.INCOME, Decimal("-5"), EntryReason.WITHDRAWAL, "spend")

        assert result.new_balance == Decimal("15")
        assert service.storage.entries_sum(account_id, Wallet.INCOME) == Decimal("15")

    def test_recount_catches_tampered_entries(self):
        """An audit re-adds every entry, so an edited entry is caught."""
        service, account_id = _service_with_account()
        result = service.apply(account_id, Wallet.INCOME, Decimal("100"), EntryReason.TASK_REWARD, "fund")
        entry = result.entries[0]
        service.storage.entries[entry.id] = entry.model_copy(update={"delta": Decimal("90")})

        with pytest.raises(LedgerInvariantViolation):
            service.verify_account(account_id)


class TestConservationAndHistory:
    """Tests for ledger conservation and queries."""

    def test_balance_equals_sum_of_entries(self):
        """Cached balances always equal the sum of entry deltas."""
        service, account_id = _service_with_account()
        movements = [
            (Wallet.PERSONAL, "9600", EntryReason.DEPOSIT),
            (Wallet.PERSONAL, "-3300", EntryReason.RANK_UPGRADE_DEBIT),
            (Wallet.INCOME, "22.00", EntryReason.TASK_REWARD),
            (Wallet.INCOME, "2.20", EntryReason.COMMISSION),
            (Wallet.INCOME, "-24.20", EntryReason.WITHDRAWAL),
        ]
        for index, (wallet, delta, reason) in enumerate(movements):
            service.apply(account_id, wallet, Decimal(delta), reason, f"move-{index}")

        account = service.storage.account(account_id)
        assert account.personal_wallet == _entries_sum(service, account_id, Wallet.PERSONAL) == Decimal("6300")
        assert account.income_wallet == _entries_sum(service, account_id, Wallet.INCOME) == Decimal("0")

    def test_history_is_newest_first_and_paginated(self):
        """History lists the latest entry first and honours limit/offset."""
        service, account_id = _service_with_account()
        for index in range(5):
            service.apply(account_id, Wallet.INCOME, Decimal(index + 1), EntryReason.TASK_REWARD, f"task-{index}")

        history = service.get_ledger_history(account_id, limit=2, offset=1)

        assert history.total_count == 5
        assert [e.idempotency_key for e in history.entries] == ["task-3", "task-2"]
        assert history.income_wallet == Decimal("15")
