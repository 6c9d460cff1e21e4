"""
Concurrency tests: per-account serialisation, idempotency under contention
and lock timeouts.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from ledger.errors import LockTimeoutError
from ledger.locks import AccountLockManager
from ledger.models import EntryReason, Wallet
from rules.ranks import MembershipLevel

from .conftest import BANK, PASSWORD


def _entries_sum(gateway, account_id, wallet):
    entries = gateway.ledger.storage.account_entries(account_id, wallet)
    return sum((e.delta for e in entries), Decimal("0"))


class TestConcurrentMutations:
    def test_competing_withdrawals_never_overdraw(self, gateway, make_account, fund, balances):
        """Of two simultaneous withdrawals for the whole balance, one wins."""
        account_id = make_account()
        fund(account_id, "3300", Wallet.INCOME)
        gateway.set_bank_account(account_id, BANK)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(
                pool.map(
                    lambda _: gateway.create_withdrawal(account_id, Decimal("3300"), "income", PASSWORD),
                    range(4),
                )
            )

        assert sum(1 for r in results if r.success) == 1
        assert {r.error_code for r in results if not r.success} == {"INSUFFICIENT_BALANCE"}
        assert balances(account_id)[0] == Decimal("0")

    def test_same_key_applies_once(self, gateway, make_account, balances):
        """Concurrent requests with one idempotency key write one entry."""
        account_id = make_account()

        def credit(_):
            return gateway.ledger.apply(account_id, Wallet.INCOME, Decimal("50"), EntryReason.TASK_REWARD, "shared-key")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(credit, range(16)))

        assert sum(1 for r in results if not r.replayed) == 1
        assert balances(account_id)[0] == Decimal("50")
        assert len(gateway.ledger.entries_for("shared-key")) == 1

    def test_shared_referrer_balance_is_conserved(self, gateway, make_account, balances):
        """Parallel cascades into one referrer add up exactly."""
        referrer = make_account(level=MembershipLevel.RANK_5)
        earners = [make_account(referrer=referrer, level=MembershipLevel.RANK_1, password=None) for _ in range(10)]

        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(
                pool.map(
                    lambda pair: gateway.complete_task_reward(pair[1], f"video-{pair[0]}", Decimal("100")),
                    enumerate(earners),
                )
            )

        assert all(r.success for r in results)
        assert balances(referrer)[0] == Decimal("100")
        assert balances(referrer)[0] == _entries_sum(gateway, referrer, Wallet.INCOME)

    def test_parallel_cascade_workers(self, gateway, config_store, make_account, balances):
        """Hops may be credited in parallel without changing the outcome."""
        config_store.publish(cascade_max_workers=3)
        level_c = make_account(level=MembershipLevel.RANK_5)
        level_b = make_account(referrer=level_c, level=MembershipLevel.RANK_5)
        level_a = make_account(referrer=level_b, level=MembershipLevel.RANK_5)
        earner = make_account(referrer=level_a, level=MembershipLevel.RANK_1)

        result = gateway.complete_task_reward(earner, "video-1", Decimal("1000"))

        assert [c.level.value for c in result.data["commissions"]] == ["A", "B", "C"]
        assert [balances(a)[0] for a in (level_a, level_b, level_c)] == [Decimal("100"), Decimal("50"), Decimal("20")]


class TestLockManager:
    def test_timeout_raises_retryable_error(self, make_account):
        """A lock held elsewhere past the timeout fails fast and retryably."""
        locks = AccountLockManager(timeout=0.05)
        account_id = make_account()
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold_one(account_id):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(LockTimeoutError) as exc_info:
                with locks.hold_one(account_id):
                    pass
            assert exc_info.value.retryable is True
        finally:
            release.set()
            thread.join()

    def test_locks_are_reentrant(self, make_account):
        """A thread holding an account lock can take it again."""
        locks = AccountLockManager(timeout=0.05)
        account_id = make_account()

        with locks.hold_one(account_id):
            with locks.hold([account_id]):
                pass
