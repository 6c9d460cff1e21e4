import threading
from collections import defaultdict
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .errors import AccountNotFoundError, TransactionNotFoundError
from .models import (
    Account,
    CascadePlan,
    Commission,
    Deposit,
    LedgerEntry,
    RankUpgradeRequest,
    SalarySnapshot,
    Wallet,
    WealthFund,
    WealthInvestment,
    Withdrawal,
)


class InMemoryStorage:
    """Process-local store for accounts, ledger entries and workflow records.

    ``parents`` and ``children`` index the referral relation by id only.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.accounts: dict[UUID, Account] = {}
        self.entries: dict[UUID, LedgerEntry] = {}
        self.entries_by_account: dict[UUID, list[UUID]] = defaultdict(list)
        self.entry_sums: dict[tuple[UUID, Wallet], Decimal] = defaultdict(Decimal)
        self.idempotency_index: dict[str, list[UUID]] = {}
        self.deposits: dict[UUID, Deposit] = {}
        self.ft_codes: dict[str, UUID] = {}
        self.withdrawals: dict[UUID, Withdrawal] = {}
        self.commissions: dict[str, Commission] = {}
        self.cascade_plans: dict[str, CascadePlan] = {}
        self.rank_upgrades: dict[UUID, RankUpgradeRequest] = {}
        self.salary_snapshots: dict[tuple[UUID, str], SalarySnapshot] = {}
        self.wealth_funds: dict[UUID, WealthFund] = {}
        self.investments: dict[UUID, WealthInvestment] = {}
        self.investment_keys: dict[str, UUID] = {}
        self.parents: dict[UUID, Optional[UUID]] = {}
        self.children: dict[UUID, list[UUID]] = defaultdict(list)

    def add_account(self, account: Account) -> None:
        with self.lock:
            self.accounts[account.id] = account
            self.parents[account.id] = account.referrer_id
            if account.referrer_id is not None:
                self.children[account.referrer_id].append(account.id)

    def account(self, account_id: UUID) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=str(account_id))
        return account

    def deposit(self, deposit_id: UUID) -> Deposit:
        deposit = self.deposits.get(deposit_id)
        if deposit is None:
            raise TransactionNotFoundError(f"Deposit {deposit_id} not found")
        return deposit

    def withdrawal(self, withdrawal_id: UUID) -> Withdrawal:
        withdrawal = self.withdrawals.get(withdrawal_id)
        if withdrawal is None:
            raise TransactionNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def wealth_fund(self, fund_id: UUID) -> WealthFund:
        fund = self.wealth_funds.get(fund_id)
        if fund is None:
            raise TransactionNotFoundError(f"Wealth fund {fund_id} not found")
        return fund

    def append_entry(self, entry: LedgerEntry) -> None:
        self.entries[entry.id] = entry
        self.entries_by_account[entry.account_id].append(entry.id)
        self.entry_sums[(entry.account_id, entry.wallet)] += entry.delta

    def account_entries(self, account_id: UUID, wallet: Optional[Wallet] = None) -> list[LedgerEntry]:
        entries = [self.entries[eid] for eid in self.entries_by_account.get(account_id, [])]
        if wallet is not None:
            entries = [e for e in entries if e.wallet == wallet]
        return entries

    def entries_sum(self, account_id: UUID, wallet: Wallet) -> Decimal:
        """Running total of the wallet's entries, kept as they are appended."""
        return self.entry_sums.get((account_id, wallet), Decimal("0"))
