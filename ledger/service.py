from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .clock import Clock, SystemClock
from .errors import (
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidRequestError,
    LedgerInvariantViolation,
)
from .locks import AccountLockManager
from .logging_config import get_logger
from .models import (
    Account,
    ApplyResult,
    EntryReason,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerLeg,
    UserBalance,
    Wallet,
)
from .storage import InMemoryStorage

logger = get_logger("ledger")

CommitHook = Callable[[dict[UUID, Account]], None]


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        locks: Optional[AccountLockManager] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.locks = locks or AccountLockManager()
        self.clock = clock or SystemClock()
        self._inflight: set[str] = set()

    def apply(
        self,
        account_id: UUID,
        wallet: Wallet,
        delta: Decimal,
        reason: EntryReason,
        idempotency_key: str,
        related_transaction_id: Optional[UUID] = None,
        description: str = "",
    ) -> ApplyResult:
        leg = LedgerLeg(
            account_id=account_id,
            wallet=wallet,
            delta=Decimal(delta),
            reason=reason,
            related_transaction_id=related_transaction_id,
            description=description,
        )
        return self.apply_many([leg], idempotency_key)

    def apply_many(
        self,
        legs: list[LedgerLeg],
        idempotency_key: str,
        on_commit: Optional[CommitHook] = None,
    ) -> ApplyResult:
        """Apply every leg or none of them.

        ``on_commit`` runs after all legs validate and before anything is
        written; raising from it aborts the unit.
        """
        if not legs:
            raise InvalidRequestError("A ledger unit needs at least one leg")
        if not idempotency_key:
            raise InvalidRequestError("An idempotency key is required")

        account_ids = {leg.account_id for leg in legs}
        with self.locks.hold(account_ids):
            prior = self._reserve_key(idempotency_key)
            if prior is not None:
                self._assert_same_legs(idempotency_key, prior, legs)
                logger.info(
                    "ledger_unit_replayed",
                    extra={"idempotency_key": idempotency_key, "entries": len(prior)},
                )
                return ApplyResult(idempotency_key=idempotency_key, entries=prior, replayed=True)
            try:
                return self._commit(legs, idempotency_key, account_ids, on_commit)
            finally:
                with self.storage.lock:
                    self._inflight.discard(idempotency_key)

    def _commit(
        self,
        legs: list[LedgerLeg],
        idempotency_key: str,
        account_ids: set[UUID],
        on_commit: Optional[CommitHook],
    ) -> ApplyResult:
        accounts = {account_id: self.storage.account(account_id) for account_id in account_ids}
        for account in accounts.values():
            if account.frozen:
                raise LedgerInvariantViolation(
                    f"Account {account.id} is frozen pending reconciliation", account_id=account.id
                )

        tentative: dict[tuple[UUID, Wallet], Decimal] = {}
        for leg in legs:
            key = (leg.account_id, leg.wallet)
            if key not in tentative:
                self._verify_wallet(accounts[leg.account_id], leg.wallet)
                tentative[key] = accounts[leg.account_id].balance_of(leg.wallet)

        now = self.clock.now()
        entries: list[LedgerEntry] = []
        for index, leg in enumerate(legs):
            if leg.delta == 0:
                raise InvalidRequestError("Ledger legs must move a non-zero amount")
            key = (leg.account_id, leg.wallet)
            balance = tentative[key] + leg.delta
            if balance < 0:
                raise InsufficientBalanceError(
                    f"Insufficient {leg.wallet.value} wallet balance",
                    account_id=str(leg.account_id),
                    wallet=leg.wallet.value,
                    available=str(tentative[key]),
                    requested=str(-leg.delta),
                )
            tentative[key] = balance
            entries.append(
                LedgerEntry(
                    id=uuid4(),
                    account_id=leg.account_id,
                    wallet=leg.wallet,
                    delta=leg.delta,
                    balance_after=balance,
                    reason=leg.reason,
                    related_transaction_id=leg.related_transaction_id,
                    idempotency_key=idempotency_key,
                    leg=index,
                    description=leg.description,
                    created_at=now,
                )
            )

        if on_commit is not None:
            on_commit(accounts)

        with self.storage.lock:
            for entry in entries:
                self.storage.append_entry(entry)
            for (account_id, wallet), balance in tentative.items():
                accounts[account_id].set_balance(wallet, balance)
            self.storage.idempotency_index[idempotency_key] = [entry.id for entry in entries]

        for entry in entries:
            logger.info(
                "ledger_entry_applied",
                extra={
                    "account_id": entry.account_id,
                    "wallet": entry.wallet.value,
                    "delta": entry.delta,
                    "balance_after": entry.balance_after,
                    "reason": entry.reason.value,
                    "idempotency_key": idempotency_key,
                },
            )
        return ApplyResult(idempotency_key=idempotency_key, entries=entries)

    def _reserve_key(self, idempotency_key: str) -> Optional[list[LedgerEntry]]:
        with self.storage.lock:
            entry_ids = self.storage.idempotency_index.get(idempotency_key)
            if entry_ids is not None:
                return [self.storage.entries[eid] for eid in entry_ids]
            if idempotency_key in self._inflight:
                raise IdempotencyConflictError(
                    f"Idempotency key {idempotency_key!r} is in use by another request"
                )
            self._inflight.add(idempotency_key)
            return None

    def _assert_same_legs(self, idempotency_key: str, prior: list[LedgerEntry], legs: list[LedgerLeg]) -> None:
        seen = [(e.account_id, e.wallet, e.delta) for e in prior]
        wanted = [(leg.account_id, leg.wallet, Decimal(leg.delta)) for leg in legs]
        if seen != wanted:
            raise IdempotencyConflictError(
                f"Idempotency key {idempotency_key!r} was already used for a different operation"
            )

    def _verify_wallet(self, account: Account, wallet: Wallet, recount: bool = False) -> None:
        """Compare the cached balance with the wallet's entries.

        Writes check against the running sum kept by storage; ``recount``
        re-adds every entry instead, for audits and reconciliation.
        """
        if recount:
            expected = sum((e.delta for e in self.storage.account_entries(account.id, wallet)), Decimal("0"))
        else:
            expected = self.storage.entries_sum(account.id, wallet)
        cached = account.balance_of(wallet)
        if expected != cached:
            account.frozen = True
            logger.critical(
                "ledger_invariant_violation",
                extra={
                    "account_id": account.id,
                    "wallet": wallet.value,
                    "cached_balance": cached,
                    "entries_sum": expected,
                },
            )
            raise LedgerInvariantViolation(
                f"Cached {wallet.value} balance {cached} disagrees with entries sum {expected}",
                account_id=account.id,
            )

    def verify_account(self, account_id: UUID) -> None:
        """Raise and freeze the account if either wallet drifted from its entries."""
        with self.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            for wallet in Wallet:
                self._verify_wallet(account, wallet, recount=True)

    def reconcile(self, account_id: UUID, operator_id: Optional[UUID] = None) -> Account:
        """Lift a freeze once an operator has restored consistency."""
        with self.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            for wallet in Wallet:
                self._verify_wallet(account, wallet, recount=True)
            account.frozen = False
        logger.warning("account_reconciled", extra={"account_id": account_id, "operator_id": operator_id})
        return account.model_copy(deep=True)

    def get_balance(self, account_id: UUID) -> UserBalance:
        account = self.storage.account(account_id)
        entries = self.storage.account_entries(account_id)
        last_entry = max(entries, key=lambda e: e.created_at) if entries else None
        return UserBalance(
            account_id=account_id,
            income_wallet=account.income_wallet,
            personal_wallet=account.personal_wallet,
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.storage.account(account_id)
        all_entries = list(reversed(self.storage.account_entries(account_id)))
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            income_wallet=account.income_wallet,
            personal_wallet=account.personal_wallet,
        )

    def entries_for(self, idempotency_key: str) -> list[LedgerEntry]:
        with self.storage.lock:
            return [self.storage.entries[eid] for eid in self.storage.idempotency_index.get(idempotency_key, [])]
