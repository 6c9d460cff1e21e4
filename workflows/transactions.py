import random
from decimal import Decimal
from typing import Optional
from uuid import UUID

from ledger.config import PlatformConfig
from ledger.errors import InvalidRequestError, InvalidStateTransitionError
from ledger.logging_config import get_logger
from ledger.models import (
    Deposit,
    DepositStatus,
    EntryReason,
    Wallet,
    Withdrawal,
    WithdrawalStatus,
    percent_of,
)
from ledger.security import TransactionPasswordVerifier
from ledger.service import LedgerService

logger = get_logger("transactions")

FT_CODE_LENGTH = 12
FT_CODE_PREFIX = "FT"

# Admin may decide a deposit once proof is on file; after an undo the
# deposit is back to pending but still carries its proof.
_DEPOSIT_REVIEWABLE = (DepositStatus.PENDING, DepositStatus.FT_SUBMITTED)


def _validate_amount(amount: Decimal, allowed: list[Decimal], kind: str) -> Decimal:
    try:
        amount = Decimal(amount)
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidRequestError(f"Invalid {kind} amount")
    if amount <= 0:
        raise InvalidRequestError(f"{kind.capitalize()} amount must be positive")
    if allowed and amount not in allowed:
        raise InvalidRequestError(f"Invalid {kind} amount. Please select from allowed amounts.")
    return amount


def generate_order_id(timestamp_ms: int) -> str:
    return f"ORD{timestamp_ms}{random.randint(0, 9999)}"


class TransactionWorkflow:
    """Deposit and withdrawal review state machines.

    Deposits credit only on approval. Withdrawals reserve the gross amount at
    request time, so two pending requests can never spend the same balance.
    """

    def __init__(self, ledger: LedgerService, passwords: Optional[TransactionPasswordVerifier] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.passwords = passwords or TransactionPasswordVerifier()

    # Deposits

    def create_deposit(
        self, account_id: UUID, amount: Decimal, payment_method: str, config: PlatformConfig
    ) -> Deposit:
        amount = _validate_amount(amount, config.allowed_deposit_amounts, "deposit")
        if not payment_method:
            raise InvalidRequestError("Payment method is required")
        self.storage.account(account_id)
        now = self.ledger.clock.now()
        deposit = Deposit(
            account_id=account_id,
            amount=amount,
            payment_method=payment_method,
            order_id=generate_order_id(int(now.timestamp() * 1000)),
            created_at=now,
            updated_at=now,
        )
        with self.storage.lock:
            self.storage.deposits[deposit.id] = deposit
        logger.info("deposit_created", extra={"deposit_id": deposit.id, "account_id": account_id, "amount": amount})
        return deposit.model_copy()

    def submit_deposit_proof(self, deposit_id: UUID, ft_code: str, account_id: Optional[UUID] = None) -> Deposit:
        code = (ft_code or "").strip().upper()
        if not code:
            raise InvalidRequestError("Transaction FT code is required")
        if len(code) != FT_CODE_LENGTH:
            raise InvalidRequestError(f"Transaction FT code must be exactly {FT_CODE_LENGTH} characters")
        if not code.startswith(FT_CODE_PREFIX):
            raise InvalidRequestError(f'Transaction FT code must start with "{FT_CODE_PREFIX}"')

        deposit = self.storage.deposit(deposit_id)
        if account_id is not None and deposit.account_id != account_id:
            raise InvalidRequestError("Deposit does not belong to this account")
        with self.ledger.locks.hold_one(deposit.account_id):
            if deposit.status != DepositStatus.PENDING or deposit.transaction_ft:
                raise InvalidStateTransitionError(
                    "Transaction FT already submitted or deposit processed", status=deposit.status.value
                )
            with self.storage.lock:
                owner = self.storage.ft_codes.get(code)
                if owner is not None and owner != deposit.id:
                    raise InvalidRequestError("This Transaction FT code has already been used")
                self.storage.ft_codes[code] = deposit.id
            deposit.transaction_ft = code
            deposit.status = DepositStatus.FT_SUBMITTED
            deposit.updated_at = self.ledger.clock.now()
        logger.info("deposit_proof_submitted", extra={"deposit_id": deposit_id})
        return deposit.model_copy()

    def approve_deposit(self, deposit_id: UUID, admin_id: UUID, notes: str = "") -> Deposit:
        deposit = self.storage.deposit(deposit_id)
        with self.ledger.locks.hold_one(deposit.account_id):
            self._assert_deposit_reviewable(deposit, "approve")
            self.ledger.apply(
                deposit.account_id,
                Wallet.PERSONAL,
                deposit.amount,
                EntryReason.DEPOSIT,
                f"deposit:{deposit.id}:credit:{deposit.revision}",
                related_transaction_id=deposit.id,
                description=f"Deposit {deposit.order_id} approved",
            )
            self._close(deposit, DepositStatus.APPROVED, admin_id, notes)
        logger.info(
            "deposit_approved",
            extra={"deposit_id": deposit_id, "admin_id": admin_id, "amount": deposit.amount, "account_id": deposit.account_id},
        )
        return deposit.model_copy()

    def reject_deposit(self, deposit_id: UUID, admin_id: UUID, notes: str = "") -> Deposit:
        deposit = self.storage.deposit(deposit_id)
        with self.ledger.locks.hold_one(deposit.account_id):
            self._assert_deposit_reviewable(deposit, "reject")
            self._close(deposit, DepositStatus.REJECTED, admin_id, notes)
        logger.info("deposit_rejected", extra={"deposit_id": deposit_id, "admin_id": admin_id, "notes": notes})
        return deposit.model_copy()

    def undo_deposit(self, deposit_id: UUID, admin_id: Optional[UUID] = None) -> Deposit:
        deposit = self.storage.deposit(deposit_id)
        with self.ledger.locks.hold_one(deposit.account_id):
            if deposit.status == DepositStatus.APPROVED:
                self.ledger.apply(
                    deposit.account_id,
                    Wallet.PERSONAL,
                    -deposit.amount,
                    EntryReason.REFUND,
                    f"deposit:{deposit.id}:reverse:{deposit.revision}",
                    related_transaction_id=deposit.id,
                    description=f"Deposit {deposit.order_id} approval undone",
                )
            elif deposit.status != DepositStatus.REJECTED:
                raise InvalidStateTransitionError(
                    f"Cannot undo a deposit in {deposit.status.value} state", status=deposit.status.value
                )
            previous = deposit.status
            self._reopen(deposit)
        logger.info(
            "deposit_undone",
            extra={"deposit_id": deposit_id, "admin_id": admin_id, "from_status": previous.value},
        )
        return deposit.model_copy()

    def list_deposits(self, status: Optional[DepositStatus] = None, account_id: Optional[UUID] = None) -> list[Deposit]:
        with self.storage.lock:
            deposits = list(self.storage.deposits.values())
        if status is not None:
            deposits = [d for d in deposits if d.status == status]
        if account_id is not None:
            deposits = [d for d in deposits if d.account_id == account_id]
        return [d.model_copy() for d in sorted(deposits, key=lambda d: d.created_at, reverse=True)]

    def review_queue(self) -> list[Deposit]:
        return [d for d in self.list_deposits() if d.status in _DEPOSIT_REVIEWABLE]

    def _assert_deposit_reviewable(self, deposit: Deposit, action: str) -> None:
        if deposit.status == DepositStatus.APPROVED:
            raise InvalidStateTransitionError("Deposit already approved", status=deposit.status.value)
        if deposit.status not in _DEPOSIT_REVIEWABLE or not deposit.transaction_ft:
            raise InvalidStateTransitionError(
                f"Cannot {action} a deposit in {deposit.status.value} state without transaction proof",
                status=deposit.status.value,
            )

    # Withdrawals

    def create_withdrawal(
        self,
        account_id: UUID,
        amount: Decimal,
        wallet: Wallet,
        transaction_password: str,
        config: PlatformConfig,
    ) -> Withdrawal:
        account = self.storage.account(account_id)
        self.passwords.verify(account.transaction_password_hash, transaction_password)
        amount = _validate_amount(amount, config.allowed_withdrawal_amounts, "withdrawal")
        try:
            wallet = Wallet(wallet)
        except ValueError:
            raise InvalidRequestError(f"Unknown wallet: {wallet!r}")

        with self.ledger.locks.hold_one(account_id):
            now = self.ledger.clock.now()
            if account.withdrawal_restricted_until and account.withdrawal_restricted_until > now:
                raise InvalidRequestError(
                    f"Withdrawal restricted until {account.withdrawal_restricted_until.date().isoformat()}"
                )
            if account.bank_account is None:
                raise InvalidRequestError("Set a bank account before requesting a withdrawal")

            tax = percent_of(amount, config.withdrawal_tax_percent)
            withdrawal = Withdrawal(
                account_id=account_id,
                wallet=wallet,
                amount=amount,
                tax_amount=tax,
                net_amount=amount - tax,
                payout_account=account.bank_account,
                created_at=now,
                updated_at=now,
            )
            self._reserve(withdrawal)
            with self.storage.lock:
                self.storage.withdrawals[withdrawal.id] = withdrawal
        logger.info(
            "withdrawal_created",
            extra={
                "withdrawal_id": withdrawal.id,
                "account_id": account_id,
                "wallet": wallet.value,
                "amount": amount,
                "net_amount": withdrawal.net_amount,
            },
        )
        return withdrawal.model_copy()

    def approve_withdrawal(self, withdrawal_id: UUID, admin_id: UUID, notes: str = "") -> Withdrawal:
        withdrawal = self.storage.withdrawal(withdrawal_id)
        with self.ledger.locks.hold_one(withdrawal.account_id):
            self._assert_withdrawal_pending(withdrawal, "approve")
            if not withdrawal.reserved:
                self._reserve(withdrawal)
            self._close(withdrawal, WithdrawalStatus.APPROVED, admin_id, notes)
        logger.info(
            "withdrawal_approved",
            extra={"withdrawal_id": withdrawal_id, "admin_id": admin_id, "amount": withdrawal.amount},
        )
        return withdrawal.model_copy()

    def reject_withdrawal(self, withdrawal_id: UUID, admin_id: UUID, notes: str = "") -> Withdrawal:
        withdrawal = self.storage.withdrawal(withdrawal_id)
        with self.ledger.locks.hold_one(withdrawal.account_id):
            self._assert_withdrawal_pending(withdrawal, "reject")
            if withdrawal.reserved:
                self._release(withdrawal, "rejected")
            self._close(withdrawal, WithdrawalStatus.REJECTED, admin_id, notes)
        logger.info(
            "withdrawal_rejected",
            extra={"withdrawal_id": withdrawal_id, "admin_id": admin_id, "notes": notes},
        )
        return withdrawal.model_copy()

    def undo_withdrawal(self, withdrawal_id: UUID, admin_id: Optional[UUID] = None) -> Withdrawal:
        withdrawal = self.storage.withdrawal(withdrawal_id)
        with self.ledger.locks.hold_one(withdrawal.account_id):
            if withdrawal.status == WithdrawalStatus.PENDING:
                raise InvalidStateTransitionError("Cannot undo a pending withdrawal", status=withdrawal.status.value)
            previous = withdrawal.status
            if withdrawal.reserved:
                self._release(withdrawal, "undone")
            self._reopen(withdrawal)
        logger.info(
            "withdrawal_undone",
            extra={"withdrawal_id": withdrawal_id, "admin_id": admin_id, "from_status": previous.value},
        )
        return withdrawal.model_copy()

    def list_withdrawals(
        self, status: Optional[WithdrawalStatus] = None, account_id: Optional[UUID] = None
    ) -> list[Withdrawal]:
        with self.storage.lock:
            withdrawals = list(self.storage.withdrawals.values())
        if status is not None:
            withdrawals = [w for w in withdrawals if w.status == status]
        if account_id is not None:
            withdrawals = [w for w in withdrawals if w.account_id == account_id]
        return [w.model_copy() for w in sorted(withdrawals, key=lambda w: w.created_at, reverse=True)]

    def _reserve(self, withdrawal: Withdrawal) -> None:
        self.ledger.apply(
            withdrawal.account_id,
            withdrawal.wallet,
            -withdrawal.amount,
            EntryReason.WITHDRAWAL,
            f"withdrawal:{withdrawal.id}:reserve:{withdrawal.revision}",
            related_transaction_id=withdrawal.id,
            description=f"Withdrawal of {withdrawal.amount} reserved",
        )
        withdrawal.reserved = True

    def _release(self, withdrawal: Withdrawal, why: str) -> None:
        self.ledger.apply(
            withdrawal.account_id,
            withdrawal.wallet,
            withdrawal.amount,
            EntryReason.REFUND,
            f"withdrawal:{withdrawal.id}:release:{withdrawal.revision}",
            related_transaction_id=withdrawal.id,
            description=f"Withdrawal {why}, {withdrawal.amount} returned",
        )
        withdrawal.reserved = False

    def _assert_withdrawal_pending(self, withdrawal: Withdrawal, action: str) -> None:
        if withdrawal.status != WithdrawalStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Cannot {action} a withdrawal in {withdrawal.status.value} state", status=withdrawal.status.value
            )

    # Shared

    def _close(self, record, status, admin_id: UUID, notes: str) -> None:
        now = self.ledger.clock.now()
        record.status = status
        record.approver_id = admin_id
        record.approved_at = now
        record.admin_notes = notes or ""
        record.updated_at = now

    def _reopen(self, record) -> None:
        record.status = type(record.status)("pending")
        record.approver_id = None
        record.approved_at = None
        record.revision += 1
        record.updated_at = self.ledger.clock.now()
