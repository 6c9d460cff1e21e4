from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Union
from uuid import UUID

from pydantic import ValidationError

from rules.ranks import MembershipLevel
from workflows import (
    AccountService,
    BankChangeService,
    CommissionEngine,
    RankUpgradeService,
    ReferralIndex,
    SalaryEvaluator,
    TaskRewardService,
    TransactionWorkflow,
    WealthService,
    task_reward_amount,
)
from workflows.salary import period_of

from .clock import Clock
from .config import ConfigStore, PlatformConfig, load_config
from .errors import LedgerInvariantViolation, LedgerServiceError
from .locks import AccountLockManager
from .logging_config import get_logger
from .models import BankDetails, DepositStatus, FundingSource, OperationResult, Wallet, WithdrawalStatus
from .security import TransactionPasswordVerifier
from .service import LedgerService
from .storage import InMemoryStorage

logger = get_logger("gateway")

INTERNAL_ERROR = "INTERNAL_ERROR"
GENERIC_FAILURE = "Unable to process request at this time"


class LedgerGateway:
    """Single entry point for callers outside the core.

    Every operation returns an ``OperationResult``; no exception crosses this
    boundary. Each call evaluates against the config snapshot current when
    it starts.
    """

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        storage: Optional[InMemoryStorage] = None,
        clock: Optional[Clock] = None,
        passwords: Optional[TransactionPasswordVerifier] = None,
    ):
        self.config_store = config_store or ConfigStore(load_config())
        passwords = passwords or TransactionPasswordVerifier()
        locks = AccountLockManager(timeout=self.config_store.current().lock_timeout_seconds)
        self.ledger = LedgerService(storage=storage, locks=locks, clock=clock)
        self.referrals = ReferralIndex(self.ledger.storage)
        self.accounts = AccountService(self.ledger, passwords)
        self.transactions = TransactionWorkflow(self.ledger, passwords)
        self.commissions = CommissionEngine(self.ledger, self.referrals)
        self.rank_upgrades = RankUpgradeService(self.ledger, self.commissions)
        self.task_rewards = TaskRewardService(self.ledger, self.commissions)
        self.salary = SalaryEvaluator(self.ledger, self.referrals)
        self.bank_changes = BankChangeService(self.ledger)
        self.wealth = WealthService(self.ledger, passwords)

    @property
    def config(self) -> PlatformConfig:
        return self.config_store.current()

    def _run(self, operation: str, action: Callable[[], Any], message: str = "OK") -> OperationResult:
        try:
            data = action()
        except LedgerInvariantViolation as exc:
            logger.critical(
                "operation_blocked_by_invariant",
                extra={"operation": operation, "account_id": exc.account_id, "detail": exc.message},
            )
            return OperationResult.failure(exc.code, exc.public_message)
        except LedgerServiceError as exc:
            logger.warning(
                "operation_failed",
                extra={"operation": operation, "error_code": exc.code, "detail": exc.message, **exc.details},
            )
            return OperationResult.failure(exc.code, exc.public_message, retryable=exc.retryable)
        except ValidationError as exc:
            logger.warning("operation_invalid", extra={"operation": operation, "errors": exc.error_count()})
            return OperationResult.failure("VALIDATION_ERROR", f"Invalid request: {exc.errors()[0]['msg']}")
        except Exception:
            logger.exception("operation_crashed", extra={"operation": operation})
            return OperationResult.failure(INTERNAL_ERROR, GENERIC_FAILURE)
        return OperationResult.ok(data, message)

    # Accounts

    def register_account(
        self,
        referrer_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        transaction_password: Optional[str] = None,
    ) -> OperationResult:
        return self._run(
            "register_account",
            lambda: self.accounts.register(referrer_id, account_id, transaction_password),
            "Account registered",
        )

    def get_account(self, account_id: UUID) -> OperationResult:
        return self._run("get_account", lambda: self.accounts.get(account_id))

    def set_transaction_password(
        self, account_id: UUID, new_password: str, current_password: Optional[str] = None
    ) -> OperationResult:
        return self._run(
            "set_transaction_password",
            lambda: self.accounts.set_transaction_password(account_id, new_password, current_password),
            "Transaction password updated",
        )

    def restrict_withdrawals(self, account_id: UUID, until: Optional[datetime]) -> OperationResult:
        return self._run(
            "restrict_withdrawals",
            lambda: self.accounts.restrict_withdrawals(account_id, until),
            "Withdrawal restriction updated",
        )

    def get_balance(self, account_id: UUID) -> OperationResult:
        return self._run("get_balance", lambda: self.ledger.get_balance(account_id))

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> OperationResult:
        return self._run("get_ledger_history", lambda: self.ledger.get_ledger_history(account_id, limit, offset))

    def reconcile_account(self, account_id: UUID, operator_id: Optional[UUID] = None) -> OperationResult:
        return self._run(
            "reconcile_account",
            lambda: self.ledger.reconcile(account_id, operator_id),
            "Account reconciled",
        )

    # Deposits

    def create_deposit(self, account_id: UUID, amount: Decimal, payment_method: str) -> OperationResult:
        config = self.config
        return self._run(
            "create_deposit",
            lambda: self.transactions.create_deposit(account_id, amount, payment_method, config),
            "Deposit request created. Submit your transaction FT code.",
        )

    def submit_deposit_proof(
        self, deposit_id: UUID, ft_code: str, account_id: Optional[UUID] = None
    ) -> OperationResult:
        return self._run(
            "submit_deposit_proof",
            lambda: self.transactions.submit_deposit_proof(deposit_id, ft_code, account_id),
            "Transaction FT submitted, awaiting review",
        )

    def approve_deposit(self, deposit_id: UUID, admin_id: UUID, notes: str = "") -> OperationResult:
        return self._run(
            "approve_deposit",
            lambda: self.transactions.approve_deposit(deposit_id, admin_id, notes),
            "Deposit approved",
        )

    def reject_deposit(self, deposit_id: UUID, admin_id: UUID, notes: str = "") -> OperationResult:
        return self._run(
            "reject_deposit",
            lambda: self.transactions.reject_deposit(deposit_id, admin_id, notes),
            "Deposit rejected",
        )

    def undo_deposit(self, deposit_id: UUID, admin_id: Optional[UUID] = None) -> OperationResult:
        return self._run(
            "undo_deposit",
            lambda: self.transactions.undo_deposit(deposit_id, admin_id),
            "Deposit returned to pending",
        )

    def list_deposits(
        self, status: Optional[DepositStatus] = None, account_id: Optional[UUID] = None
    ) -> OperationResult:
        return self._run("list_deposits", lambda: self.transactions.list_deposits(status, account_id))

    # Withdrawals

    def create_withdrawal(
        self,
        account_id: UUID,
        amount: Decimal,
        wallet: Union[Wallet, str],
        transaction_password: str,
    ) -> OperationResult:
        config = self.config
        return self._run(
            "create_withdrawal",
            lambda: self.transactions.create_withdrawal(account_id, amount, wallet, transaction_password, config),
            "Withdrawal request submitted",
        )

    def approve_withdrawal(self, withdrawal_id: UUID, admin_id: UUID, notes: str = "") -> OperationResult:
        return self._run(
            "approve_withdrawal",
            lambda: self.transactions.approve_withdrawal(withdrawal_id, admin_id, notes),
            "Withdrawal approved",
        )

    def reject_withdrawal(self, withdrawal_id: UUID, admin_id: UUID, notes: str = "") -> OperationResult:
        return self._run(
            "reject_withdrawal",
            lambda: self.transactions.reject_withdrawal(withdrawal_id, admin_id, notes),
            "Withdrawal rejected, amount returned",
        )

    def undo_withdrawal(self, withdrawal_id: UUID, admin_id: Optional[UUID] = None) -> OperationResult:
        return self._run(
            "undo_withdrawal",
            lambda: self.transactions.undo_withdrawal(withdrawal_id, admin_id),
            "Withdrawal returned to pending",
        )

    def list_withdrawals(
        self, status: Optional[WithdrawalStatus] = None, account_id: Optional[UUID] = None
    ) -> OperationResult:
        return self._run("list_withdrawals", lambda: self.transactions.list_withdrawals(status, account_id))

    # Membership and earnings

    def request_rank_upgrade(
        self, account_id: UUID, target_level: Union[MembershipLevel, str]
    ) -> OperationResult:
        config = self.config
        return self._run(
            "request_rank_upgrade",
            lambda: self.rank_upgrades.request_upgrade(account_id, target_level, config),
            "Membership upgraded",
        )

    def get_rank_upgrades(self, account_id: UUID) -> OperationResult:
        return self._run("get_rank_upgrades", lambda: self.rank_upgrades.history(account_id))

    def replay_upgrade_commissions(self, request_id: UUID) -> OperationResult:
        """Finish the commission cascade of an upgrade under the config
        version it was priced with."""

        def action() -> list:
            request = self.rank_upgrades.get(request_id)
            config = self.config_store.get(request.config_version)
            return self.rank_upgrades.replay_commissions(request_id, config)

        return self._run("replay_upgrade_commissions", action, "Upgrade commissions settled")

    def complete_task_reward(
        self, account_id: UUID, task_id: str, amount: Optional[Decimal] = None
    ) -> OperationResult:
        """Credit a finished task. Without ``amount`` the member's per-video
        rate for their current level is paid."""
        config = self.config

        def action() -> dict:
            reward = amount
            if reward is None:
                reward = self.task_rewards.credited_amount(account_id, task_id)
            if reward is None:
                level = self.accounts.get(account_id).membership_level
                reward = task_reward_amount(level, config)
            outcome = self.task_rewards.complete_task_reward(account_id, task_id, reward, config)
            return {"credit": outcome.credit, "commissions": outcome.commissions}

        return self._run("complete_task_reward", action, "Task reward credited")

    def get_downline(self, account_id: UUID) -> OperationResult:
        return self._run("get_downline", lambda: self.referrals.downline_view(account_id))

    def get_commissions(self, account_id: UUID) -> OperationResult:
        return self._run("get_commissions", lambda: self.commissions.commissions_for(account_id))

    def get_salary_status(self, account_id: UUID, period: Optional[str] = None) -> OperationResult:
        config = self.config
        return self._run("get_salary_status", lambda: self.salary.status(account_id, config, period))

    def run_salary_period(self, period: Optional[str] = None) -> OperationResult:
        config = self.config

        return self._run(
            "run_salary_period",
            lambda: self.salary.run_period(period or period_of(self.ledger.clock.now(), config.timezone), config),
            "Salary run finished",
        )

    # Bank account

    def set_bank_account(self, account_id: UUID, details: Union[BankDetails, dict]) -> OperationResult:
        return self._run(
            "set_bank_account",
            lambda: self.bank_changes.set_bank_account(account_id, details),
            "Bank account saved",
        )

    def confirm_bank_change(self, account_id: UUID, confirmed: bool = True) -> OperationResult:
        config = self.config
        return self._run(
            "confirm_bank_change",
            lambda: self.bank_changes.confirm_bank_change(account_id, confirmed, config),
            "Bank change confirmation recorded" if confirmed else "Bank change declined",
        )

    def cancel_bank_change(self, account_id: UUID) -> OperationResult:
        return self._run(
            "cancel_bank_change",
            lambda: self.bank_changes.cancel_bank_change(account_id),
            "Bank change cancelled",
        )

    # Wealth funds

    def create_wealth_fund(self, **fields) -> OperationResult:
        return self._run("create_wealth_fund", lambda: self.wealth.create_fund(**fields), "Wealth fund created")

    def update_wealth_fund(self, fund_id: UUID, **changes) -> OperationResult:
        return self._run(
            "update_wealth_fund", lambda: self.wealth.update_fund(fund_id, **changes), "Wealth fund updated"
        )

    def get_wealth_fund(self, fund_id: UUID) -> OperationResult:
        return self._run("get_wealth_fund", lambda: self.wealth.get_fund(fund_id))

    def list_wealth_funds(self, include_inactive: bool = False) -> OperationResult:
        return self._run("list_wealth_funds", lambda: self.wealth.list_funds(include_inactive))

    def invest(
        self,
        account_id: UUID,
        fund_id: UUID,
        amount: Decimal,
        funding_source: Union[FundingSource, dict],
        transaction_password: str,
        request_id: Optional[str] = None,
    ) -> OperationResult:
        return self._run(
            "invest",
            lambda: self.wealth.invest(account_id, fund_id, amount, funding_source, transaction_password, request_id),
            "Investment created successfully",
        )

    def list_investments(self, account_id: Optional[UUID] = None) -> OperationResult:
        return self._run("list_investments", lambda: self.wealth.list_investments(account_id))

    # Configuration

    def get_config(self) -> OperationResult:
        return self._run("get_config", lambda: self.config)

    def update_config(self, **changes) -> OperationResult:
        return self._run("update_config", lambda: self.config_store.publish(**changes), "Configuration published")
