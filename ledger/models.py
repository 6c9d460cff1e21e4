from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from rules.ranks import MembershipLevel


class Wallet(str, Enum):
    INCOME = "income"
    PERSONAL = "personal"


class EntryReason(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TASK_REWARD = "task-reward"
    COMMISSION = "commission"
    RANK_UPGRADE_DEBIT = "rank-upgrade-debit"
    RANK_UPGRADE_BONUS = "rank-upgrade-bonus"
    SALARY = "salary"
    REFUND = "refund"
    INVESTMENT = "investment"


class DepositStatus(str, Enum):
    PENDING = "pending"
    FT_SUBMITTED = "ft_submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CommissionLevel(str, Enum):
    A = "A"
    B = "B"
    C = "C"


class CommissionSource(str, Enum):
    TASK_REWARD = "task-reward"
    RANK_UPGRADE = "rank-upgrade"


class UpgradeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class BankChangeStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"


class BankChangeOutcome(str, Enum):
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class BankDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_name: str = Field(..., min_length=1)
    bank: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    phone: Optional[str] = None


class BankChangeRecord(BaseModel):
    requested_at: datetime
    resolved_at: datetime
    candidate: BankDetails
    outcome: BankChangeOutcome
    confirmations: list[date] = Field(default_factory=list)


class Account(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    membership_level: MembershipLevel = MembershipLevel.INTERN
    income_wallet: Decimal = Decimal("0")
    personal_wallet: Decimal = Decimal("0")
    referrer_id: Optional[UUID] = None
    bank_account: Optional[BankDetails] = None
    pending_bank_account: Optional[BankDetails] = None
    bank_change_status: BankChangeStatus = BankChangeStatus.NONE
    bank_change_requested_at: Optional[datetime] = None
    bank_change_confirmations: list[date] = Field(default_factory=list)
    bank_change_history: list[BankChangeRecord] = Field(default_factory=list)
    transaction_password_hash: Optional[str] = Field(default=None, exclude=True)
    withdrawal_restricted_until: Optional[datetime] = None
    membership_activated_at: Optional[datetime] = None
    frozen: bool = False
    created_at: datetime

    def balance_of(self, wallet: Wallet) -> Decimal:
        return self.income_wallet if wallet == Wallet.INCOME else self.personal_wallet

    def set_balance(self, wallet: Wallet, value: Decimal) -> None:
        if wallet == Wallet.INCOME:
            self.income_wallet = value
        else:
            self.personal_wallet = value


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    account_id: UUID
    wallet: Wallet
    delta: Decimal
    balance_after: Decimal
    reason: EntryReason
    related_transaction_id: Optional[UUID] = None
    idempotency_key: str
    leg: int = 0
    description: str = ""
    created_at: datetime


class LedgerLeg(BaseModel):
    """One balance movement inside an atomic ledger unit."""

    model_config = ConfigDict(frozen=True)

    account_id: UUID
    wallet: Wallet
    delta: Decimal
    reason: EntryReason
    related_transaction_id: Optional[UUID] = None
    description: str = ""


class ApplyResult(BaseModel):
    idempotency_key: str
    entries: list[LedgerEntry]
    replayed: bool = False

    @property
    def new_balance(self) -> Decimal:
        return self.entries[-1].balance_after


class UserBalance(BaseModel):
    account_id: UUID
    income_wallet: Decimal
    personal_wallet: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    income_wallet: Decimal
    personal_wallet: Decimal


class Deposit(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    amount: Decimal
    payment_method: str
    order_id: str
    transaction_ft: Optional[str] = None
    status: DepositStatus = DepositStatus.PENDING
    approver_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    admin_notes: str = ""
    revision: int = 0
    created_at: datetime
    updated_at: datetime


class Withdrawal(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    wallet: Wallet
    amount: Decimal
    tax_amount: Decimal
    net_amount: Decimal
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    reserved: bool = True
    payout_account: Optional[BankDetails] = None
    approver_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    admin_notes: str = ""
    revision: int = 0
    created_at: datetime
    updated_at: datetime


class Commission(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    level: CommissionLevel
    from_account_id: UUID
    to_account_id: UUID
    source_event: CommissionSource
    source_event_id: str
    percentage: Decimal
    amount_earned: Decimal
    config_version: int
    idempotency_key: str
    created_at: datetime


class PlannedPayout(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: CommissionLevel
    ancestor_id: UUID
    percentage: Decimal
    amount: Decimal


class CascadePlan(BaseModel):
    """Payouts of one earning event, fixed the first time it cascades."""

    model_config = ConfigDict(frozen=True)

    earner_id: UUID
    event_id: str
    source: CommissionSource
    base: Decimal
    earner_level: MembershipLevel
    config_version: int
    payouts: list[PlannedPayout] = Field(default_factory=list)
    created_at: datetime


class ProfitType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class InvestmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WealthFund(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    days: int = Field(..., ge=1, description="Investment duration in days")
    profit_type: ProfitType = ProfitType.PERCENTAGE
    daily_profit: Decimal = Field(..., ge=0, description="Percent of the amount, or a flat amount, per day")
    minimum_deposit: Decimal = Field(..., ge=0)
    description: str = ""
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class FundingSource(BaseModel):
    income_wallet: Decimal = Field(default=Decimal("0"), ge=0)
    personal_wallet: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def total(self) -> Decimal:
        return self.income_wallet + self.personal_wallet


class WealthInvestment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    fund_id: UUID
    amount: Decimal
    funding_source: FundingSource
    daily_profit: Decimal
    profit_type: ProfitType
    days: int
    total_revenue: Decimal = Field(..., description="Principal plus profit over the full term")
    status: InvestmentStatus = InvestmentStatus.ACTIVE
    idempotency_key: str
    start_date: datetime
    end_date: datetime
    created_at: datetime


class RankUpgradeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    from_level: MembershipLevel
    to_level: MembershipLevel
    price: Decimal
    bonus_percent: Decimal
    bonus_amount: Decimal = Decimal("0")
    status: UpgradeStatus
    failure_reason: Optional[str] = None
    config_version: int
    created_at: datetime


class SalarySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: UUID
    period: str
    direct_qualified: int
    network_qualified: int
    tier_matched: Optional[str] = None
    amount_paid: Decimal = Decimal("0")
    wallet: Wallet
    config_version: int
    created_at: datetime


class DownlineMember(BaseModel):
    account_id: UUID
    membership_level: MembershipLevel
    referrer_id: Optional[UUID] = None
    joined_at: datetime


class DownlineLevel(BaseModel):
    count: int
    members: list[DownlineMember]


class DownlineView(BaseModel):
    account_id: UUID
    levels: dict[CommissionLevel, DownlineLevel]
    total: int
    network_size: int


class CommissionSummary(BaseModel):
    account_id: UUID
    count: int
    totals: dict[str, Decimal]
    commissions: list[Commission]


class SalaryStatus(BaseModel):
    account_id: UUID
    period: str
    direct_qualified: int
    network_qualified: int
    eligible_tier: Optional[str] = None
    eligible_amount: Decimal = Decimal("0")
    paid_this_period: bool
    history: list[SalarySnapshot]


class SalaryRunSummary(BaseModel):
    period: str
    evaluated: int
    paid_count: int
    total_paid: Decimal
    failures: list[str] = Field(default_factory=list)


class OperationResult(BaseModel):
    success: bool
    message: str
    data: Any = None
    error_code: Optional[str] = None
    retryable: bool = False

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK") -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failure(cls, code: str, message: str, retryable: bool = False) -> "OperationResult":
        return cls(success=False, message=message, error_code=code, retryable=retryable)


CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return to_money(Decimal(amount) * Decimal(percent) / Decimal(100))


# HTTP request bodies


class RegisterAccountRequest(BaseModel):
    referrer_id: Optional[UUID] = None
    account_id: Optional[UUID] = None
    transaction_password: Optional[str] = None


class SetTransactionPasswordRequest(BaseModel):
    new_password: str
    current_password: Optional[str] = None


class RestrictWithdrawalsRequest(BaseModel):
    until: Optional[datetime] = None


class CreateDepositRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1)


class SubmitDepositProofRequest(BaseModel):
    ft_code: str
    account_id: Optional[UUID] = None


class ReviewRequest(BaseModel):
    admin_id: UUID
    notes: str = ""


class UndoRequest(BaseModel):
    admin_id: Optional[UUID] = None


class CreateWithdrawalRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., gt=0)
    wallet: Wallet
    transaction_password: str


class RankUpgradeBody(BaseModel):
    target_level: str


class TaskRewardRequest(BaseModel):
    task_id: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(default=None, gt=0)


class ConfirmBankChangeRequest(BaseModel):
    confirmed: bool = True


class SalaryRunRequest(BaseModel):
    period: Optional[str] = None


class ReconcileRequest(BaseModel):
    operator_id: Optional[UUID] = None



class CreateWealthFundRequest(BaseModel):
    name: str = Field(..., min_length=1)
    days: int = Field(..., ge=1)
    profit_type: ProfitType = ProfitType.PERCENTAGE
    daily_profit: Decimal = Field(..., ge=0)
    minimum_deposit: Decimal = Field(..., ge=0)
    description: str = ""


class UpdateWealthFundRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    days: Optional[int] = Field(default=None, ge=1)
    profit_type: Optional[ProfitType] = None
    daily_profit: Optional[Decimal] = Field(default=None, ge=0)
    minimum_deposit: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class InvestRequest(BaseModel):
    account_id: UUID
    fund_id: UUID
    amount: Decimal = Field(..., gt=0)
    funding_source: FundingSource
    transaction_password: str
    request_id: Optional[str] = Field(default=None, description="Client key; a repeat returns the first investment")
