from datetime import timedelta
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID, uuid4

from ledger.errors import IdempotencyConflictError, InvalidRequestError, TransactionNotFoundError
from ledger.logging_config import get_logger
from ledger.models import (
    EntryReason,
    FundingSource,
    LedgerLeg,
    ProfitType,
    Wallet,
    WealthFund,
    WealthInvestment,
    percent_of,
    to_money,
)
from ledger.security import TransactionPasswordVerifier
from ledger.service import LedgerService

logger = get_logger("wealth")


def investment_key(account_id: UUID, request_id: str) -> str:
    return f"investment:{account_id}:{request_id}"


def total_revenue(amount: Decimal, fund: WealthFund) -> Decimal:
    """Principal plus ``days`` of daily profit."""
    if fund.profit_type == ProfitType.PERCENTAGE:
        daily = percent_of(amount, fund.daily_profit)
    else:
        daily = fund.daily_profit
    return to_money(amount + daily * fund.days)


class WealthService:
    """Wealth funds and the investments members fund from both wallets."""

    def __init__(self, ledger: LedgerService, passwords: Optional[TransactionPasswordVerifier] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.passwords = passwords or TransactionPasswordVerifier()

    # Funds

    def create_fund(self, **fields) -> WealthFund:
        now = self.ledger.clock.now()
        fund = WealthFund(**fields, created_at=now, updated_at=now)
        with self.storage.lock:
            self.storage.wealth_funds[fund.id] = fund
        logger.info("wealth_fund_created", extra={"fund_id": fund.id, "fund_name": fund.name})
        return fund.model_copy()

    def update_fund(self, fund_id: UUID, **changes) -> WealthFund:
        with self.storage.lock:
            fund = self.storage.wealth_fund(fund_id)
            data = fund.model_dump()
            data.update({k: v for k, v in changes.items() if v is not None})
            data["updated_at"] = self.ledger.clock.now()
            updated = WealthFund.model_validate(data)
            self.storage.wealth_funds[fund_id] = updated
        logger.info("wealth_fund_updated", extra={"fund_id": fund_id, "fields": sorted(changes)})
        return updated.model_copy()

    def get_fund(self, fund_id: UUID) -> WealthFund:
        return self.storage.wealth_fund(fund_id).model_copy()

    def list_funds(self, include_inactive: bool = False) -> list[WealthFund]:
        with self.storage.lock:
            funds = [f for f in self.storage.wealth_funds.values() if include_inactive or f.is_active]
        return sorted(funds, key=lambda f: f.created_at, reverse=True)

    # Investments

    def invest(
        self,
        account_id: UUID,
        fund_id: UUID,
        amount: Decimal,
        funding_source: Union[FundingSource, dict],
        transaction_password: str,
        request_id: Optional[str] = None,
    ) -> WealthInvestment:
        """Debit both funding wallets as one unit and record the investment.

        Either wallet falling short fails the whole investment. A repeated
        ``request_id`` returns the investment it first created.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidRequestError("Investment amount must be positive")
        if not isinstance(funding_source, FundingSource):
            funding_source = FundingSource.model_validate(funding_source)

        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            self.passwords.verify(account.transaction_password_hash, transaction_password)

            investment_id = uuid4()
            key = investment_key(account_id, request_id or str(investment_id))
            with self.storage.lock:
                prior_id = self.storage.investment_keys.get(key)
            if prior_id is not None:
                return self._replayed(prior_id, fund_id, amount, funding_source)

            fund = self.storage.wealth_fund(fund_id)
            if not fund.is_active:
                raise TransactionNotFoundError(f"Wealth fund {fund_id} is not active")
            if amount < fund.minimum_deposit:
                raise InvalidRequestError(f"Minimum deposit is {fund.minimum_deposit}")
            if funding_source.total != amount:
                raise InvalidRequestError(
                    "Funding source amounts must equal investment amount",
                    amount=str(amount),
                    funded=str(funding_source.total),
                )

            legs = [
                LedgerLeg(
                    account_id=account_id,
                    wallet=wallet,
                    delta=-part,
                    reason=EntryReason.INVESTMENT,
                    related_transaction_id=investment_id,
                    description=f"Investment in {fund.name}",
                )
                for wallet, part in (
                    (Wallet.INCOME, funding_source.income_wallet),
                    (Wallet.PERSONAL, funding_source.personal_wallet),
                )
                if part > 0
            ]
            self.ledger.apply_many(legs, key)

            now = self.ledger.clock.now()
            investment = WealthInvestment(
                id=investment_id,
                account_id=account_id,
                fund_id=fund.id,
                amount=amount,
                funding_source=funding_source,
                daily_profit=fund.daily_profit,
                profit_type=fund.profit_type,
                days=fund.days,
                total_revenue=total_revenue(amount, fund),
                idempotency_key=key,
                start_date=now,
                end_date=now + timedelta(days=fund.days),
                created_at=now,
            )
            with self.storage.lock:
                self.storage.investments[investment.id] = investment
                self.storage.investment_keys[key] = investment.id

        logger.info(
            "investment_created",
            extra={
                "investment_id": investment.id,
                "account_id": account_id,
                "fund_id": fund.id,
                "amount": amount,
                "from_income": funding_source.income_wallet,
                "from_personal": funding_source.personal_wallet,
                "total_revenue": investment.total_revenue,
            },
        )
        return investment.model_copy(deep=True)

    def _replayed(
        self, investment_id: UUID, fund_id: UUID, amount: Decimal, funding_source: FundingSource
    ) -> WealthInvestment:
        investment = self.storage.investments[investment_id]
        if (
            investment.fund_id != fund_id
            or investment.amount != amount
            or investment.funding_source != funding_source
        ):
            raise IdempotencyConflictError(
                f"Request {investment.idempotency_key!r} was already used for a different investment"
            )
        logger.info("investment_replayed", extra={"investment_id": investment_id})
        return investment.model_copy(deep=True)

    def list_investments(self, account_id: Optional[UUID] = None) -> list[WealthInvestment]:
        if account_id is not None:
            self.storage.account(account_id)
        with self.storage.lock:
            investments = [
                i for i in self.storage.investments.values() if account_id is None or i.account_id == account_id
            ]
        return sorted(investments, key=lambda i: i.created_at, reverse=True)
