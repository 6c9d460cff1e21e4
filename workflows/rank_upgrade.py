from decimal import Decimal
from typing import Union
from uuid import UUID

from ledger.config import PlatformConfig
from ledger.errors import (
    InsufficientBalanceError,
    InvalidRankTargetError,
    InvalidStateTransitionError,
    LedgerServiceError,
    TransactionNotFoundError,
)
from ledger.logging_config import get_logger
from ledger.models import (
    Account,
    Commission,
    CommissionSource,
    EntryReason,
    LedgerLeg,
    RankUpgradeRequest,
    UpgradeStatus,
    Wallet,
    percent_of,
    to_money,
)
from ledger.service import LedgerService
from rules.ranks import BONUS_MIN_ORDINAL, MembershipLevel, is_higher, parse_level, rank_ordinal

from .commissions import CommissionEngine

logger = get_logger("rank_upgrade")

DAYS_PER_CYCLE = 30


def task_reward_amount(level: Union[str, MembershipLevel], config: PlatformConfig) -> Decimal:
    """Per-video payment for a member at ``level``: a rank's price spread
    over 30 days of ``videos_per_day`` videos; Intern earns a flat rate."""
    level = parse_level(level)
    if level == MembershipLevel.INTERN:
        return to_money(config.intern_video_payment)
    daily = config.price_of(level) / DAYS_PER_CYCLE
    return to_money(daily / config.videos_per_day)


def upgrade_key(request_id: UUID) -> str:
    return f"rank-upgrade:{request_id}"


class RankUpgradeService:
    def __init__(self, ledger: LedgerService, commissions: CommissionEngine):
        self.ledger = ledger
        self.storage = ledger.storage
        self.commissions = commissions

    def request_upgrade(
        self, account_id: UUID, target_level: Union[str, MembershipLevel], config: PlatformConfig
    ) -> RankUpgradeRequest:
        """Debit the price, pay the bonus and move the rank as one unit, then
        pay upstream commissions on the price.

        Raises the specific failure after recording a ``failed`` request; the
        account is untouched in that case.
        """
        target = parse_level(target_level)
        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            current = account.membership_level
            price = config.price_of(target)
            bonus_percent = config.upgrade_bonus_percent if rank_ordinal(target) >= BONUS_MIN_ORDINAL else Decimal("0")
            try:
                request = self._upgrade(account, current, target, price, bonus_percent, config)
            except LedgerServiceError as exc:
                self._record_failure(account_id, current, target, price, bonus_percent, config, exc)
                raise

        self.commissions.cascade(
            account_id, price, CommissionSource.RANK_UPGRADE, str(request.id), config, earner_level=target
        )
        return request

    def _upgrade(
        self,
        account: Account,
        current: MembershipLevel,
        target: MembershipLevel,
        price: Decimal,
        bonus_percent: Decimal,
        config: PlatformConfig,
    ) -> RankUpgradeRequest:
        if not is_higher(target, current):
            raise InvalidRankTargetError(
                f"Can only upgrade to a level higher than {current.value}",
                current=current.value,
                target=target.value,
            )
        if account.personal_wallet < price:
            raise InsufficientBalanceError(
                f"Personal wallet balance {account.personal_wallet} is below the {target.value} price {price}",
                available=str(account.personal_wallet),
                requested=str(price),
            )

        bonus = percent_of(price, bonus_percent)
        legs = []
        if price > 0:
            legs.append(
                LedgerLeg(
                    account_id=account.id,
                    wallet=Wallet.PERSONAL,
                    delta=-price,
                    reason=EntryReason.RANK_UPGRADE_DEBIT,
                    description=f"Upgrade {current.value} -> {target.value}",
                )
            )
        if bonus > 0:
            legs.append(
                LedgerLeg(
                    account_id=account.id,
                    wallet=Wallet.INCOME,
                    delta=bonus,
                    reason=EntryReason.RANK_UPGRADE_BONUS,
                    description=f"{bonus_percent}% upgrade bonus for {target.value}",
                )
            )

        now = self.ledger.clock.now()
        request = RankUpgradeRequest(
            account_id=account.id,
            from_level=current,
            to_level=target,
            price=price,
            bonus_percent=bonus_percent,
            bonus_amount=bonus,
            status=UpgradeStatus.COMPLETED,
            config_version=config.version,
            created_at=now,
        )

        def promote(accounts: dict[UUID, Account]) -> None:
            promoted = accounts[account.id]
            promoted.membership_level = target
            promoted.membership_activated_at = now

        if legs:
            self.ledger.apply_many(legs, upgrade_key(request.id), on_commit=promote)
        else:
            promote({account.id: account})

        with self.storage.lock:
            self.storage.rank_upgrades[request.id] = request
        logger.info(
            "rank_upgraded",
            extra={
                "account_id": account.id,
                "from_level": current.value,
                "to_level": target.value,
                "price": price,
                "bonus": bonus,
            },
        )
        return request

    def _record_failure(
        self,
        account_id: UUID,
        current: MembershipLevel,
        target: MembershipLevel,
        price: Decimal,
        bonus_percent: Decimal,
        config: PlatformConfig,
        exc: LedgerServiceError,
    ) -> None:
        request = RankUpgradeRequest(
            account_id=account_id,
            from_level=current,
            to_level=target,
            price=price,
            bonus_percent=bonus_percent,
            status=UpgradeStatus.FAILED,
            failure_reason=exc.code,
            config_version=config.version,
            created_at=self.ledger.clock.now(),
        )
        with self.storage.lock:
            self.storage.rank_upgrades[request.id] = request
        logger.warning(
            "rank_upgrade_failed",
            extra={
                "account_id": account_id,
                "from_level": current.value,
                "to_level": target.value,
                "reason": exc.code,
            },
        )

    def history(self, account_id: UUID) -> list[RankUpgradeRequest]:
        with self.storage.lock:
            requests = [r for r in self.storage.rank_upgrades.values() if r.account_id == account_id]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    def get(self, request_id: UUID) -> RankUpgradeRequest:
        with self.storage.lock:
            request = self.storage.rank_upgrades.get(request_id)
        if request is None:
            raise TransactionNotFoundError(f"Rank upgrade {request_id} not found", request_id=str(request_id))
        return request

    def replay_commissions(self, request_id: UUID, config: PlatformConfig) -> list[Commission]:
        """Re-run the upstream cascade of a completed upgrade, e.g. after the
        first attempt ran out of lock retries. Already-paid hops are skipped."""
        request = self.get(request_id)
        if request.status != UpgradeStatus.COMPLETED:
            raise InvalidStateTransitionError(f"Rank upgrade {request_id} did not complete")
        return self.commissions.cascade(
            request.account_id,
            request.price,
            CommissionSource.RANK_UPGRADE,
            str(request.id),
            config,
            earner_level=request.to_level,
        )
