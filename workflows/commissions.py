import hashlib
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Optional
from uuid import UUID

from ledger.config import PlatformConfig
from ledger.errors import IdempotencyConflictError, LockTimeoutError
from ledger.logging_config import get_logger
from ledger.models import (
    CascadePlan,
    Commission,
    CommissionLevel,
    CommissionSource,
    CommissionSummary,
    EntryReason,
    PlannedPayout,
    Wallet,
    percent_of,
)
from ledger.service import LedgerService
from rules.ranks import MembershipLevel, is_commission_eligible

from .referrals import HOP_LEVELS, ReferralIndex

logger = get_logger("commissions")


def commission_key(earner_id: UUID, event_id: str, level: CommissionLevel) -> str:
    digest = hashlib.sha256(f"{earner_id}:{event_id}:{level.value}".encode()).hexdigest()
    return f"commission:{digest}"


def plan_key(earner_id: UUID, event_id: str) -> str:
    return f"{earner_id}:{event_id}"


class CommissionEngine:
    def __init__(self, ledger: LedgerService, referrals: Optional[ReferralIndex] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.referrals = referrals or ReferralIndex(ledger.storage)

    def cascade(
        self,
        earner_id: UUID,
        base: Decimal,
        source: CommissionSource,
        event_id: str,
        config: PlatformConfig,
        earner_level: Optional[MembershipLevel] = None,
    ) -> list[Commission]:
        """Credit up to three ancestors of ``earner_id`` for one earning event.

        The first call fixes the event's payouts from the ranks and ``config``
        of that moment. Later calls for the same event only credit what that
        plan still owes, whatever the ranks or config have become since.
        ``earner_level`` overrides the earner's current rank when planning.
        """
        base = Decimal(base)
        if base <= 0:
            return []
        plan = self.plan_for(earner_id, base, source, event_id, config, earner_level)
        if not plan.payouts:
            return []

        attempts = config.cascade_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._pay(plan, config.cascade_max_workers)
            except LockTimeoutError:
                if attempt == attempts:
                    logger.error(
                        "commission_cascade_gave_up",
                        extra={"earner_id": earner_id, "event_id": event_id, "attempts": attempts},
                    )
                    raise
                logger.warning(
                    "commission_cascade_retry",
                    extra={"earner_id": earner_id, "event_id": event_id, "attempt": attempt},
                )
        return []

    def plan_for(
        self,
        earner_id: UUID,
        base: Decimal,
        source: CommissionSource,
        event_id: str,
        config: PlatformConfig,
        earner_level: Optional[MembershipLevel] = None,
    ) -> CascadePlan:
        key = plan_key(earner_id, event_id)
        with self.storage.lock:
            plan = self.storage.cascade_plans.get(key)
        if plan is None:
            level = earner_level or self.storage.account(earner_id).membership_level
            candidate = CascadePlan(
                earner_id=earner_id,
                event_id=event_id,
                source=source,
                base=base,
                earner_level=level,
                config_version=config.version,
                payouts=self._plan(earner_id, level, base, source, config),
                created_at=self.ledger.clock.now(),
            )
            with self.storage.lock:
                plan = self.storage.cascade_plans.setdefault(key, candidate)
            if plan is candidate:
                logger.info(
                    "commission_cascade_planned",
                    extra={
                        "earner_id": earner_id,
                        "event_id": event_id,
                        "earner_level": level.value,
                        "config_version": config.version,
                        "payouts": len(candidate.payouts),
                    },
                )
        if plan.base != base or plan.source != source:
            raise IdempotencyConflictError(
                f"Event {event_id!r} already cascaded {plan.base} as {plan.source.value}",
                earner_id=str(earner_id),
                event_id=event_id,
            )
        return plan

    def _pay(self, plan: CascadePlan, max_workers: int) -> list[Commission]:
        if max_workers > 1 and len(plan.payouts) > 1:
            with ThreadPoolExecutor(max_workers=min(max_workers, len(plan.payouts))) as pool:
                futures = [pool.submit(self._credit, plan, payout) for payout in plan.payouts]
                return [future.result() for future in futures]
        return [self._credit(plan, payout) for payout in plan.payouts]

    def _plan(
        self,
        earner_id: UUID,
        earner_level: MembershipLevel,
        base: Decimal,
        source: CommissionSource,
        config: PlatformConfig,
    ) -> list[PlannedPayout]:
        payouts = []
        for hop, ancestor_id in self.referrals.ancestors(earner_id, max_hops=len(HOP_LEVELS)):
            level = HOP_LEVELS[hop - 1]
            ancestor_level = self.storage.account(ancestor_id).membership_level
            # Each hop is judged against the earner only, never the hop below it.
            if not is_commission_eligible(earner_level, ancestor_level):
                logger.info(
                    "commission_hop_ineligible",
                    extra={
                        "earner_id": earner_id,
                        "ancestor_id": ancestor_id,
                        "level": level.value,
                        "earner_level": earner_level.value,
                        "ancestor_level": ancestor_level.value,
                    },
                )
                continue
            percentage = config.commission_percent(source, level)
            amount = percent_of(base, percentage)
            if amount > 0:
                payouts.append(
                    PlannedPayout(level=level, ancestor_id=ancestor_id, percentage=percentage, amount=amount)
                )
        return payouts

    def _credit(self, plan: CascadePlan, payout: PlannedPayout) -> Commission:
        key = commission_key(plan.earner_id, plan.event_id, payout.level)
        self.ledger.apply(
            payout.ancestor_id,
            Wallet.INCOME,
            payout.amount,
            EntryReason.COMMISSION,
            key,
            description=f"{payout.level.value}-level commission from {plan.earner_id} ({plan.source.value})",
        )
        with self.storage.lock:
            existing = self.storage.commissions.get(key)
            if existing is not None:
                return existing
            commission = Commission(
                level=payout.level,
                from_account_id=plan.earner_id,
                to_account_id=payout.ancestor_id,
                source_event=plan.source,
                source_event_id=plan.event_id,
                percentage=payout.percentage,
                amount_earned=payout.amount,
                config_version=plan.config_version,
                idempotency_key=key,
                created_at=self.ledger.clock.now(),
            )
            self.storage.commissions[key] = commission
        logger.info(
            "commission_paid",
            extra={
                "earner_id": plan.earner_id,
                "ancestor_id": payout.ancestor_id,
                "level": payout.level.value,
                "amount": payout.amount,
                "source": plan.source.value,
                "event_id": plan.event_id,
            },
        )
        return commission

    def commissions_for(self, account_id: UUID) -> CommissionSummary:
        self.storage.account(account_id)
        with self.storage.lock:
            records = [c for c in self.storage.commissions.values() if c.to_account_id == account_id]
        records.sort(key=lambda c: c.created_at, reverse=True)
        totals = {level.value: Decimal("0") for level in CommissionLevel}
        for record in records:
            totals[record.level.value] += record.amount_earned
        totals["total"] = sum(totals.values(), Decimal("0"))
        return CommissionSummary(account_id=account_id, count=len(records), totals=totals, commissions=records)
