import hashlib
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from ledger.config import PlatformConfig
from ledger.errors import InvalidRequestError, LedgerInvariantViolation, LedgerServiceError
from ledger.logging_config import get_logger
from ledger.models import EntryReason, SalaryRunSummary, SalarySnapshot, SalaryStatus
from ledger.service import LedgerService
from rules.ranks import MembershipLevel, rank_ordinal
from rules.rule_engine import best_matching_rule

from .referrals import ReferralIndex

logger = get_logger("salary")

_PERIOD = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def salary_key(account_id: UUID, period: str) -> str:
    digest = hashlib.sha256(f"{account_id}:{period}".encode()).hexdigest()
    return f"salary:{digest}"


def period_of(moment: datetime, tz: str) -> str:
    return moment.astimezone(ZoneInfo(tz)).strftime("%Y-%m")


def _check_period(period: str) -> str:
    if not _PERIOD.match(period or ""):
        raise InvalidRequestError(f"Salary period must look like YYYY-MM, got {period!r}")
    return period


class SalaryEvaluator:
    def __init__(self, ledger: LedgerService, referrals: Optional[ReferralIndex] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.referrals = referrals or ReferralIndex(ledger.storage)

    def qualified_counts(self, account_id: UUID) -> tuple[int, int]:
        """(direct, network) referrals that count toward salary tiers.

        A member counts when it has left Intern and ranks no higher than
        ``account_id``. Network spans the full downline, direct included.
        """
        own = rank_ordinal(self.storage.account(account_id).membership_level)
        direct = network = 0
        for depth, member_id in self.referrals.downline(account_id):
            level = self.storage.account(member_id).membership_level
            if level == MembershipLevel.INTERN or rank_ordinal(level) > own:
                continue
            network += 1
            if depth == 1:
                direct += 1
        return direct, network

    def evaluate_account(self, account_id: UUID, period: str, config: PlatformConfig) -> SalarySnapshot:
        """Score one account for ``period`` and pay at most one tier.

        A snapshot that already carries a payout is returned as is; a
        zero-payout snapshot is re-scored since the network may have grown.
        """
        _check_period(period)
        with self.storage.lock:
            existing = self.storage.salary_snapshots.get((account_id, period))
        if existing is not None and existing.amount_paid > 0:
            return existing

        direct, network = self.qualified_counts(account_id)
        rule = best_matching_rule(
            config.salary_rules(), {"direct_qualified": direct, "network_qualified": network}
        )
        key = salary_key(account_id, period)
        amount = rule.amount if rule else Decimal("0")
        prior = self.ledger.entries_for(key)
        if prior:
            # An earlier run paid but never stored its snapshot.
            amount = prior[0].delta
        elif rule is not None:
            self.ledger.apply(
                account_id,
                config.salary_wallet,
                amount,
                EntryReason.SALARY,
                key,
                description=f"Monthly salary {period}: {rule.name}",
            )

        snapshot = SalarySnapshot(
            account_id=account_id,
            period=period,
            direct_qualified=direct,
            network_qualified=network,
            tier_matched=rule.name if rule else None,
            amount_paid=amount,
            wallet=config.salary_wallet,
            config_version=config.version,
            created_at=self.ledger.clock.now(),
        )
        with self.storage.lock:
            self.storage.salary_snapshots[(account_id, period)] = snapshot
        if rule is not None and not prior:
            logger.info(
                "salary_paid",
                extra={"account_id": account_id, "period": period, "tier": rule.name, "amount": amount},
            )
        return snapshot

    def run_period(self, period: str, config: PlatformConfig) -> SalaryRunSummary:
        """Batch over every account. One account's failure is recorded and
        the run moves on; invariant violations are left for an operator."""
        _check_period(period)
        with self.storage.lock:
            account_ids = list(self.storage.accounts)
        logger.info("salary_run_started", extra={"period": period, "accounts": len(account_ids)})

        paid_count = 0
        total_paid = Decimal("0")
        failures: list[str] = []
        for account_id in account_ids:
            try:
                snapshot = self.evaluate_account(account_id, period, config)
            except LedgerInvariantViolation:
                logger.critical("salary_account_frozen", extra={"account_id": account_id, "period": period})
                failures.append(str(account_id))
                continue
            except LedgerServiceError as exc:
                logger.error(
                    "salary_account_failed",
                    extra={"account_id": account_id, "period": period, "error": exc.code},
                )
                failures.append(str(account_id))
                continue
            if snapshot.amount_paid > 0:
                paid_count += 1
                total_paid += snapshot.amount_paid

        logger.info(
            "salary_run_finished",
            extra={"period": period, "paid_count": paid_count, "total_paid": total_paid, "failures": len(failures)},
        )
        return SalaryRunSummary(
            period=period,
            evaluated=len(account_ids),
            paid_count=paid_count,
            total_paid=total_paid,
            failures=failures,
        )

    def status(self, account_id: UUID, config: PlatformConfig, period: Optional[str] = None) -> SalaryStatus:
        period = _check_period(period) if period else period_of(self.ledger.clock.now(), config.timezone)
        direct, network = self.qualified_counts(account_id)
        rule = best_matching_rule(
            config.salary_rules(), {"direct_qualified": direct, "network_qualified": network}
        )
        with self.storage.lock:
            history = [s for (aid, _), s in self.storage.salary_snapshots.items() if aid == account_id]
        history.sort(key=lambda s: s.period, reverse=True)
        current = next((s for s in history if s.period == period), None)
        return SalaryStatus(
            account_id=account_id,
            period=period,
            direct_qualified=direct,
            network_qualified=network,
            eligible_tier=rule.name if rule else None,
            eligible_amount=rule.amount if rule else Decimal("0"),
            paid_this_period=bool(current and current.amount_paid > 0),
            history=history,
        )
