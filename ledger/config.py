import json
import os
import threading
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rules.ranks import MembershipLevel, RANK_ORDER
from rules.rule_engine import Condition, ConditionGroup, ThresholdRule, parse_condition

from .logging_config import get_logger
from .models import CommissionLevel, CommissionSource, Wallet

logger = get_logger("config")

CONFIG_PATH_ENV = "WALLET_CONFIG_PATH"

DEFAULT_RANK_PRICES = {
    MembershipLevel.INTERN: Decimal("0"),
    MembershipLevel.RANK_1: Decimal("3300"),
    MembershipLevel.RANK_2: Decimal("9600"),
    MembershipLevel.RANK_3: Decimal("27000"),
    MembershipLevel.RANK_4: Decimal("50000"),
    MembershipLevel.RANK_5: Decimal("78000"),
    MembershipLevel.RANK_6: Decimal("100000"),
    MembershipLevel.RANK_7: Decimal("150000"),
    MembershipLevel.RANK_8: Decimal("200000"),
    MembershipLevel.RANK_9: Decimal("300000"),
    MembershipLevel.RANK_10: Decimal("500000"),
}

DEFAULT_COMMISSION_PERCENT = {
    CommissionLevel.A: Decimal("10"),
    CommissionLevel.B: Decimal("5"),
    CommissionLevel.C: Decimal("2"),
}


class SalaryTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    amount: Decimal = Field(..., gt=0)
    condition: dict = Field(..., description="Rule-engine condition over direct_qualified / network_qualified")

    def to_rule(self) -> ThresholdRule:
        return ThresholdRule(name=self.name, amount=self.amount, condition=self.compiled())

    def compiled(self) -> Union[Condition, ConditionGroup]:
        return parse_condition(self.condition)


DEFAULT_SALARY_TIERS = [
    SalaryTier(
        name="15 direct A-level users",
        amount=Decimal("15000"),
        condition={"field": "direct_qualified", "operator": "greater_than_or_equal", "value": 15},
    ),
    SalaryTier(
        name="20 direct A-level users",
        amount=Decimal("20000"),
        condition={"field": "direct_qualified", "operator": "greater_than_or_equal", "value": 20},
    ),
    SalaryTier(
        name="40 total network users",
        amount=Decimal("48000"),
        condition={"field": "network_qualified", "operator": "greater_than_or_equal", "value": 40},
    ),
]


class PlatformConfig(BaseModel):
    """One immutable settings snapshot. Evaluations receive it explicitly."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    task_commission_percent: dict[CommissionLevel, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_COMMISSION_PERCENT)
    )
    upgrade_commission_percent: dict[CommissionLevel, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_COMMISSION_PERCENT)
    )
    rank_prices: dict[MembershipLevel, Decimal] = Field(default_factory=lambda: dict(DEFAULT_RANK_PRICES))
    upgrade_bonus_percent: Decimal = Field(default=Decimal("15"), ge=0, le=100)
    salary_tiers: list[SalaryTier] = Field(default_factory=lambda: list(DEFAULT_SALARY_TIERS))
    salary_wallet: Wallet = Wallet.INCOME
    videos_per_day: int = Field(default=5, gt=0)
    intern_video_payment: Decimal = Decimal("10")
    withdrawal_tax_percent: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    allowed_deposit_amounts: list[Decimal] = Field(
        default_factory=lambda: [Decimal(v) for v in (3300, 9600, 27000, 50000, 78000, 100000, 150000, 200000)]
    )
    allowed_withdrawal_amounts: list[Decimal] = Field(
        default_factory=lambda: [
            Decimal(v)
            for v in (100, 200, 3300, 9600, 10000, 27000, 50000, 78000, 100000, 300000, 500000, 3000000, 5000000)
        ]
    )
    timezone: str = "UTC"
    bank_change_confirmations_required: int = Field(default=3, ge=1)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    cascade_retry_attempts: int = Field(default=3, ge=1)
    cascade_max_workers: int = Field(default=1, ge=1)

    @field_validator("rank_prices")
    @classmethod
    def _every_rank_priced(cls, value: dict) -> dict:
        missing = [level.value for level in RANK_ORDER if level not in value]
        if missing:
            raise ValueError(f"rank_prices missing levels: {', '.join(missing)}")
        return value

    @field_validator("salary_tiers")
    @classmethod
    def _tiers_parse(cls, value: list[SalaryTier]) -> list[SalaryTier]:
        for tier in value:
            tier.compiled()
        return value

    def commission_percent(self, source: CommissionSource, level: CommissionLevel) -> Decimal:
        table = self.task_commission_percent if source == CommissionSource.TASK_REWARD else self.upgrade_commission_percent
        return table.get(level, Decimal("0"))

    def price_of(self, level: MembershipLevel) -> Decimal:
        return self.rank_prices[level]

    def salary_rules(self) -> list[ThresholdRule]:
        return [tier.to_rule() for tier in self.salary_tiers]


class ConfigStore:
    """Keeps every published snapshot so past evaluations stay reproducible."""

    def __init__(self, initial: Optional[PlatformConfig] = None):
        self._lock = threading.Lock()
        first = initial or PlatformConfig()
        self._versions: dict[int, PlatformConfig] = {first.version: first}
        self._current = first.version

    def current(self) -> PlatformConfig:
        with self._lock:
            return self._versions[self._current]

    def get(self, version: int) -> PlatformConfig:
        with self._lock:
            if version not in self._versions:
                raise KeyError(f"Unknown config version {version}")
            return self._versions[version]

    def publish(self, **changes) -> PlatformConfig:
        with self._lock:
            base = self._versions[self._current]
            data = base.model_dump()
            data.update(changes)
            data["version"] = max(self._versions) + 1
            snapshot = PlatformConfig.model_validate(data)
            self._versions[snapshot.version] = snapshot
            self._current = snapshot.version
        logger.info("config_published", extra={"config_version": snapshot.version, "fields": sorted(changes)})
        return snapshot


def load_config(path: Optional[str] = None) -> PlatformConfig:
    path = path or os.getenv(CONFIG_PATH_ENV)
    if not path:
        return PlatformConfig()
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    config = PlatformConfig.model_validate(data)
    logger.info("config_loaded", extra={"path": path, "config_version": config.version})
    return config
