from decimal import Decimal
from typing import NamedTuple, Optional
from uuid import UUID

from ledger.config import PlatformConfig
from ledger.errors import InvalidRequestError
from ledger.logging_config import get_logger
from ledger.models import ApplyResult, Commission, CommissionSource, EntryReason, Wallet
from ledger.service import LedgerService

from .commissions import CommissionEngine

logger = get_logger("rewards")


class TaskRewardOutcome(NamedTuple):
    credit: ApplyResult
    commissions: list[Commission]


def task_reward_key(account_id: UUID, task_id: str) -> str:
    return f"task-reward:{account_id}:{task_id}"


class TaskRewardService:
    """Entry point for the task/video subsystem's earning events."""

    def __init__(self, ledger: LedgerService, commissions: CommissionEngine):
        self.ledger = ledger
        self.commissions = commissions

    def credited_amount(self, account_id: UUID, task_id: str) -> Optional[Decimal]:
        """Amount already credited for the task, or None if it never was."""
        entries = self.ledger.entries_for(task_reward_key(account_id, task_id))
        return entries[0].delta if entries else None

    def complete_task_reward(
        self, account_id: UUID, task_id: str, amount: Decimal, config: PlatformConfig
    ) -> TaskRewardOutcome:
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidRequestError("Task reward amount must be positive")
        if not task_id:
            raise InvalidRequestError("Task id is required")

        credit = self.ledger.apply(
            account_id,
            Wallet.INCOME,
            amount,
            EntryReason.TASK_REWARD,
            task_reward_key(account_id, task_id),
            description=f"Reward for task {task_id}",
        )
        # Runs on replays too so a cascade cut short by a crash is completed.
        # The event's payouts were fixed on its first run.
        commissions = self.commissions.cascade(
            account_id, amount, CommissionSource.TASK_REWARD, f"task:{task_id}", config
        )
        logger.info(
            "task_reward_completed",
            extra={
                "account_id": account_id,
                "task_id": task_id,
                "amount": amount,
                "replayed": credit.replayed,
                "commissions": len(commissions),
            },
        )
        return TaskRewardOutcome(credit=credit, commissions=commissions)
