"""
Business workflows on top of the wallet ledger.

Each service owns one state machine (deposits and withdrawals, rank upgrades,
commission cascades, salary runs, bank-account changes, wealth-fund
investments) and moves money only through ``ledger.service.LedgerService``.
"""

from .accounts import AccountService
from .bank_change import BankChangeService
from .commissions import CommissionEngine
from .rank_upgrade import RankUpgradeService, task_reward_amount
from .referrals import ReferralIndex
from .rewards import TaskRewardService
from .salary import SalaryEvaluator
from .transactions import TransactionWorkflow
from .wealth import WealthService

__all__ = [
    "AccountService",
    "BankChangeService",
    "CommissionEngine",
    "RankUpgradeService",
    "ReferralIndex",
    "SalaryEvaluator",
    "TaskRewardService",
    "TransactionWorkflow",
    "WealthService",
    "task_reward_amount",
]
