"""
Wallet ledger core.

This package provides:
- Append-only ledger entries behind two cached wallet balances per account
- Idempotent, atomic multi-leg balance mutations
- Deposit / withdrawal review, rank upgrades, commissions and salaries
  through ``ledger.gateway.LedgerGateway``
- Structured error taxonomy shared by every service
"""

from .errors import (
    AccountNotFoundError,
    AuthenticationFailureError,
    DuplicateConfirmationError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidRankTargetError,
    InvalidRequestError,
    InvalidStateTransitionError,
    LedgerInvariantViolation,
    LedgerServiceError,
    LockTimeoutError,
    ReferralCycleError,
    TransactionNotFoundError,
)

__all__ = [
    "AccountNotFoundError",
    "AuthenticationFailureError",
    "DuplicateConfirmationError",
    "IdempotencyConflictError",
    "InsufficientBalanceError",
    "InvalidRankTargetError",
    "InvalidRequestError",
    "InvalidStateTransitionError",
    "LedgerInvariantViolation",
    "LedgerServiceError",
    "LockTimeoutError",
    "ReferralCycleError",
    "TransactionNotFoundError",
]
