from typing import Optional


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def public_message(self) -> str:
        return self.message


class AccountNotFoundError(LedgerServiceError):
    code = "ACCOUNT_NOT_FOUND"


class TransactionNotFoundError(LedgerServiceError):
    code = "TRANSACTION_NOT_FOUND"


class InsufficientBalanceError(LedgerServiceError):
    code = "INSUFFICIENT_BALANCE"


class InvalidStateTransitionError(LedgerServiceError):
    code = "INVALID_STATE_TRANSITION"


class DuplicateConfirmationError(LedgerServiceError):
    code = "DUPLICATE_CONFIRMATION"


class InvalidRankTargetError(LedgerServiceError):
    code = "INVALID_RANK_TARGET"


class AuthenticationFailureError(LedgerServiceError):
    code = "AUTHENTICATION_FAILURE"


class InvalidRequestError(LedgerServiceError):
    code = "VALIDATION_ERROR"


class IdempotencyConflictError(LedgerServiceError):
    code = "IDEMPOTENCY_CONFLICT"


class ReferralCycleError(LedgerServiceError):
    code = "REFERRAL_CYCLE"


class LockTimeoutError(LedgerServiceError):
    code = "LOCK_TIMEOUT"
    retryable = True


class LedgerInvariantViolation(LedgerServiceError):
    """Cached balance disagrees with the entries behind it.

    The account stays frozen until an operator reconciles it.
    """

    code = "LEDGER_INVARIANT_VIOLATION"

    def __init__(self, message: str, account_id: Optional[object] = None, **details):
        super().__init__(message, account_id=account_id, **details)
        self.account_id = account_id

    @property
    def public_message(self) -> str:
        return "Unable to process request at this time"
