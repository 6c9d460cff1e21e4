from datetime import date
from typing import Union
from uuid import UUID
from zoneinfo import ZoneInfo

from ledger.config import PlatformConfig
from ledger.errors import DuplicateConfirmationError, InvalidRequestError, InvalidStateTransitionError
from ledger.logging_config import get_logger
from ledger.models import Account, BankChangeOutcome, BankChangeRecord, BankChangeStatus, BankDetails
from ledger.service import LedgerService

logger = get_logger("bank_change")


class BankChangeService:
    """Guards payout-destination changes behind confirmations on distinct days.

    The current bank details stay authoritative until the final confirmation,
    so a decline or cancel never affects withdrawals.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def _today(self, config: PlatformConfig) -> date:
        return self.ledger.clock.now().astimezone(ZoneInfo(config.timezone)).date()

    def set_bank_account(self, account_id: UUID, details: Union[BankDetails, dict]) -> Account:
        if isinstance(details, dict):
            details = BankDetails.model_validate(details)
        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            if account.bank_account is None:
                account.bank_account = details
                logger.info("bank_account_set", extra={"account_id": account_id})
            else:
                if details == account.bank_account:
                    raise InvalidRequestError("New bank details match the current ones")
                account.pending_bank_account = details
                account.bank_change_status = BankChangeStatus.PENDING
                account.bank_change_requested_at = self.ledger.clock.now()
                account.bank_change_confirmations = []
                logger.info("bank_change_requested", extra={"account_id": account_id})
            return account.model_copy(deep=True)

    def confirm_bank_change(self, account_id: UUID, confirmed: bool, config: PlatformConfig) -> Account:
        if not confirmed:
            return self._discard(account_id, BankChangeOutcome.DECLINED)

        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            self._assert_pending(account)
            today = self._today(config)
            confirmations = account.bank_change_confirmations
            if today in confirmations:
                raise DuplicateConfirmationError(
                    "Bank change already confirmed today, confirm again tomorrow",
                    day=today.isoformat(),
                )
            if confirmations and today < confirmations[-1]:
                raise InvalidStateTransitionError("Confirmation date precedes an earlier confirmation")
            confirmations.append(today)
            logger.info(
                "bank_change_confirmed",
                extra={"account_id": account_id, "confirmation": len(confirmations), "day": today},
            )
            if len(confirmations) >= config.bank_change_confirmations_required:
                self._resolve(account, BankChangeOutcome.COMPLETED)
                account.bank_account = account.pending_bank_account
                account.pending_bank_account = None
            return account.model_copy(deep=True)

    def cancel_bank_change(self, account_id: UUID) -> Account:
        return self._discard(account_id, BankChangeOutcome.CANCELLED)

    def _discard(self, account_id: UUID, outcome: BankChangeOutcome) -> Account:
        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            self._assert_pending(account)
            self._resolve(account, outcome)
            account.pending_bank_account = None
            return account.model_copy(deep=True)

    def _assert_pending(self, account: Account) -> None:
        if account.bank_change_status != BankChangeStatus.PENDING or account.pending_bank_account is None:
            raise InvalidStateTransitionError("No bank account change is pending")

    def _resolve(self, account: Account, outcome: BankChangeOutcome) -> None:
        account.bank_change_history.append(
            BankChangeRecord(
                requested_at=account.bank_change_requested_at or self.ledger.clock.now(),
                resolved_at=self.ledger.clock.now(),
                candidate=account.pending_bank_account,
                outcome=outcome,
                confirmations=list(account.bank_change_confirmations),
            )
        )
        account.bank_change_confirmations = []
        account.bank_change_status = BankChangeStatus.NONE
        account.bank_change_requested_at = None
        logger.info("bank_change_resolved", extra={"account_id": account.id, "outcome": outcome.value})
