from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from ledger.errors import InvalidRequestError, ReferralCycleError
from ledger.logging_config import get_logger
from ledger.models import Account
from ledger.security import TransactionPasswordVerifier
from ledger.service import LedgerService

from .referrals import ReferralIndex

logger = get_logger("accounts")


class AccountService:
    def __init__(self, ledger: LedgerService, passwords: Optional[TransactionPasswordVerifier] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.referrals = ReferralIndex(ledger.storage)
        self.passwords = passwords or TransactionPasswordVerifier()

    def register(
        self,
        referrer_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        transaction_password: Optional[str] = None,
    ) -> Account:
        account_id = account_id or uuid4()
        with self.storage.lock:
            if account_id in self.storage.accounts:
                raise InvalidRequestError(f"Account {account_id} already exists")
            if referrer_id is not None:
                self.storage.account(referrer_id)
                if self.referrals.would_create_cycle(account_id, referrer_id):
                    raise ReferralCycleError(
                        f"Referrer {referrer_id} would create a referral cycle", account_id=str(account_id)
                    )
            account = Account(
                id=account_id,
                referrer_id=referrer_id,
                created_at=self.ledger.clock.now(),
            )
            if transaction_password is not None:
                account.transaction_password_hash = self.passwords.hash(transaction_password)
            self.storage.add_account(account)
        logger.info("account_registered", extra={"account_id": account_id, "referrer_id": referrer_id})
        return account.model_copy(deep=True)

    def get(self, account_id: UUID) -> Account:
        return self.storage.account(account_id).model_copy(deep=True)

    def set_transaction_password(
        self, account_id: UUID, new_password: str, current_password: Optional[str] = None
    ) -> None:
        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            if account.transaction_password_hash:
                if not current_password:
                    raise InvalidRequestError("Provide the current transaction password to change it")
                self.passwords.verify(account.transaction_password_hash, current_password)
                if current_password == new_password:
                    raise InvalidRequestError("New transaction password must differ from the current one")
            account.transaction_password_hash = self.passwords.hash(new_password)
        logger.info("transaction_password_set", extra={"account_id": account_id})

    def restrict_withdrawals(self, account_id: UUID, until: Optional[datetime]) -> Account:
        with self.ledger.locks.hold_one(account_id):
            account = self.storage.account(account_id)
            account.withdrawal_restricted_until = until
        logger.info("withdrawal_restriction_set", extra={"account_id": account_id, "until": until})
        return account.model_copy(deep=True)
