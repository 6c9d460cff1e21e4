from decimal import Decimal
from uuid import uuid4

import pytest

from ledger.clock import FixedClock
from ledger.config import ConfigStore, PlatformConfig
from ledger.gateway import LedgerGateway
from ledger.models import EntryReason, Wallet
from rules.ranks import MembershipLevel

PASSWORD = "123456"

BANK = {"account_name": "Abebe Kebede", "bank": "CBE", "account_number": "1000123456"}
OTHER_BANK = {"account_name": "Abebe Kebede", "bank": "Awash", "account_number": "0132000099"}


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config_store():
    return ConfigStore(PlatformConfig())


@pytest.fixture
def gateway(config_store, clock):
    return LedgerGateway(config_store=config_store, clock=clock)


@pytest.fixture
def make_account(gateway):
    """Register an account, optionally placing it at a rank directly."""

    def _make(referrer=None, level=MembershipLevel.INTERN, password=PASSWORD):
        account = gateway.accounts.register(referrer_id=referrer, transaction_password=password)
        if level != MembershipLevel.INTERN:
            gateway.ledger.storage.account(account.id).membership_level = level
        return account.id

    return _make


@pytest.fixture
def fund(gateway):
    def _fund(account_id, amount, wallet=Wallet.PERSONAL):
        return gateway.ledger.apply(
            account_id, wallet, Decimal(amount), EntryReason.DEPOSIT, f"test-fund:{uuid4()}"
        )

    return _fund


@pytest.fixture
def balances(gateway):
    def _balances(account_id):
        account = gateway.ledger.storage.account(account_id)
        return account.income_wallet, account.personal_wallet

    return _balances
