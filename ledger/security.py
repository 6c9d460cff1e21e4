import re
from typing import Optional

from werkzeug.security import check_password_hash, generate_password_hash

from .errors import AuthenticationFailureError, InvalidRequestError

_TRANSACTION_PASSWORD = re.compile(r"^\d{6}$")


def validate_transaction_password(password: str) -> None:
    if not password or not _TRANSACTION_PASSWORD.match(password):
        raise InvalidRequestError("Transaction password must be exactly 6 digits")


class TransactionPasswordVerifier:
    """Auth collaborator consulted before any withdrawal reserves funds."""

    def hash(self, password: str) -> str:
        validate_transaction_password(password)
        return generate_password_hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> None:
        if not password_hash:
            raise AuthenticationFailureError("Please set a transaction password first")
        if not password or not check_password_hash(password_hash, password):
            raise AuthenticationFailureError("Incorrect transaction password")
