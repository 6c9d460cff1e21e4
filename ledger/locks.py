import threading
from contextlib import contextmanager
from typing import Iterable, Iterator
from uuid import UUID

from .errors import LockTimeoutError
from .logging_config import get_logger

logger = get_logger("locks")


class AccountLockManager:
    """One re-entrant lock per account.

    Multi-account units take their locks in sorted id order so two units
    over the same accounts cannot deadlock.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._locks: dict[UUID, threading.RLock] = {}

    def _lock_for(self, account_id: UUID) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_ids: Iterable[UUID]) -> Iterator[None]:
        ordered = sorted(set(account_ids), key=str)
        acquired: list[threading.RLock] = []
        try:
            for account_id in ordered:
                lock = self._lock_for(account_id)
                if not lock.acquire(timeout=self.timeout):
                    logger.warning("account_lock_timeout", extra={"account_id": account_id, "timeout": self.timeout})
                    raise LockTimeoutError(
                        "Account is busy, retry the request", account_id=str(account_id)
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    @contextmanager
    def hold_one(self, account_id: UUID) -> Iterator[None]:
        with self.hold([account_id]):
            yield
