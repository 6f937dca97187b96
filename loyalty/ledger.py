from typing import Callable, Optional

from .config import Settings, get_settings
from .errors import ConcurrencyConflictError, InsufficientFundsError, LedgerConflictError
from .models import Account
from .observability import get_logger
from .storage import AccountRepository, InMemoryAccountRepository

logger = get_logger(__name__)


class LedgerService:
    """Sole writer of account balances.

    Every mutation is a read of the current account version followed by a
    compare-and-set against that version; a concurrent writer makes the write
    fail and the whole read-check-write is retried against the fresh value.
    """

    def __init__(self, accounts: Optional[AccountRepository] = None, settings: Optional[Settings] = None):
        self.accounts = accounts or InMemoryAccountRepository()
        self.settings = settings or get_settings()

    def get_balance(self, user_id: str) -> Account:
        account = self.accounts.get(user_id)
        if account is None:
            account = self.accounts.create(user_id)
            logger.info("Opened account for user %s", user_id)
        return account

    def apply_delta(self, user_id: str, delta: int) -> Account:
        return self._update(user_id, lambda account: account.points + delta, requested=max(-delta, 0))

    def guarded_debit(self, user_id: str, amount: int) -> Account:
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")
        return self._update(user_id, lambda account: account.points - amount, requested=amount)

    def credit(self, user_id: str, amount: int) -> Account:
        if amount < 0:
            raise ValueError(f"Credit amount must not be negative, got {amount}")
        return self.apply_delta(user_id, amount)

    def _update(self, user_id: str, compute: Callable[[Account], int], requested: int) -> Account:
        for attempt in range(1, self.settings.ledger_max_retries + 1):
            account = self.get_balance(user_id)
            new_points = compute(account)
            if new_points < 0:
                raise InsufficientFundsError(user_id, requested, account.points)
            try:
                updated = self.accounts.compare_and_set(user_id, account.version, new_points)
            except ConcurrencyConflictError:
                logger.debug("Balance write conflict for user %s (attempt %d)", user_id, attempt)
                continue
            return updated

        logger.error("Gave up updating balance for user %s after %d attempts",
                     user_id, self.settings.ledger_max_retries)
        raise LedgerConflictError(f"Could not update balance for user {user_id}: too much contention")
