"""
Unit Tests for the Ledger Service

Tests cover:
1. Lazy account creation
2. Credits and deltas accumulate without lost updates
3. Guarded debit never overdraws
4. Compare-and-set retry behaviour
"""

import random

import pytest
from concurrent.futures import ThreadPoolExecutor

from loyalty.config import Settings
from loyalty.errors import ConcurrencyConflictError, InsufficientFundsError, LedgerConflictError
from loyalty.ledger import LedgerService
from loyalty.storage import InMemoryAccountRepository


USER_ID = "user-ledger-1"


def make_ledger(**overrides) -> LedgerService:
    return LedgerService(InMemoryAccountRepository(), Settings(ledger_max_retries=1000, **overrides))


class ConflictingAccounts(InMemoryAccountRepository):
    """Raises a version conflict for the first ``conflicts`` writes."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    def compare_and_set(self, user_id, expected_version, points):
        self.attempts += 1
        if self.attempts <= self.conflicts:
            raise ConcurrencyConflictError("simulated concurrent writer")
        return super().compare_and_set(user_id, expected_version, points)


class TestBalance:
    """Tests for reading balances."""

    def test_unknown_user_gets_zero_balance(self):
        """Test that an unknown user starts at zero."""
        ledger = make_ledger()

        account = ledger.get_balance(USER_ID)

        assert account.user_id == USER_ID
        assert account.points == 0

    def test_get_balance_is_stable(self):
        """Test that reading a balance does not change it."""
        ledger = make_ledger()
        ledger.get_balance(USER_ID)

        assert ledger.get_balance(USER_ID).points == 0
        assert ledger.get_balance(USER_ID).version == 0


class TestApplyDelta:
    """Tests for applying point deltas."""

    def test_deltas_accumulate(self):
        """Test that deltas add up."""
        ledger = make_ledger()

        ledger.apply_delta(USER_ID, 4)
        ledger.apply_delta(USER_ID, 10)
        account = ledger.apply_delta(USER_ID, -5)

        assert account.points == 9
        assert ledger.get_balance(USER_ID).points == 9

    def test_each_write_bumps_version(self):
        """Test that every write increments the version."""
        ledger = make_ledger()

        ledger.apply_delta(USER_ID, 1)
        account = ledger.apply_delta(USER_ID, 1)

        assert account.version == 2

    def test_delta_cannot_drive_balance_negative(self):
        """Test that a delta below zero is refused."""
        ledger = make_ledger()
        ledger.apply_delta(USER_ID, 3)

        with pytest.raises(InsufficientFundsError):
            ledger.apply_delta(USER_ID, -4)

        assert ledger.get_balance(USER_ID).points == 3

    def test_concurrent_credits_lose_no_updates(self):
        """Test that concurrent credits are all applied."""
        ledger = make_ledger()

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda _: ledger.apply_delta(USER_ID, 3), range(200)))

        assert ledger.get_balance(USER_ID).points == 600

    def test_negative_credit_rejected(self):
        """Test that a negative credit is refused."""
        ledger = make_ledger()

        with pytest.raises(ValueError):
            ledger.credit(USER_ID, -1)


class TestGuardedDebit:
    """Tests for the check-then-debit path."""

    def test_debit_within_balance(self):
        """Test debiting the whole balance."""
        ledger = make_ledger()
        ledger.credit(USER_ID, 80)

        account = ledger.guarded_debit(USER_ID, 80)

        assert account.points == 0

    def test_insufficient_funds_leaves_balance_untouched(self):
        """Test that an overdraw is refused without changing the balance."""
        ledger = make_ledger()
        ledger.credit(USER_ID, 35)

        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.guarded_debit(USER_ID, 40)

        assert exc_info.value.available == 35
        assert exc_info.value.requested == 40
        assert ledger.get_balance(USER_ID).points == 35

    def test_debit_amount_must_be_positive(self):
        """Test that a zero debit is refused."""
        ledger = make_ledger()

        with pytest.raises(ValueError):
            ledger.guarded_debit(USER_ID, 0)

    def test_concurrent_debits_never_overdraw(self):
        """Test that concurrent debits never overdraw."""
        ledger = make_ledger()
        ledger.credit(USER_ID, 100)

        def attempt(_):
            try:
                ledger.guarded_debit(USER_ID, 15)
                return True
            except InsufficientFundsError:
                return False

        with ThreadPoolExecutor(max_workers=12) as pool:
            outcomes = list(pool.map(attempt, range(30)))

        assert outcomes.count(True) == 6
        assert outcomes.count(False) == 24
        assert ledger.get_balance(USER_ID).points == 10

    def test_concurrent_credit_and_debit(self):
        """Test interleaved credits and debits keep an exact, non-negative balance."""
        ledger = make_ledger()
        ops = ["credit"] * 60 + ["debit"] * 60
        random.Random(7).shuffle(ops)

        def run(op):
            try:
                if op == "credit":
                    return op, ledger.apply_delta(USER_ID, 2).points
                return op, ledger.guarded_debit(USER_ID, 3).points
            except InsufficientFundsError:
                return "refused", None

        with ThreadPoolExecutor(max_workers=12) as pool:
            results = list(pool.map(run, ops))

        debits = sum(1 for op, _ in results if op == "debit")
        assert all(points >= 0 for _, points in results if points is not None)
        assert ledger.get_balance(USER_ID).points == 60 * 2 - debits * 3
        assert ledger.get_balance(USER_ID).points >= 0


class TestCompareAndSet:
    """Tests for retrying on version conflicts."""

    def test_retries_after_conflict(self):
        """Test retrying after version conflicts."""
        accounts = ConflictingAccounts(conflicts=2)
        ledger = LedgerService(accounts, Settings(ledger_max_retries=5))

        account = ledger.apply_delta(USER_ID, 7)

        assert account.points == 7
        assert accounts.attempts == 3

    def test_gives_up_after_retry_budget(self):
        """Test giving up once the retry budget is spent."""
        accounts = ConflictingAccounts(conflicts=100)
        ledger = LedgerService(accounts, Settings(ledger_max_retries=3))

        with pytest.raises(LedgerConflictError):
            ledger.apply_delta(USER_ID, 7)

        assert accounts.attempts == 3
        assert ledger.get_balance(USER_ID).points == 0

    def test_stale_version_is_rejected_by_store(self):
        """Test that the store refuses a stale version."""
        accounts = InMemoryAccountRepository()
        account = accounts.create(USER_ID)
        accounts.compare_and_set(USER_ID, account.version, 10)

        with pytest.raises(ConcurrencyConflictError):
            accounts.compare_and_set(USER_ID, account.version, 99)

        assert accounts.get(USER_ID).points == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
