class LoyaltyError(Exception):
    pass


class InsufficientFundsError(LoyaltyError):
    def __init__(self, user_id: str, requested: int, available: int):
        super().__init__(f"User {user_id} has {available} points, {requested} required")
        self.user_id = user_id
        self.requested = requested
        self.available = available


class LedgerConflictError(LoyaltyError):
    pass


class UnknownTierError(LoyaltyError):
    pass


class InvalidRewardRequestError(LoyaltyError):
    pass


class ExtractionError(LoyaltyError):
    pass


class StorageError(LoyaltyError):
    pass


class ConcurrencyConflictError(StorageError):
    pass


class DuplicateFingerprintError(StorageError):
    def __init__(self, fingerprint: str):
        super().__init__(f"A receipt with fingerprint {fingerprint} already exists")
        self.fingerprint = fingerprint
