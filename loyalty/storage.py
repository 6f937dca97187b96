import threading
from datetime import date, datetime, timezone
from typing import Optional, Protocol
from uuid import uuid4

from .errors import ConcurrencyConflictError, DuplicateFingerprintError
from .models import Account, Receipt, Reward


def local_day(moment: datetime) -> date:
    """Calendar day of ``moment`` in the server's local timezone."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone().date()


class AccountRepository(Protocol):
    def get(self, user_id: str) -> Optional[Account]: ...

    def create(self, user_id: str) -> Account: ...

    def compare_and_set(self, user_id: str, expected_version: int, points: int) -> Account: ...


class ReceiptRepository(Protocol):
    def insert(self, receipt: Receipt) -> Receipt: ...

    def find_by_fingerprint(self, fingerprint: str) -> Optional[Receipt]: ...

    def count_for_user_on_day(self, user_id: str, day: date) -> int: ...

    def list_for_user(self, user_id: str) -> list[Receipt]: ...

    def delete(self, receipt_id: str) -> None: ...


class RewardRepository(Protocol):
    def insert(self, reward: Reward) -> Reward: ...

    def get(self, reward_id: str) -> Optional[Reward]: ...

    def list_for_user(self, user_id: str) -> list[Reward]: ...

    def mark_redeemed(self, reward_id: str, redeemed_at: datetime) -> tuple[Optional[Reward], bool]: ...


class ImageStore(Protocol):
    def save(self, user_id: str, file_name: Optional[str], content_type: Optional[str], data: bytes) -> str: ...

    def delete(self, url: str) -> None: ...


class InMemoryAccountRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: dict[str, dict] = {}

    def get(self, user_id: str) -> Optional[Account]:
        with self._lock:
            data = self._accounts.get(user_id)
        return Account(**data) if data else None

    def create(self, user_id: str) -> Account:
        """Create a zero-point account, or return the existing one if another writer got there first."""
        with self._lock:
            data = self._accounts.setdefault(user_id, {"user_id": user_id, "points": 0, "version": 0})
        return Account(**data)

    def compare_and_set(self, user_id: str, expected_version: int, points: int) -> Account:
        with self._lock:
            data = self._accounts.get(user_id)
            if data is None or data["version"] != expected_version:
                current = None if data is None else data["version"]
                raise ConcurrencyConflictError(
                    f"Account {user_id} version is {current}, expected {expected_version}"
                )
            data = {"user_id": user_id, "points": points, "version": expected_version + 1}
            self._accounts[user_id] = data
        return Account(**data)


class InMemoryReceiptRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._receipts: dict[str, dict] = {}
        self._fingerprint_index: dict[str, str] = {}

    def insert(self, receipt: Receipt) -> Receipt:
        with self._lock:
            if receipt.image_fingerprint in self._fingerprint_index:
                raise DuplicateFingerprintError(receipt.image_fingerprint)
            self._receipts[receipt.id] = receipt.model_dump()
            self._fingerprint_index[receipt.image_fingerprint] = receipt.id
        return receipt

    def find_by_fingerprint(self, fingerprint: str) -> Optional[Receipt]:
        with self._lock:
            receipt_id = self._fingerprint_index.get(fingerprint)
            data = self._receipts.get(receipt_id) if receipt_id else None
        return Receipt(**data) if data else None

    def count_for_user_on_day(self, user_id: str, day: date) -> int:
        with self._lock:
            return sum(
                1 for r in self._receipts.values()
                if r["user_id"] == user_id and local_day(r["created_at"]) == day
            )

    def list_for_user(self, user_id: str) -> list[Receipt]:
        with self._lock:
            receipts = [Receipt(**r) for r in reversed(self._receipts.values()) if r["user_id"] == user_id]
        receipts.sort(key=lambda r: r.created_at, reverse=True)
        return receipts

    def delete(self, receipt_id: str) -> None:
        """Remove a receipt and release its fingerprint; unknown ids are ignored."""
        with self._lock:
            data = self._receipts.pop(receipt_id, None)
            if data and self._fingerprint_index.get(data["image_fingerprint"]) == receipt_id:
                del self._fingerprint_index[data["image_fingerprint"]]


class InMemoryRewardRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._rewards: dict[str, dict] = {}

    def insert(self, reward: Reward) -> Reward:
        with self._lock:
            self._rewards[reward.id] = reward.model_dump()
        return reward

    def get(self, reward_id: str) -> Optional[Reward]:
        with self._lock:
            data = self._rewards.get(reward_id)
        return Reward(**data) if data else None

    def list_for_user(self, user_id: str) -> list[Reward]:
        with self._lock:
            rewards = [Reward(**r) for r in reversed(self._rewards.values()) if r["user_id"] == user_id]
        rewards.sort(key=lambda r: r.created_at, reverse=True)
        return rewards

    def mark_redeemed(self, reward_id: str, redeemed_at: datetime) -> tuple[Optional[Reward], bool]:
        """Flip ``redeemed`` to true if it is still false.

        Returns the stored reward and whether this call performed the transition.
        """
        with self._lock:
            data = self._rewards.get(reward_id)
            if data is None:
                return None, False
            if data["redeemed"]:
                return Reward(**data), False
            data = {**data, "redeemed": True, "redeemed_at": redeemed_at}
            self._rewards[reward_id] = data
        return Reward(**data), True


class InMemoryImageStore:
    def __init__(self, base_url: str = "memory://receipts"):
        self.base_url = base_url
        self.blobs: dict[str, tuple[str, bytes]] = {}

    def save(self, user_id: str, file_name: Optional[str], content_type: Optional[str], data: bytes) -> str:
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        blob_name = f"{user_id}/{stamp}-{uuid4()}-{file_name or 'receipt.jpg'}"
        self.blobs[blob_name] = (content_type or "image/jpeg", data)
        return f"{self.base_url}/{blob_name}"

    def delete(self, url: str) -> None:
        self.blobs.pop(url.removeprefix(f"{self.base_url}/"), None)


class InMemoryStorage:
    def __init__(self):
        self.accounts = InMemoryAccountRepository()
        self.receipts = InMemoryReceiptRepository()
        self.rewards = InMemoryRewardRepository()
        self.images = InMemoryImageStore()
