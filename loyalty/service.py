from datetime import datetime
from typing import Callable, Optional

from .config import Settings, get_settings
from .extractor import DocumentExtractor, DocumentIntelligenceExtractor
from .ledger import LedgerService
from .receipts import ReceiptService, local_now
from .redemption import RedemptionService
from .storage import InMemoryStorage


class LoyaltyServices:
    """Wires the ledger, receipt pipeline and redemption service onto one set of stores."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        extractor: Optional[DocumentExtractor] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.extractor = extractor or DocumentIntelligenceExtractor(self.settings)

        self.ledger = LedgerService(self.storage.accounts, self.settings)
        self.receipts = ReceiptService(
            self.ledger,
            self.extractor,
            receipts=self.storage.receipts,
            images=self.storage.images,
            settings=self.settings,
            clock=clock,
        )
        self.redemption = RedemptionService(self.ledger, self.storage.rewards, self.settings)


_services: Optional[LoyaltyServices] = None


def get_services() -> LoyaltyServices:
    global _services
    if _services is None:
        _services = LoyaltyServices()
    return _services
