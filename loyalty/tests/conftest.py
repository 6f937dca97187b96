import base64
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest

from loyalty.config import Settings
from loyalty.errors import ExtractionError
from loyalty.models import ExtractionResult, MerchantMatch
from loyalty.service import LoyaltyServices
from loyalty.storage import InMemoryStorage

# Naive on purpose: the server's local day is the naive date
FIXED_NOW = datetime(2025, 4, 3, 12, 0, 0)


class FakeExtractor:
    def __init__(self, result: Optional[ExtractionResult] = None, error: Optional[Exception] = None):
        self.result = result or ExtractionResult()
        self.error = error
        self.calls = 0

    def extract(self, image: bytes) -> ExtractionResult:
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


def good_extraction(amount="42.50", days_ago=0) -> ExtractionResult:
    transaction_date = datetime(2025, 4, 3) - timedelta(days=days_ago)
    return ExtractionResult(
        amount=Decimal(amount) if amount is not None else None,
        merchant_name="BURGER KING #123",
        merchant_match=MerchantMatch.CONFIRMED,
        transaction_date=transaction_date,
        raw_date_text=transaction_date.strftime("%d/%m/%Y"),
    )


def principal_header(user_id: str) -> dict:
    encoded = base64.b64encode(json.dumps({"userId": user_id}).encode()).decode()
    return {"x-ms-client-principal": encoded}


@pytest.fixture
def settings():
    return Settings(dev_user_id=None, ledger_max_retries=1000)


@pytest.fixture
def extractor():
    return FakeExtractor(good_extraction())


@pytest.fixture
def failing_extractor():
    return FakeExtractor(error=ExtractionError("service unreachable"))


@pytest.fixture
def services(settings, extractor):
    return LoyaltyServices(
        storage=InMemoryStorage(),
        extractor=extractor,
        settings=settings,
        clock=lambda: FIXED_NOW,
    )
