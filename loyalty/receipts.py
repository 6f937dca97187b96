import hashlib
import math
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from .config import Settings, get_settings
from .dates import receipt_age_days
from .errors import DuplicateFingerprintError, ExtractionError, LedgerConflictError, StorageError
from .extractor import DocumentExtractor
from .ledger import LedgerService
from .models import (
    ExtractionResult,
    MerchantMatch,
    ReasonCode,
    Receipt,
    SubmissionResult,
    ValidationOutcome,
    ValidationReason,
)
from .observability import get_logger
from .storage import ImageStore, InMemoryImageStore, InMemoryReceiptRepository, ReceiptRepository, local_day

logger = get_logger(__name__)

REASON_MESSAGES = {
    ReasonCode.DUPLICATE_RECEIPT: "This receipt has already been submitted.",
    ReasonCode.MERCHANT_NOT_BURGER_KING: "Could not detect 'Burger King' or 'BK' on the receipt.",
    ReasonCode.RECEIPT_TOO_OLD: "Receipt date is older than the allowed {max_age} days.",
    ReasonCode.RECEIPT_IN_FUTURE: "Receipt date appears to be in the future.",
    ReasonCode.DATE_NOT_DETECTED: "Could not read a transaction date on the receipt.",
    ReasonCode.INVALID_AMOUNT: "Detected amount on receipt is invalid; a default amount was used.",
    ReasonCode.DAILY_LIMIT_REACHED: "You can submit at most {limit} receipts per day.",
}


def local_now() -> datetime:
    return datetime.now().astimezone()


def image_fingerprint(image: bytes) -> str:
    return hashlib.sha256(image).hexdigest()


def points_for_amount(amount: Decimal, settings: Settings) -> int:
    capped = min(amount, Decimal(str(settings.points_amount_cap)))
    if capped <= 0:
        return 0
    return math.floor(capped / Decimal(settings.points_per_currency_unit))


class ReceiptValidator:
    """Classifies a receipt submission as accepted or rejected.

    Checks run in a fixed order: duplicate fingerprint (short-circuits before
    any extraction), merchant, transaction date, amount, daily cap. Only
    INVALID_AMOUNT is advisory; every other reason blocks acceptance.
    """

    def __init__(
        self,
        receipts: ReceiptRepository,
        extractor: DocumentExtractor,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.receipts = receipts
        self.extractor = extractor
        self.settings = settings or get_settings()
        self.clock = clock

    def reason(self, code: ReasonCode) -> ValidationReason:
        message = REASON_MESSAGES[code].format(
            max_age=self.settings.max_receipt_age_days, limit=self.settings.daily_receipt_limit
        )
        return ValidationReason(code=code, message=message)

    def evaluate(self, user_id: str, image: bytes) -> ValidationOutcome:
        fingerprint = image_fingerprint(image)
        if self.receipts.find_by_fingerprint(fingerprint) is not None:
            return ValidationOutcome(fingerprint=fingerprint, reasons=[self.reason(ReasonCode.DUPLICATE_RECEIPT)])

        extraction = self._extract(image)
        today = local_day(self.clock())
        reasons: list[ValidationReason] = []

        if extraction.merchant_match is MerchantMatch.MISMATCH:
            reasons.append(self.reason(ReasonCode.MERCHANT_NOT_BURGER_KING))

        date_code = self._check_date(extraction, today)
        if date_code:
            reasons.append(self.reason(date_code))

        amount = extraction.amount
        if amount is None or amount <= 0:
            reasons.append(self.reason(ReasonCode.INVALID_AMOUNT))
            amount = Decimal(str(self.settings.fallback_amount))

        if self.receipts.count_for_user_on_day(user_id, today) >= self.settings.daily_receipt_limit:
            reasons.append(self.reason(ReasonCode.DAILY_LIMIT_REACHED))

        return ValidationOutcome(
            fingerprint=fingerprint,
            reasons=reasons,
            amount=amount,
            points_earned=points_for_amount(amount, self.settings),
            extraction=extraction,
        )

    def _extract(self, image: bytes) -> ExtractionResult:
        try:
            return self.extractor.extract(image)
        except ExtractionError as exc:
            logger.warning("Receipt extraction failed, continuing without fields: %s", exc)
            return ExtractionResult()

    def _check_date(self, extraction: ExtractionResult, today) -> Optional[ReasonCode]:
        if extraction.transaction_date is None:
            return ReasonCode.DATE_NOT_DETECTED
        age = receipt_age_days(local_day(extraction.transaction_date), today)
        if age > self.settings.max_receipt_age_days:
            return ReasonCode.RECEIPT_TOO_OLD
        if age < -self.settings.future_tolerance_days:
            return ReasonCode.RECEIPT_IN_FUTURE
        return None


class ReceiptService:
    def __init__(
        self,
        ledger: LedgerService,
        extractor: DocumentExtractor,
        receipts: Optional[ReceiptRepository] = None,
        images: Optional[ImageStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.ledger = ledger
        self.receipts = receipts or InMemoryReceiptRepository()
        self.images = images or InMemoryImageStore()
        self.clock = clock
        self.validator = ReceiptValidator(self.receipts, extractor, settings, clock)

    def submit(
        self,
        user_id: str,
        image: bytes,
        file_name: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> SubmissionResult:
        outcome = self.validator.evaluate(user_id, image)
        if not outcome.accepted:
            logger.info("Rejected receipt from user %s: %s",
                        user_id, ", ".join(r.code.value for r in outcome.reasons))
            return SubmissionResult(outcome=outcome)

        blob_url = self.images.save(user_id, file_name, content_type, image)
        extraction = outcome.extraction
        receipt = Receipt(
            id=str(uuid4()),
            user_id=user_id,
            image_fingerprint=outcome.fingerprint,
            amount=outcome.amount,
            points_earned=outcome.points_earned,
            merchant_name=extraction.merchant_name,
            transaction_date=extraction.transaction_date,
            raw_date_text=extraction.raw_date_text,
            blob_url=blob_url,
            created_at=self.clock(),
        )
        try:
            self.receipts.insert(receipt)
        except DuplicateFingerprintError:
            logger.info("Receipt from user %s lost a duplicate race at insert", user_id)
            self.images.delete(blob_url)
            outcome = outcome.model_copy(
                update={"reasons": [self.validator.reason(ReasonCode.DUPLICATE_RECEIPT)]}
            )
            return SubmissionResult(outcome=outcome)

        try:
            account = self.ledger.credit(user_id, outcome.points_earned)
        except (LedgerConflictError, StorageError):
            # a stored receipt always has its points credited
            logger.error("Could not credit user %s for receipt %s, discarding it", user_id, receipt.id)
            self.receipts.delete(receipt.id)
            self.images.delete(blob_url)
            raise

        logger.info("Accepted receipt %s from user %s: %s points, balance %s",
                    receipt.id, user_id, outcome.points_earned, account.points)
        return SubmissionResult(outcome=outcome, receipt=receipt, account=account)
