import io
import re
from datetime import date, datetime, time as dt_time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError

from .config import Settings, get_settings
from .dates import NUMERIC_DATE_PATTERN, normalize_receipt_date
from .errors import ExtractionError
from .models import ExtractionResult, MerchantMatch
from .observability import get_logger

logger = get_logger(__name__)

AMOUNT_FIELDS = ("Total", "TransactionTotal", "Subtotal", "SubTotal")
DATE_FIELDS = ("TransactionDate", "TransactionDateTime", "PurchaseDate")


class DocumentExtractor(Protocol):
    def extract(self, image: bytes) -> ExtractionResult: ...


def _parse_amount_text(text: str) -> Optional[Decimal]:
    normalized = re.sub(r"[^\d.]", "", text.replace(",", "."))
    if not normalized:
        return None
    # "1.234.50" style leftovers: keep the last separator as the decimal point
    if normalized.count(".") > 1:
        head, _, tail = normalized.rpartition(".")
        normalized = head.replace(".", "") + "." + tail
    try:
        return Decimal(normalized)
    except InvalidOperation:
        return None


def extract_amount(fields: dict) -> Optional[Decimal]:
    field = next((fields[name] for name in AMOUNT_FIELDS if fields.get(name)), None)
    if not field:
        return None

    currency = field.get("valueCurrency") or {}
    for raw in (currency.get("amount"), field.get("valueNumber")):
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return Decimal(str(raw))

    content = field.get("content")
    if isinstance(content, str):
        return _parse_amount_text(content)
    return None


def _field_text(field: Optional[dict]) -> Optional[str]:
    if not field:
        return None
    for key in ("valueString", "content"):
        value = field.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_merchant_name(fields: dict, content: str) -> Optional[str]:
    name = _field_text(fields.get("MerchantName"))
    if name:
        return name
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    return lines[0] if lines else None


def detect_merchant(fields: dict, content: str, settings: Settings) -> MerchantMatch:
    haystack = " ".join(p for p in (_field_text(fields.get("MerchantName")), content) if p).lower()
    if not haystack.strip():
        return MerchantMatch.UNKNOWN

    if any(keyword.lower() in haystack for keyword in settings.merchant_keywords):
        return MerchantMatch.CONFIRMED
    for code in settings.merchant_short_codes:
        if re.search(rf"\b{re.escape(code.lower())}\b", haystack):
            return MerchantMatch.CONFIRMED
    return MerchantMatch.MISMATCH


def extract_transaction_date(fields: dict, content: str, today: date) -> tuple[Optional[date], Optional[str]]:
    date_fields = [fields[name] for name in DATE_FIELDS if fields.get(name)]

    raw_text = None
    for field in date_fields:
        for key in ("content", "valueString"):
            value = field.get(key)
            if isinstance(value, str) and value.strip():
                raw_text = value.strip()
                break
        if raw_text:
            break

    if raw_text is None and content:
        match = NUMERIC_DATE_PATTERN.search(content)
        if match:
            raw_text = match.group(0)

    if raw_text:
        return normalize_receipt_date(raw_text, today)

    for field in date_fields:
        value = field.get("valueDate")
        if isinstance(value, str):
            try:
                return date.fromisoformat(value[:10]), None
            except ValueError:
                continue
    return None, None


def interpret_analysis(
    analyze_result: dict, today: date, settings: Optional[Settings] = None
) -> ExtractionResult:
    """Map a prebuilt-receipt analysis document onto an ExtractionResult."""
    settings = settings or get_settings()
    documents = analyze_result.get("documents") or []
    if not documents:
        return ExtractionResult()

    fields = documents[0].get("fields") or {}
    content = analyze_result.get("content") or ""

    transaction_date, raw_date_text = extract_transaction_date(fields, content, today)
    return ExtractionResult(
        amount=extract_amount(fields),
        merchant_name=extract_merchant_name(fields, content),
        merchant_match=detect_merchant(fields, content, settings),
        transaction_date=datetime.combine(transaction_date, dt_time.min) if transaction_date else None,
        raw_date_text=raw_date_text,
    )


class DocumentIntelligenceExtractor:
    """Runs the prebuilt-receipt model through the Document Intelligence SDK."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[DocumentIntelligenceClient] = None):
        self.settings = settings or get_settings()
        self._client = client

    def _sdk(self) -> DocumentIntelligenceClient:
        if self._client is None:
            timeout = self.settings.extractor_timeout_seconds
            self._client = DocumentIntelligenceClient(
                endpoint=self.settings.docint_endpoint,
                credential=AzureKeyCredential(self.settings.docint_key),
                connection_timeout=timeout,
                read_timeout=timeout,
            )
        return self._client

    def extract(self, image: bytes) -> ExtractionResult:
        if not self.settings.extractor_configured:
            raise ExtractionError("Document extractor not configured (LOYALTY_DOCINT_ENDPOINT / LOYALTY_DOCINT_KEY)")
        try:
            analyze_result = self._analyze(image)
        except AzureError as exc:
            raise ExtractionError(f"Document analysis request failed: {exc}") from exc

        try:
            return interpret_analysis(analyze_result, date.today(), self.settings)
        except (AttributeError, TypeError, KeyError) as exc:
            raise ExtractionError(f"Unexpected analysis payload: {exc}") from exc

    def _analyze(self, image: bytes) -> dict[str, Any]:
        timeout = self.settings.extractor_timeout_seconds
        poller = self._sdk().begin_analyze_document(
            self.settings.docint_model,
            body=io.BytesIO(image),
            polling_interval=self.settings.extractor_poll_interval_seconds,
        )
        poller.wait(timeout=timeout)
        if not poller.done():
            raise ExtractionError(f"Document analysis did not finish within {timeout}s")

        logger.debug("Document analysis finished with status %s", poller.status())
        result = poller.result()
        payload = result.as_dict() if result is not None else {}
        if not isinstance(payload, dict):
            raise ExtractionError(f"Analysis result was {type(payload).__name__}, expected an object")
        return payload
