"""
Receipt date parsing.

Receipts print dates as ``D/M/Y`` or ``M/D/Y`` with no way to tell the two
apart from the text alone. Both readings are built and the one closest to
today wins, since an accepted receipt is at most a couple of days old.
"""

import re
from datetime import date, datetime
from typing import Optional

from dateutil import parser as date_parser

NUMERIC_DATE_PATTERN = re.compile(r"(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})")


def _expand_year(year: int) -> int:
    if year < 100:
        return 1900 + year if year >= 70 else 2000 + year
    return year


def _candidate(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def disambiguate(first: int, second: int, year: int, today: date) -> Optional[date]:
    year = _expand_year(year)
    candidates = []

    day_first = _candidate(year, second, first)
    if day_first:
        candidates.append(day_first)
    if first <= 12 and second <= 31:
        month_first = _candidate(year, first, second)
        if month_first and month_first not in candidates:
            candidates.append(month_first)

    if not candidates:
        return None
    # min() keeps the first candidate on ties, so day-first wins those
    return min(candidates, key=lambda d: abs((d - today).days))


def normalize_receipt_date(raw_text: Optional[str], today: date) -> tuple[Optional[date], Optional[str]]:
    """Resolve a raw date string to a calendar date.

    Returns ``(date, raw_text)``; the date is None when nothing plausible
    could be read, the raw text is None only when there was no text.
    """
    if not raw_text or not raw_text.strip():
        return None, None
    text = raw_text.strip()

    match = NUMERIC_DATE_PATTERN.search(text)
    if match is None:
        try:
            return date_parser.parse(text, default=datetime(today.year, today.month, today.day)).date(), text
        except (ValueError, OverflowError):
            return None, text

    first, second, year = (int(g) for g in match.groups())
    return disambiguate(first, second, year, today), text


def receipt_age_days(transaction_date: date, today: date) -> int:
    """Whole calendar days between the receipt and today; negative for future dates."""
    return (today - transaction_date).days
