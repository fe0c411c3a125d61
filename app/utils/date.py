"""
Date parsing utilities for flexible date format handling.

Spreadsheet exports mix ISO dates, day-first numeric dates and Excel-rendered
timestamps. Everything is normalized to ``datetime.date`` for storage.
"""

import pandas as pd
from typing import Any, Optional
import re
from datetime import date, datetime
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

_ISO_PREFIX = re.compile(r'^\d{4}-\d{1,2}-\d{1,2}')
_NUMERIC_DATE = re.compile(r'^\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}$')


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.debug("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    # Emit a single summary when suppression starts, then periodically.
    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse messages after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _expand_two_digit_year(value: str) -> str:
    """DD/MM/YY -> DD/MM/YYYY using a 50-year pivot."""
    parts = re.split(r'[/.-]', value)
    if len(parts) == 3 and len(parts[2]) == 2:
        year = int(parts[2])
        parts[2] = str(2000 + year if year < 50 else 1900 + year)
        return "/".join(parts)
    return value


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None) -> Optional[date]:
    """
    Parse a date value from various formats.

    Supports formats:
    - ISO 8601: "2024-09-04", "2024-09-04T23:09:18Z"
    - DD/MM/YYYY, DD-MM-YYYY, DD/MM/YY (day-first unless impossible)
    - datetime/date objects coming from spreadsheet cells

    Returns:
        ``datetime.date`` or None if the value is empty or unparseable
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if text == "":
        return None

    attempts = []
    if _ISO_PREFIX.match(text):
        attempts.append(lambda v: pd.to_datetime(v, errors='raise'))
    elif _NUMERIC_DATE.match(text):
        text = _expand_two_digit_year(text)
        parts = re.split(r'[/.-]', text)
        first, second = int(parts[0]), int(parts[1])
        if first > 12:
            dayfirst = True
        elif second > 12:
            dayfirst = False
        else:
            dayfirst = settings.date_default_dayfirst
        attempts.append(lambda v, df=dayfirst: pd.to_datetime(v, dayfirst=df, errors='raise'))
    else:
        attempts.append(lambda v: pd.to_datetime(v, errors='raise'))

    last_error: Optional[Exception] = None
    for attempt in attempts:
        try:
            parsed = attempt(text)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            break
        if not 1900 < parsed.year < 2100:
            last_error = ValueError(f"year {parsed.year} out of range")
            break
        return parsed.date()

    _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None
