from __future__ import annotations

import math
import re
import warnings
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

import numpy as np
import pandas as pd

from metrics_pipeline.models.classified_value import BLANK_KEY, ClassifiedValue, ValueKind

"""Cell value classification.

Raw cells arrive from the workbook reader as native numbers, native dates,
text, or nothing at all, and the same column frequently mixes all of them
(a connector writes ``150.5`` one day and ``"150.5"`` the next). Everything
downstream keys on the kind returned here, so the rules are applied in one
place and in a fixed order:

1. absent / NaN / NaT / empty after trim      -> blank
2. native date with a valid instant           -> date (``YYYY-MM-DD``, UTC day)
3. native finite number                       -> numeric
4. text matching ``-?digits(.digits)?``       -> numeric_as_text
   text that parses as a date                 -> date_as_text (``YYYY-MM``)
   anything else                              -> opaque_text

Role variants exist for designated fields: ``classify_date_field`` reads a
plain number as a spreadsheet serial day (epoch 1899-12-30) and
``classify_amount`` never treats a date as anything but opaque text.

Every function in this module is total: malformed input maps to a kind, it
never raises.
"""

__all__ = [
    "classify",
    "classify_amount",
    "classify_date_field",
    "cohort_key",
    "day_key",
    "is_truthy",
    "month_key",
    "serial_to_datetime",
    "to_instant",
]

_NUMERIC_TEXT = re.compile(r"^-?\d+(\.\d+)?$")
_DIGITS_ONLY = re.compile(r"^\d+$")
_HAS_DIGIT = re.compile(r"\d")
# Clock times with no calendar part ("12:30", "9:05:10 pm", "3pm").
_TIME_ONLY = re.compile(
    r"^\d{1,2}(?:(?::\d{2}){1,2}(?:\.\d+)?\s*(?:[ap]\.?m\.?)?|\s*[ap]\.?m\.?)"
    r"\s*(?:z|utc|gmt|[+-]\d{2}:?\d{2})?$",
    re.IGNORECASE,
)

SERIAL_EPOCH = datetime(1899, 12, 30, tzinfo=UTC)
# Unix timestamps above this are milliseconds, below are seconds.
EPOCH_MS_THRESHOLD = 1e12

_TRUTHY = frozenset({"true", "yes", "1"})


def day_key(dt: datetime) -> str:
    return f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"


def month_key(dt: datetime) -> str:
    return f"{dt.year:04d}-{dt.month:02d}"


def _is_missing(raw: Any) -> bool:
    if raw is None or raw is pd.NaT or raw is pd.NA:
        return True
    if isinstance(raw, (float, np.floating)):
        return math.isnan(raw)
    if isinstance(raw, np.datetime64):
        return bool(np.isnat(raw))
    return False


def _native_datetime(raw: Any) -> datetime | None:
    """UTC-aware datetime for native date types, None otherwise."""
    try:
        if isinstance(raw, np.datetime64):
            raw = pd.Timestamp(raw)
        if isinstance(raw, datetime):
            if raw.tzinfo is None:
                return raw.replace(tzinfo=UTC)
            return raw.astimezone(UTC)
        if isinstance(raw, date):
            return datetime(raw.year, raw.month, raw.day, tzinfo=UTC)
    except (ValueError, OverflowError, OSError):
        return None
    return None


def _native_number(raw: Any) -> float | None:
    """Finite float for native numeric types; bools are not numbers here."""
    if isinstance(raw, (bool, np.bool_)):
        return None
    if isinstance(raw, (int, float, Decimal, np.integer, np.floating)):
        try:
            value = float(raw)
        except (OverflowError, ValueError):
            return None
        return value if math.isfinite(value) else None
    return None


def _format_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _text(raw: Any) -> str:
    try:
        return str(raw).strip()
    except Exception:  # arbitrary __str__ implementations
        return ""


def _parse_text_date(text: str) -> datetime | None:
    # Words such as "today" or "now" must stay opaque text, and so must bare
    # clock times, which the parser would otherwise pin to the current date.
    if not _HAS_DIGIT.search(text) or _TIME_ONLY.match(text):
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            ts = pd.to_datetime(text, utc=True)
        except (ValueError, TypeError, OverflowError):
            return None
    if ts is pd.NaT or pd.isna(ts):
        return None
    try:
        return ts.to_pydatetime()
    except (ValueError, OverflowError):
        return None


def serial_to_datetime(serial: float) -> datetime | None:
    """Convert a spreadsheet serial day count (epoch 1899-12-30) to UTC."""
    try:
        return SERIAL_EPOCH + timedelta(days=float(serial))
    except (OverflowError, ValueError):
        return None


def _classify_text(text: str, *, numeric_text: bool = True) -> ClassifiedValue:
    if not text:
        return ClassifiedValue(ValueKind.BLANK)
    if numeric_text and _NUMERIC_TEXT.match(text):
        value = float(text)
        if not math.isfinite(value):
            return ClassifiedValue(ValueKind.OPAQUE_TEXT, text=text)
        return ClassifiedValue(ValueKind.NUMERIC_AS_TEXT, numeric_value=value, text=text)
    parsed = _parse_text_date(text)
    if parsed is not None:
        return ClassifiedValue(ValueKind.DATE_AS_TEXT, normalized_date=month_key(parsed), text=text)
    return ClassifiedValue(ValueKind.OPAQUE_TEXT, text=text)


def classify(raw: Any) -> ClassifiedValue:
    """Classify one raw cell value (general rules, see module docstring)."""
    if _is_missing(raw):
        return ClassifiedValue(ValueKind.BLANK)

    dt = _native_datetime(raw)
    if dt is not None:
        return ClassifiedValue(ValueKind.DATE, normalized_date=day_key(dt))

    number = _native_number(raw)
    if number is not None:
        return ClassifiedValue(ValueKind.NUMERIC, numeric_value=number, text=_format_number(number))

    return _classify_text(_text(raw))


def classify_date_field(raw: Any) -> ClassifiedValue:
    """Classify a cell from a field that is expected to hold a date.

    A plain finite number is a spreadsheet serial day and becomes
    DATE_AS_TEXT with its month key. Numeric-looking text is not treated as
    an amount: it goes through the generic date parse.
    """
    if _is_missing(raw):
        return ClassifiedValue(ValueKind.BLANK)

    dt = _native_datetime(raw)
    if dt is not None:
        return ClassifiedValue(ValueKind.DATE, normalized_date=day_key(dt))

    number = _native_number(raw)
    if number is not None:
        converted = serial_to_datetime(number)
        if converted is None:
            return ClassifiedValue(ValueKind.OPAQUE_TEXT, text=_format_number(number))
        return ClassifiedValue(
            ValueKind.DATE_AS_TEXT,
            normalized_date=month_key(converted),
            text=_format_number(number),
        )

    return _classify_text(_text(raw), numeric_text=False)


def classify_amount(raw: Any) -> ClassifiedValue:
    """Classify a cell from an amount field; dates count as opaque text."""
    value = classify(raw)
    if value.kind.is_date:
        return ClassifiedValue(ValueKind.OPAQUE_TEXT, text=value.text or _text(raw))
    return value


def cohort_key(value: ClassifiedValue, grain: str = "month") -> str:
    """Grouping key for a classified cohort value.

    DATE keys are day- or month-grained per ``grain``; DATE_AS_TEXT always
    carries its month key; blank values use the ``(blank)`` sentinel; any
    other kind keys on its trimmed text.
    """
    if value.kind is ValueKind.BLANK:
        return BLANK_KEY
    if value.kind is ValueKind.DATE and value.normalized_date:
        return value.normalized_date if grain == "day" else value.normalized_date[:7]
    if value.kind is ValueKind.DATE_AS_TEXT and value.normalized_date:
        return value.normalized_date
    return value.text or BLANK_KEY


def to_instant(raw: Any) -> datetime | None:
    """Best-effort UTC instant for date comparisons (trial windows, ordering).

    Digits-only text is a unix timestamp (seconds, or milliseconds above
    1e12); plain numbers are serial days; other text goes through the
    generic date parse. Returns None when nothing sensible can be derived.
    """
    if _is_missing(raw):
        return None

    dt = _native_datetime(raw)
    if dt is not None:
        return dt

    number = _native_number(raw)
    if number is not None:
        return serial_to_datetime(number)

    text = _text(raw)
    if not text:
        return None
    if _DIGITS_ONLY.match(text):
        try:
            n = int(text)
            seconds = n / 1000 if n > EPOCH_MS_THRESHOLD else n
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, ValueError, OSError):
            return None
    return _parse_text_date(text)


def is_truthy(raw: Any) -> bool:
    """True for boolean True or the texts true / yes / 1 (any case)."""
    if raw is True or (isinstance(raw, np.bool_) and bool(raw)):
        return True
    if _is_missing(raw) or raw is False:
        return False
    number = _native_number(raw)
    if number is not None:
        return number == 1
    return _text(raw).lower() in _TRUTHY
