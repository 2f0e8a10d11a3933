from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

"""Classification result for a single raw cell value.

Derived on every read, never stored: source cells may change between runs.
"""

__all__ = [
    "ValueKind",
    "ClassifiedValue",
    "BLANK_KEY",
]

# Literal key used for blank cohort / secondary keys so no row is dropped.
BLANK_KEY = "(blank)"


class ValueKind(Enum):
    """Semantic kind of a raw cell value.

    - BLANK: absent, NaN/NaT or empty after trimming
    - NUMERIC: native finite number
    - NUMERIC_AS_TEXT: text matching ``-?digits(.digits)?``
    - DATE: native date/datetime with a valid instant
    - DATE_AS_TEXT: text (or a serial day number in a date field) that parses as a date
    - OPAQUE_TEXT: anything else
    """
    BLANK = "blank"
    NUMERIC = "numeric"
    NUMERIC_AS_TEXT = "numeric_as_text"
    DATE = "date"
    DATE_AS_TEXT = "date_as_text"
    OPAQUE_TEXT = "opaque_text"

    @property
    def is_numeric(self) -> bool:
        return self in (ValueKind.NUMERIC, ValueKind.NUMERIC_AS_TEXT)

    @property
    def is_date(self) -> bool:
        return self in (ValueKind.DATE, ValueKind.DATE_AS_TEXT)


@dataclass(frozen=True)
class ClassifiedValue:
    """Kind plus canonical form of a cell value.

    ``numeric_value`` is set for the numeric kinds. ``normalized_date`` is
    ``YYYY-MM-DD`` for DATE and ``YYYY-MM`` for DATE_AS_TEXT. ``text`` keeps
    the trimmed text for OPAQUE_TEXT so it can serve as a literal key.
    """
    kind: ValueKind
    numeric_value: float | None = None
    normalized_date: str | None = None
    text: str | None = None

    @property
    def amount(self) -> float:
        """Numeric contribution to a running sum (0 for non-numeric kinds)."""
        if self.kind.is_numeric and self.numeric_value is not None:
            return self.numeric_value
        return 0.0
