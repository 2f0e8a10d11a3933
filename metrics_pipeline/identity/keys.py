from __future__ import annotations

import math
import re
from typing import Any

"""Join key normalization.

Two raw values that normalize to the same key are the same real-world
entity. Both normalizers are idempotent and return ``""`` for "no key";
callers must skip such records instead of grouping them under a shared
empty key.
"""

__all__ = [
    "has_key",
    "normalize_email",
    "normalize_id",
]

# "+tag" segments immediately before an "@" (all of them, so one pass is final)
_PLUS_TAG = re.compile(r"\+[^@]*(?=@)")


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, float):
        if math.isnan(raw):
            return ""
        # Workbook cells holding integer ids come back as 123.0
        if raw.is_integer():
            return str(int(raw))
    try:
        return str(raw)
    except Exception:  # arbitrary __str__ implementations
        return ""


def normalize_email(raw: Any) -> str:
    """Lower-case, trim and fold plus-addressing: a+promo@x.com -> a@x.com."""
    s = _as_text(raw).strip().lower()
    if not s:
        return ""
    return _PLUS_TAG.sub("", s)


def normalize_id(raw: Any) -> str:
    """Trim an opaque id; case is preserved."""
    return _as_text(raw).strip()


def has_key(key: str) -> bool:
    return bool(key)
