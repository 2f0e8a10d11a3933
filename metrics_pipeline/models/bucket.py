from __future__ import annotations

from dataclasses import dataclass, field

from .classified_value import ValueKind

"""AggregateBucket model.

A bucket is keyed by (primary cohort key, optional secondary key) and holds
a row counter, a running numeric sum, one kind counter set per classified
field and a set of named boolean flag counters.

Invariant: for every classified field, the kind counters sum to
``row_count``.
"""

__all__ = [
    "AggregateBucket",
]


def _zero_kinds() -> dict[ValueKind, int]:
    return {kind: 0 for kind in ValueKind}


@dataclass
class AggregateBucket:
    primary_key: str
    secondary_key: str | None = None
    row_count: int = 0
    numeric_sum: float = 0.0
    kind_counts: dict[str, dict[ValueKind, int]] = field(default_factory=dict)
    flag_counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(
        cls,
        primary_key: str,
        secondary_key: str | None,
        classified_fields: tuple[str, ...],
        flags: tuple[str, ...],
    ) -> AggregateBucket:
        return cls(
            primary_key=primary_key,
            secondary_key=secondary_key,
            kind_counts={name: _zero_kinds() for name in classified_fields},
            flag_counts={name: 0 for name in flags},
        )

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.primary_key, self.secondary_key or "")

    def count(self, field_name: str, kind: ValueKind) -> int:
        return self.kind_counts[field_name][kind]

    def field_total(self, field_name: str) -> int:
        return sum(self.kind_counts[field_name].values())

    def flag(self, name: str) -> int:
        return self.flag_counts[name]
