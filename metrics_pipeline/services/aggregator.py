from __future__ import annotations

from collections.abc import Iterable, Mapping

from metrics_pipeline.models.bucket import AggregateBucket
from metrics_pipeline.models.classified_value import BLANK_KEY, ClassifiedValue

"""Cohort aggregation.

Records are grouped into buckets keyed first by a coarse cohort key (month,
snapshot date, ...) and, when a detail view is requested, by a secondary
key as well. Every ingested record lands in exactly one summary bucket and,
with ``detail=True``, exactly one detail bucket; blank keys are replaced by
the ``(blank)`` sentinel rather than dropped.

Buckets are emitted sorted lexicographically by (primary, secondary) so
that two runs over the same input produce identical, diffable reports.
"""

__all__ = [
    "CohortAggregator",
]


def _key(value: str | None) -> str:
    if value is None:
        return BLANK_KEY
    text = str(value).strip()
    return text or BLANK_KEY


class CohortAggregator:
    """Accumulates classification counts, numeric sums and flag counts.

    Parameters
    ----------
    classified_fields: names of the classified fields counted per bucket
    flags: names of boolean counters (e.g. "converted")
    detail: also keep one bucket per (primary, secondary) pair
    """

    def __init__(
        self,
        classified_fields: Iterable[str] = (),
        *,
        flags: Iterable[str] = (),
        detail: bool = False,
    ) -> None:
        self.classified_fields = tuple(classified_fields)
        self.flags = tuple(flags)
        self.detail = detail
        self._summary: dict[str, AggregateBucket] = {}
        self._detail: dict[tuple[str, str], AggregateBucket] = {}
        self._rows = 0

    @property
    def rows_ingested(self) -> int:
        return self._rows

    def _bucket(self, primary: str, secondary: str | None) -> AggregateBucket:
        if secondary is None:
            bucket = self._summary.get(primary)
            if bucket is None:
                bucket = AggregateBucket.empty(primary, None, self.classified_fields, self.flags)
                self._summary[primary] = bucket
            return bucket
        pair = (primary, secondary)
        bucket = self._detail.get(pair)
        if bucket is None:
            bucket = AggregateBucket.empty(primary, secondary, self.classified_fields, self.flags)
            self._detail[pair] = bucket
        return bucket

    def ingest(
        self,
        primary_key: str | None,
        secondary_key: str | None = None,
        classified: Mapping[str, ClassifiedValue] | None = None,
        numeric: ClassifiedValue | None = None,
        flags: Mapping[str, bool] | None = None,
    ) -> None:
        """Add one record to its summary (and detail) bucket.

        ``classified`` must hold exactly one value per configured field;
        ``numeric`` contributes its amount (0 for non-numeric kinds) to the
        running sum.
        """
        classified = classified or {}
        missing = [f for f in self.classified_fields if f not in classified]
        if missing:
            raise KeyError(f"classified values missing for fields: {missing}")
        unknown = [f for f in (flags or {}) if f not in self.flags]
        if unknown:
            raise KeyError(f"unknown flags: {unknown}")

        primary = _key(primary_key)
        targets = [self._bucket(primary, None)]
        if self.detail:
            targets.append(self._bucket(primary, _key(secondary_key)))

        amount = numeric.amount if numeric is not None else 0.0
        for bucket in targets:
            bucket.row_count += 1
            bucket.numeric_sum += amount
            for name in self.classified_fields:
                bucket.kind_counts[name][classified[name].kind] += 1
            for name, value in (flags or {}).items():
                if value:
                    bucket.flag_counts[name] += 1
        self._rows += 1

    def summary_buckets(self) -> list[AggregateBucket]:
        return [self._summary[k] for k in sorted(self._summary)]

    def detail_buckets(self) -> list[AggregateBucket]:
        return [self._detail[k] for k in sorted(self._detail)]
