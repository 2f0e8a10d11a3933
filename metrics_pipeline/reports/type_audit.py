from __future__ import annotations

from metrics_pipeline.classify.values import classify_amount, classify_date_field, cohort_key
from metrics_pipeline.models.bucket import AggregateBucket
from metrics_pipeline.models.classified_value import ValueKind
from metrics_pipeline.models.step_result import JobResult
from metrics_pipeline.services.aggregator import CohortAggregator
from metrics_pipeline.services.assembler import ReportTable, assemble, publish, stack_blocks
from metrics_pipeline.tables.reader import normalize_header, require_columns

from .base import ReportContext, read_table

"""Type audit of a snapshot table.

Counts, per cohort key (snapshot day by default), how the cells of the
numeric field, the secondary date field and the cohort field itself are
typed, and sums the numeric field. Below the summary block, after one blank
row, a detail block breaks the same counts down per secondary key.

Field names and the cohort grain come from ``ReportSettings``.
"""

__all__ = [
    "build_type_audit",
    "detail_columns",
    "summary_columns",
]

NUMERIC = "numeric"
SECONDARY = "secondary"
COHORT = "cohort"

_NUMERIC_KINDS = (ValueKind.NUMERIC, ValueKind.NUMERIC_AS_TEXT, ValueKind.BLANK, ValueKind.OPAQUE_TEXT)
_DATE_KINDS = (ValueKind.DATE, ValueKind.DATE_AS_TEXT, ValueKind.OPAQUE_TEXT, ValueKind.BLANK)


def _kind_columns(prefix: str, kinds: tuple[ValueKind, ...]) -> tuple[str, ...]:
    return tuple(f"{prefix}{kind.value}_count" for kind in kinds)


def summary_columns(secondary_field: str, cohort_field: str) -> tuple[str, ...]:
    return (
        ("cohort_key", "row_count", "numeric_field_sum")
        + _kind_columns("", _NUMERIC_KINDS)
        + _kind_columns(f"{secondary_field}_", _DATE_KINDS)
        + _kind_columns(f"{cohort_field}_", _DATE_KINDS)
    )


def detail_columns(secondary_field: str) -> tuple[str, ...]:
    return (
        ("cohort_key", "secondary_key", "row_count", "numeric_field_sum")
        + _kind_columns("", _NUMERIC_KINDS)
        + _kind_columns(f"{secondary_field}_", _DATE_KINDS)
    )


def _counts(bucket: AggregateBucket, name: str, kinds: tuple[ValueKind, ...]) -> tuple[int, ...]:
    return tuple(bucket.count(name, kind) for kind in kinds)


def _summary_row(bucket: AggregateBucket) -> tuple[object, ...]:
    return (
        (bucket.primary_key, bucket.row_count, bucket.numeric_sum)
        + _counts(bucket, NUMERIC, _NUMERIC_KINDS)
        + _counts(bucket, SECONDARY, _DATE_KINDS)
        + _counts(bucket, COHORT, _DATE_KINDS)
    )


def _detail_row(bucket: AggregateBucket) -> tuple[object, ...]:
    return (
        (bucket.primary_key, bucket.secondary_key, bucket.row_count, bucket.numeric_sum)
        + _counts(bucket, NUMERIC, _NUMERIC_KINDS)
        + _counts(bucket, SECONDARY, _DATE_KINDS)
    )


def build_type_audit(ctx: ReportContext) -> JobResult:
    """Audit cell types of the snapshot table.

    Raises:
        MissingTable: the snapshot table does not exist
        EmptyInput: it has no data rows
        MissingColumns: one of the configured fields is not in its header
    """
    s = ctx.settings
    sheet = s.type_audit_sheet
    cohort_field = normalize_header(s.type_audit_cohort_field)
    secondary_field = normalize_header(s.type_audit_secondary_field)
    numeric_field = normalize_header(s.type_audit_numeric_field)

    records = read_table(ctx, sheet, require_rows=True)
    require_columns(ctx.source, sheet, (cohort_field, secondary_field, numeric_field), header_row=s.header_row)

    agg = CohortAggregator((NUMERIC, SECONDARY, COHORT), detail=True)
    for record in records:
        cohort = classify_date_field(record.get(cohort_field))
        secondary = classify_date_field(record.get(secondary_field))
        amount = classify_amount(record.get(numeric_field))
        agg.ingest(
            cohort_key(cohort, s.cohort_grain),
            cohort_key(secondary, "month"),
            classified={NUMERIC: amount, SECONDARY: secondary, COHORT: cohort},
            numeric=amount,
        )

    summary = assemble(summary_columns(secondary_field, cohort_field), agg.summary_buckets(), _summary_row)
    detail = assemble(detail_columns(secondary_field), agg.detail_buckets(), _detail_row)
    table = ReportTable(f"{sheet}_audit", stack_blocks(summary, detail, gap=1))
    rows_out = publish(ctx.sink, table)
    return JobResult(rows_in=agg.rows_ingested, rows_out=rows_out)
