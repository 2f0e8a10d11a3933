from __future__ import annotations

from datetime import datetime

from metrics_pipeline.classify.values import is_truthy, month_key, to_instant
from metrics_pipeline.models.bucket import AggregateBucket
from metrics_pipeline.models.step_result import JobResult
from metrics_pipeline.services.aggregator import CohortAggregator
from metrics_pipeline.services.assembler import ReportBlock, ReportTable, assemble, publish, ratio
from metrics_pipeline.services.join_index import earliest_by_key, email_key_of
from metrics_pipeline.tables.reader import MissingColumns, Record, header_of, require_columns

from .base import ReportContext, read_table

"""Onboarding connection rates by account creation month.

A user's cohort is the month of the earliest account creation found for
their normalized email; metric rows whose email has no known creation date
are skipped. A connection counts when its flag is truthy or a first
connection date is present (PM: any of the supported providers).

With ``onboarding_cutoff`` configured, three rows follow the monthly ones:
users created before the cutoff, on or after it, and the total.
"""

__all__ = [
    "COLUMNS",
    "SHEET",
    "build_onboarding_stats",
    "connection_flags",
]

SHEET = "onboarding_stats"
USERS_TABLE = "raw_clerk_users"
METRICS_TABLE = "raw_posthog_user_metrics"

COLUMNS = (
    "cohort_month",
    "users_total",
    "calendar_connected_count",
    "calendar_connected_pct",
    "email_connected_count",
    "email_connected_pct",
    "pm_connected_count",
    "pm_connected_pct",
)

CALENDAR = "calendar"
EMAIL = "email"
PM = "pm"

# (connected flag column, first-connected date column)
_CONNECTIONS: dict[str, tuple[tuple[str, str], ...]] = {
    CALENDAR: (("calendar_connected", "first_calendar_connected_date"),),
    EMAIL: (("email_connected", "first_email_connected_date"),),
    PM: (
        ("pm_karbon_connected", "pm_karbon_first_connected_date"),
        ("pm_keeper_connected", "pm_keeper_first_connected_date"),
        ("pm_financial_cents_connected", "pm_financial_cents_first_connected_date"),
    ),
}

METRIC_COLUMNS = tuple(col for pairs in _CONNECTIONS.values() for pair in pairs for col in pair)

TOTAL_LABEL = "TOTAL"


def connection_flags(record: Record) -> dict[str, bool]:
    return {
        name: any(
            is_truthy(record.get(flag)) or to_instant(record.get(first_date)) is not None
            for flag, first_date in pairs
        )
        for name, pairs in _CONNECTIONS.items()
    }


def _require_email_column(ctx: ReportContext, table: str) -> None:
    header = header_of(ctx.source, table, header_row=ctx.settings.header_row)
    if "email_key" not in header and "email" not in header:
        raise MissingColumns(f"table '{table}' missing columns: ['email_key' or 'email']")


def _cutoff(ctx: ReportContext) -> tuple[datetime, str] | None:
    text = ctx.settings.onboarding_cutoff
    if not text:
        return None
    instant = to_instant(text)
    if instant is None:
        raise ValueError(f"invalid onboarding cutoff date: {text!r}")
    return instant, text


def _row(bucket: AggregateBucket) -> tuple[object, ...]:
    total = bucket.row_count
    counts = [bucket.flag(name) for name in (CALENDAR, EMAIL, PM)]
    return (
        bucket.primary_key,
        total,
        counts[0],
        ratio(counts[0], total),
        counts[1],
        ratio(counts[1], total),
        counts[2],
        ratio(counts[2], total),
    )


def build_onboarding_stats(ctx: ReportContext) -> JobResult:
    cutoff = _cutoff(ctx)
    header_row = ctx.settings.header_row
    require_columns(ctx.source, USERS_TABLE, ("created_at",), header_row=header_row)
    _require_email_column(ctx, USERS_TABLE)
    require_columns(ctx.source, METRICS_TABLE, METRIC_COLUMNS, header_row=header_row)
    _require_email_column(ctx, METRICS_TABLE)

    created_by_email = earliest_by_key(read_table(ctx, USERS_TABLE), email_key_of, "created_at")

    flags = (CALENDAR, EMAIL, PM)
    monthly = CohortAggregator(flags=flags)
    periods = CohortAggregator(flags=flags)
    if cutoff is not None:
        before_label, after_label = f"Before {cutoff[1]}", f"On/After {cutoff[1]}"

    rows_in = 0
    for record in read_table(ctx, METRICS_TABLE):
        rows_in += 1
        created = created_by_email.get(email_key_of(record))
        if created is None:
            continue
        connected = connection_flags(record)
        monthly.ingest(month_key(created), flags=connected)
        if cutoff is not None:
            periods.ingest(before_label if created < cutoff[0] else after_label, flags=connected)
            periods.ingest(TOTAL_LABEL, flags=connected)

    block = assemble(COLUMNS, monthly.summary_buckets(), _row)
    if cutoff is not None:
        by_label = {b.primary_key: b for b in periods.summary_buckets()}
        trailing = assemble(
            COLUMNS,
            [by_label.get(label) or AggregateBucket.empty(label, None, (), flags)
             for label in (before_label, after_label, TOTAL_LABEL)],
            _row,
        )
        block = ReportBlock(header=COLUMNS, rows=block.rows + trailing.rows)

    rows_out = publish(ctx.sink, ReportTable(SHEET, (block,)))
    return JobResult(rows_in=rows_in, rows_out=rows_out)
