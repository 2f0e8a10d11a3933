from __future__ import annotations

from datetime import timedelta

from metrics_pipeline.identity.keys import normalize_id
from metrics_pipeline.models.bucket import AggregateBucket
from metrics_pipeline.models.step_result import JobResult
from metrics_pipeline.services.aggregator import CohortAggregator
from metrics_pipeline.services.assembler import ReportTable, assemble, publish, ratio, stack_blocks
from metrics_pipeline.services.join_index import first_present

from .base import ReportContext, month_cohort, read_table
from .org_info import OrgInfo, derive_org_info

"""Org conversion by signup month.

- cohort: month of the org's ``created_at`` (``org_created_at`` fallback)
- converted: the org has a subscription start date (see ``org_info``)
- converted within window: first purchase falls inside
  ``[trial_start, trial_end + window_days]``
"""

__all__ = [
    "COLUMNS",
    "SHEET",
    "OrgInfo",
    "build_conversion_stats",
    "converted_within_window",
]

SHEET = "conversion_stats"
ORGS_TABLE = "raw_clerk_orgs"

COLUMNS = (
    "cohort_month",
    "total",
    "converted",
    "conversion_rate",
    "converted_within_window",
    "conversion_rate_within_window",
)

CONVERTED = "converted"
WITHIN_WINDOW = "converted_within_window"


def converted_within_window(info: OrgInfo, window_days: int) -> bool:
    if info.trial_start is None or info.trial_end is None or info.purchase is None:
        return False
    window_end = info.trial_end + timedelta(days=window_days)
    return info.trial_start <= info.purchase <= window_end


def _row(bucket: AggregateBucket) -> tuple[object, ...]:
    total = bucket.row_count
    converted = bucket.flag(CONVERTED)
    within = bucket.flag(WITHIN_WINDOW)
    return (
        bucket.primary_key,
        total,
        converted,
        ratio(converted, total),
        within,
        ratio(within, total),
    )


def build_conversion_stats(ctx: ReportContext) -> JobResult:
    window_days = ctx.settings.conversion_window_days
    orgs = read_table(ctx, ORGS_TABLE)
    info_by_id = derive_org_info(ctx)

    agg = CohortAggregator(flags=(CONVERTED, WITHIN_WINDOW))
    rows_in = 0
    for org in orgs:
        rows_in += 1
        org_id = normalize_id(org.get("org_id"))
        if not org_id:
            continue
        info = info_by_id.get(org_id) or OrgInfo()
        agg.ingest(
            month_cohort(first_present(org, "created_at", "org_created_at")),
            flags={
                CONVERTED: info.subscription_start is not None,
                WITHIN_WINDOW: converted_within_window(info, window_days),
            },
        )

    block = assemble(COLUMNS, agg.summary_buckets(), _row)
    rows_out = publish(ctx.sink, ReportTable(SHEET, stack_blocks(block)))
    return JobResult(rows_in=rows_in, rows_out=rows_out)
