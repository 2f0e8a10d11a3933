from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from metrics_pipeline.classify.values import classify_date_field, cohort_key, month_key, to_instant
from metrics_pipeline.config.loader import ReportSettings
from metrics_pipeline.logging.audit_log import AuditSink, NullAuditSink
from metrics_pipeline.models.step_result import JobResult, StepStatus
from metrics_pipeline.services.lock import DEFAULT_LOCK_TIMEOUT_SECONDS, Lock, LockTimeout
from metrics_pipeline.services.runner import describe_error
from metrics_pipeline.tables.reader import Record, read_records
from metrics_pipeline.tables.sink import TableSink
from metrics_pipeline.tables.source import TableSource

"""Shared plumbing for report jobs.

A report job is a plain function ``build_<name>(ctx) -> JobResult`` that
reads its inputs from ``ctx.source``, aggregates, and publishes to
``ctx.sink``. Everything a job may touch is on the context; nothing is
looked up at runtime.

``run_job`` makes a single report invocable on its own (menu action, CLI
``--report``): it takes the lock, runs the job, writes the job's own audit
entry and releases the lock. Errors are audited and re-raised.
"""

__all__ = [
    "ReportContext",
    "ReportJob",
    "month_cohort",
    "read_table",
    "run_audited",
    "run_job",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportContext:
    source: TableSource
    sink: TableSink
    audit: AuditSink = field(default_factory=NullAuditSink)
    settings: ReportSettings = field(default_factory=ReportSettings)


ReportJob = Callable[[ReportContext], JobResult]


def read_table(ctx: ReportContext, sheet: str, *, require_rows: bool = False) -> Iterator[Record]:
    return read_records(ctx.source, sheet, header_row=ctx.settings.header_row, require_rows=require_rows)


def month_cohort(raw: Any) -> str:
    """Month key of a creation timestamp; unparseable values key on their text."""
    instant = to_instant(raw)
    if instant is not None:
        return month_key(instant)
    return cohort_key(classify_date_field(raw), "month")


def _audit(ctx: ReportContext, name: str, status: StepStatus, result: JobResult | None, elapsed: float, error: str) -> None:
    try:
        ctx.audit.append(
            name,
            status.value,
            result.rows_in if result else None,
            result.rows_out if result else None,
            elapsed,
            error,
        )
    except Exception:
        logger.warning("audit append failed for report=%s", name, exc_info=True)


def run_audited(name: str, job: ReportJob, ctx: ReportContext) -> JobResult:
    """Run one report and write its own audit entry (no locking)."""
    t0 = time.perf_counter()
    try:
        result = job(ctx)
    except Exception as e:
        elapsed = time.perf_counter() - t0
        logger.error("report=%s failed after %.2fs: %s", name, elapsed, describe_error(e))
        _audit(ctx, name, StepStatus.ERROR, None, elapsed, describe_error(e))
        raise
    elapsed = time.perf_counter() - t0
    logger.info("report=%s rows_in=%s rows_out=%s elapsed=%.2fs", name, result.rows_in, result.rows_out, elapsed)
    _audit(ctx, name, StepStatus.OK, result, elapsed, "")
    return result


def run_job(
    name: str,
    job: ReportJob,
    ctx: ReportContext,
    lock: Lock,
    timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
) -> JobResult:
    """Run one report under the lock and audit it.

    Raises:
        LockTimeout: the lock was not acquired within ``timeout_seconds``
        LockHeld: the lock is already held by this process
        Exception: whatever the job raised, after it has been audited
    """
    if not lock.acquire(timeout_seconds):
        raise LockTimeout(f"could not acquire lock for {name} within {timeout_seconds:g}s")
    try:
        return run_audited(name, job, ctx)
    finally:
        lock.release()
