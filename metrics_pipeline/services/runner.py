from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from metrics_pipeline.logging.audit_log import AuditSink, NullAuditSink
from metrics_pipeline.models.step_result import (
    JobResult,
    PipelineStep,
    RunState,
    RunSummary,
    StepResult,
    StepStatus,
)

from .lock import DEFAULT_LOCK_TIMEOUT_SECONDS, Lock
from .progress import StepProgress

"""Pipeline runner.

Executes a fixed, ordered list of named steps as one lock-protected unit:

    idle -> running -> completed      (every step attempted)
    idle -> aborted                   (lock not acquired, nothing executed)

- Steps run strictly in declaration order. A step that raises is recorded
  as an error StepResult and the next step runs anyway; step errors are
  never re-raised past the runner.
- One audit entry per step (except steps listed in ``self_logging_steps``,
  which write their own) and one run-level entry whose error text is the
  JSON list of failed steps.
- An aborted run (lock timeout, nested hold, or an error while acquiring)
  produces zero step results and exactly one audit entry.
- Audit failures are logged and ignored; they never fail a step.
"""

__all__ = [
    "PipelineRunner",
    "describe_error",
]

logger = logging.getLogger(__name__)


def describe_error(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class PipelineRunner:
    """Runs pipeline steps under a process-wide lock.

    Parameters
    ----------
    steps: ordered steps; names must be unique
    lock: mutual-exclusion primitive (``acquire(timeout) -> bool`` / ``release()``)
    audit: audit sink (defaults to a no-op sink)
    run_name: name used for the run-level audit entry
    lock_timeout_seconds: bounded wait for the lock
    self_logging_steps: step names that write their own audit entries
    """

    def __init__(
        self,
        steps: Sequence[PipelineStep],
        *,
        lock: Lock,
        audit: AuditSink | None = None,
        run_name: str = "run_pipeline",
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        self_logging_steps: Iterable[str] = (),
    ) -> None:
        names = [s.name for s in steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate step names: {duplicates}")
        self.steps = tuple(steps)
        self.lock = lock
        self.audit: AuditSink = audit if audit is not None else NullAuditSink()
        self.run_name = run_name
        self.lock_timeout_seconds = lock_timeout_seconds
        self.self_logging_steps = frozenset(self_logging_steps)
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    def run(self) -> RunSummary:
        if self._state is not RunState.IDLE:
            raise RuntimeError(f"runner already used (state={self._state.value})")
        start_time = datetime.now(UTC)
        t0 = time.perf_counter()

        try:
            acquired = self.lock.acquire(self.lock_timeout_seconds)
        except Exception as e:
            # LockHeld or an unwritable lock directory: nothing held here, no release
            return self._abort(start_time, t0, describe_error(e))
        if not acquired:
            self.lock.release()
            return self._abort(
                start_time,
                t0,
                f"LockTimeout: could not acquire lock within {self.lock_timeout_seconds:g}s",
            )

        results: list[StepResult] = []
        try:
            self._state = RunState.RUNNING
            logger.info("run=%s started steps=%d", self.run_name, len(self.steps))
            with StepProgress(len(self.steps), description=self.run_name) as progress:
                for step in self.steps:
                    progress.start_step(step.name)
                    result = self._run_step(step)
                    results.append(result)
                    progress.finish_step(result.ok, sum(1 for r in results if not r.ok))
            self._state = RunState.COMPLETED
        finally:
            self.lock.release()

        end_time = datetime.now(UTC)
        summary = RunSummary(
            run_name=self.run_name,
            state=self._state,
            steps=tuple(results),
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=time.perf_counter() - t0,
            failed_steps=tuple(r.step for r in results if not r.ok),
        )
        self._append_audit(
            self.run_name,
            summary.status.value,
            None,
            None,
            summary.elapsed_seconds,
            summary.errors_json() if summary.failed_steps else "",
        )
        if summary.failed_steps:
            logger.warning("run=%s finished with failed steps: %s", self.run_name, ", ".join(summary.failed_steps))
        return summary

    def _abort(self, start_time: datetime, t0: float, message: str) -> RunSummary:
        self._state = RunState.ABORTED
        elapsed = time.perf_counter() - t0
        logger.error("run=%s aborted: %s", self.run_name, message)
        self._append_audit(self.run_name, StepStatus.ERROR.value, None, None, elapsed, message)
        return RunSummary(
            run_name=self.run_name,
            state=RunState.ABORTED,
            steps=(),
            start_time=start_time,
            end_time=datetime.now(UTC),
            elapsed_seconds=elapsed,
            error_message=message,
        )

    def _run_step(self, step: PipelineStep) -> StepResult:
        t0 = time.perf_counter()
        try:
            out = step.unit_of_work()
        except Exception as e:
            elapsed = time.perf_counter() - t0
            message = describe_error(e)
            logger.error("step=%s status=error elapsed=%.2fs error=%s", step.name, elapsed, message)
            logger.debug("step=%s traceback", step.name, exc_info=True)
            result = StepResult(
                step=step.name,
                status=StepStatus.ERROR,
                elapsed_seconds=elapsed,
                error_message=message,
            )
        else:
            elapsed = time.perf_counter() - t0
            rows_in = out.rows_in if isinstance(out, JobResult) else None
            rows_out = out.rows_out if isinstance(out, JobResult) else None
            logger.info(
                "step=%s status=ok elapsed=%.2fs rows_in=%s rows_out=%s",
                step.name,
                elapsed,
                rows_in,
                rows_out,
            )
            result = StepResult(
                step=step.name,
                status=StepStatus.OK,
                elapsed_seconds=elapsed,
                rows_in=rows_in,
                rows_out=rows_out,
            )

        if step.name not in self.self_logging_steps:
            self._append_audit(
                step.name,
                result.status.value,
                result.rows_in,
                result.rows_out,
                result.elapsed_seconds,
                result.error_message or "",
            )
        return result

    def _append_audit(
        self,
        step: str,
        status: str,
        rows_in: int | None,
        rows_out: int | None,
        elapsed_seconds: float,
        error: str,
    ) -> None:
        try:
            self.audit.append(step, status, rows_in, rows_out, elapsed_seconds, error)
        except Exception:
            logger.warning("audit append failed for step=%s", step, exc_info=True)
