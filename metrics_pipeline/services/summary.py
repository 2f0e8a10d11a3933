from __future__ import annotations

from metrics_pipeline.models.step_result import RunSummary

"""SUMMARY line rendering.

Format (single line, stable field order)::

    SUMMARY run=<name> state=<state> steps=<n> ok=<k> failed=<f>
    rows_out=<r> elapsed_sec=<s> status=<ok|error>
"""


def _format_seconds(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # avoid scientific notation for tiny values
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(summary: RunSummary) -> str:
    """Render the SUMMARY line for a finished (or aborted) run.

    Examples:
        >>> from datetime import datetime, timezone
        >>> from metrics_pipeline.models.step_result import RunState
        >>> t = datetime(2024, 1, 1, tzinfo=timezone.utc)
        >>> s = RunSummary("run_pipeline", RunState.COMPLETED, (), t, t, 2.0)
        >>> render_summary_line(s)
        'SUMMARY run=run_pipeline state=completed steps=0 ok=0 failed=0 rows_out=0 elapsed_sec=2 status=ok'
    """
    return (
        f"SUMMARY run={summary.run_name} "
        f"state={summary.state.value} "
        f"steps={len(summary.steps)} "
        f"ok={summary.ok_count} "
        f"failed={summary.error_count} "
        f"rows_out={summary.total_rows_out} "
        f"elapsed_sec={_format_seconds(summary.elapsed_seconds)} "
        f"status={summary.status.value}"
    )
