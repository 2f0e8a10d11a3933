from __future__ import annotations

from collections.abc import Iterable
from functools import partial

from metrics_pipeline.config.loader import ConfigError
from metrics_pipeline.models.step_result import PipelineStep
from metrics_pipeline.reports.base import ReportContext, ReportJob, run_audited
from metrics_pipeline.reports.conversion import build_conversion_stats
from metrics_pipeline.reports.multi_subscription import build_multi_subscription_audit
from metrics_pipeline.reports.onboarding import build_onboarding_stats
from metrics_pipeline.reports.org_info import build_org_info
from metrics_pipeline.reports.type_audit import build_type_audit

"""Registry of report jobs by step name.

The pipeline calls the plain job functions; locking and auditing are the
runner's business there. Standalone invocation goes through ``run_job``.
"""

__all__ = [
    "REPORT_JOBS",
    "build_steps",
    "get_job",
]

REPORT_JOBS: dict[str, ReportJob] = {
    "render_org_info_view": build_org_info,
    "render_org_conversion_stats": build_conversion_stats,
    "render_arr_snapshot_audit": build_type_audit,
    "render_stripe_multi_sub_audit": build_multi_subscription_audit,
    "render_onboarding_stats": build_onboarding_stats,
}


def get_job(name: str) -> ReportJob:
    try:
        return REPORT_JOBS[name]
    except KeyError:
        raise ConfigError(f"unknown report: {name} (known: {sorted(REPORT_JOBS)})") from None


def build_steps(
    names: Iterable[str], ctx: ReportContext, *, self_logging: Iterable[str] = ()
) -> list[PipelineStep]:
    """Bind each named job to the context as a zero-argument step.

    Steps named in ``self_logging`` write their own audit entry; the runner
    must be told to skip them.
    """
    self_logging = frozenset(self_logging)
    steps = []
    for name in names:
        job = get_job(name)
        if name in self_logging:
            steps.append(PipelineStep(name, partial(run_audited, name, job, ctx)))
        else:
            steps.append(PipelineStep(name, partial(job, ctx)))
    return steps
