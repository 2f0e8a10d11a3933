"""Domain models for the cohort metrics pipeline.

Value classification, aggregate buckets, step/run results and audit records.
"""

from .audit_record import AuditRecord
from .bucket import AggregateBucket
from .classified_value import BLANK_KEY, ClassifiedValue, ValueKind
from .step_result import JobResult, PipelineStep, RunState, RunSummary, StepResult, StepStatus

__all__ = [
    # Classification
    "BLANK_KEY",
    "ClassifiedValue",
    "ValueKind",
    # Aggregation
    "AggregateBucket",
    # Pipeline
    "JobResult",
    "PipelineStep",
    "RunState",
    "RunSummary",
    "StepResult",
    "StepStatus",
    # Audit
    "AuditRecord",
]
