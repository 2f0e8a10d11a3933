from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

"""Pipeline step and run result models.

State transitions of one run: idle -> running -> (completed | aborted)

A StepResult is produced exactly once per step per run and never mutated.
A RunSummary is owned by the runner for the duration of one run.
"""

__all__ = [
    "JobResult",
    "PipelineStep",
    "RunState",
    "RunSummary",
    "StepResult",
    "StepStatus",
]


class StepStatus(Enum):
    OK = "ok"
    ERROR = "error"


class RunState(Enum):
    """Runner lifecycle.

    - IDLE: constructed, not started
    - RUNNING: lock held, steps executing
    - COMPLETED: all steps attempted (overall status may still be error)
    - ABORTED: lock not acquired, no step executed
    """
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class JobResult:
    """Row counts a unit of work may report back to the runner."""
    rows_in: int | None = None
    rows_out: int | None = None


@dataclass(frozen=True)
class PipelineStep:
    """Named, argument-free unit of work. Identity is its name."""
    name: str
    unit_of_work: Callable[[], JobResult | None]


@dataclass(frozen=True)
class StepResult:
    step: str
    status: StepStatus
    elapsed_seconds: float
    rows_in: int | None = None
    rows_out: int | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.OK

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class RunSummary:
    """Outcome of one run (ordered step results plus totals)."""
    run_name: str
    state: RunState
    steps: tuple[StepResult, ...]
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    error_message: str | None = None
    failed_steps: tuple[str, ...] = field(default=())

    @property
    def status(self) -> StepStatus:
        if self.state is RunState.ABORTED:
            return StepStatus.ERROR
        if any(not r.ok for r in self.steps):
            return StepStatus.ERROR
        return StepStatus.OK

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.steps if r.ok)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.steps if not r.ok)

    @property
    def total_rows_out(self) -> int:
        return sum(r.rows_out or 0 for r in self.steps)

    def errors_json(self) -> str:
        """Aggregate error payload for the run-level audit entry."""
        payload = [r.to_dict() for r in self.steps if not r.ok]
        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(payload)
