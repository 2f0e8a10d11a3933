from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""AuditRecord model for the execution audit trail.

One record is written per step per run (unless the step audits itself) plus
one run-level record. The JSON Lines representation has a fixed key set:

    timestamp | step | status | rows_in | rows_out | elapsed_seconds | error

``rows_in`` / ``rows_out`` are ``null`` when the step did not report counts.
"""

__all__ = [
    "AuditRecord",
]


@dataclass(frozen=True)
class AuditRecord:
    """Structured audit entry.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        step: Step (or run) name the entry describes
        status: "ok" or "error"
        rows_in: Rows read by the step, if reported
        rows_out: Rows written by the step, if reported
        elapsed_seconds: Wall time of the step
        error: Error text, empty string when status is ok
    """
    timestamp: str
    step: str
    status: str
    rows_in: int | None
    rows_out: int | None
    elapsed_seconds: float
    error: str

    @staticmethod
    def create(
        step: str,
        status: str,
        rows_in: int | None = None,
        rows_out: int | None = None,
        elapsed_seconds: float = 0.0,
        error: str = "",
    ) -> AuditRecord:
        """Create a new AuditRecord stamped with the current UTC time."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return AuditRecord(
            timestamp=ts,
            step=step,
            status=status,
            rows_in=rows_in,
            rows_out=rows_out,
            elapsed_seconds=round(float(elapsed_seconds), 3),
            error=error or "",
        )

    def to_json_line(self) -> str:
        """Serialize to a single JSON line (no extra keys)."""
        return json.dumps(asdict(self), ensure_ascii=False)
