from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from metrics_pipeline.models.audit_record import AuditRecord

"""Append-only execution audit trail.

The pipeline core only knows the ``AuditSink`` protocol. Appending is
fire-and-forget from the caller's point of view: the runner wraps every call
and a failing sink never fails the step being described.

- ``JsonlAuditLog`` appends one JSON line per call to a file (created on
  first write, parent directories included).
- ``NullAuditSink`` is the default when nothing is injected.
"""

__all__ = [
    "AuditRecord",
    "AuditSink",
    "JsonlAuditLog",
    "NullAuditSink",
]

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = Path("./logs/audit.jsonl")


class AuditSink(Protocol):
    def append(
        self,
        step: str,
        status: str,
        rows_in: int | None,
        rows_out: int | None,
        elapsed_seconds: float,
        error: str,
    ) -> None: ...


class NullAuditSink:
    """Audit sink that drops every entry."""

    def append(
        self,
        step: str,
        status: str,
        rows_in: int | None,
        rows_out: int | None,
        elapsed_seconds: float,
        error: str,
    ) -> None:
        return None


class JsonlAuditLog:
    """Durable JSON Lines audit log.

    Each ``append`` opens the file in append mode and writes exactly one line,
    so entries written before a crash are kept.
    """

    def __init__(self, path: Path | str = DEFAULT_AUDIT_PATH) -> None:
        self.path = Path(path)
        self._written = 0

    def append(
        self,
        step: str,
        status: str,
        rows_in: int | None,
        rows_out: int | None,
        elapsed_seconds: float,
        error: str,
    ) -> None:
        record = AuditRecord.create(
            step=step,
            status=status,
            rows_in=rows_in,
            rows_out=rows_out,
            elapsed_seconds=elapsed_seconds,
            error=error,
        )
        self.write(record)

    def write(self, record: AuditRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(record.to_json_line() + "\n")
        self._written += 1
        logger.debug("audit step=%s status=%s path=%s", record.step, record.status, self.path)

    def __len__(self) -> int:
        return self._written
