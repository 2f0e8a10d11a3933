from __future__ import annotations

import json
import re
from pathlib import Path

from metrics_pipeline.logging.audit_log import JsonlAuditLog
from metrics_pipeline.models.audit_record import AuditRecord

"""Audit log JSON Lines contract."""

KEYS = {"timestamp", "step", "status", "rows_in", "rows_out", "elapsed_seconds", "error"}
TS = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$")


def test_one_line_per_append_with_fixed_keys(tmp_path: Path):
    log = JsonlAuditLog(tmp_path / "nested" / "audit.jsonl")
    log.append("render_onboarding_stats", "ok", 4, 5, 0.12345, "")
    log.append("render_arr_snapshot_audit", "error", None, None, 0.5, "EmptyInput: no rows")

    lines = (tmp_path / "nested" / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert len(log) == 2
    first, second = (json.loads(l) for l in lines)
    assert set(first) == KEYS and set(second) == KEYS
    assert TS.match(first["timestamp"])
    assert first["elapsed_seconds"] == 0.123
    assert first["error"] == ""
    assert second["rows_in"] is None and second["rows_out"] is None
    assert second["error"] == "EmptyInput: no rows"


def test_append_keeps_existing_entries(tmp_path: Path):
    path = tmp_path / "audit.jsonl"
    path.write_text('{"previous": true}\n', encoding="utf-8")
    JsonlAuditLog(path).append("run_pipeline", "ok", None, None, 1.0, "")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == '{"previous": true}'
    assert json.loads(lines[1])["step"] == "run_pipeline"


def test_record_error_defaults_to_empty_string():
    record = AuditRecord.create("x", "ok", error=None)
    assert record.error == ""
    assert json.loads(record.to_json_line())["error"] == ""


def test_non_ascii_error_kept_verbatim(tmp_path: Path):
    path = tmp_path / "audit.jsonl"
    JsonlAuditLog(path).append("x", "error", None, None, 0, "ValueError: 無効な日付")
    assert "無効な日付" in path.read_text(encoding="utf-8")
