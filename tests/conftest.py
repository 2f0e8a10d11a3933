# Shared pytest fixtures
from __future__ import annotations
import tempfile
from datetime import datetime
from pathlib import Path

import pandas as pd
import pytest

from metrics_pipeline.logging.init import reset_logging
from metrics_pipeline.tables.source import FrameSource


class RecordingAudit:
    """AuditSink that keeps every entry as a dict."""

    def __init__(self) -> None:
        self.entries: list[dict] = []

    def append(self, step, status, rows_in, rows_out, elapsed_seconds, error) -> None:
        self.entries.append(
            {
                "step": step,
                "status": status,
                "rows_in": rows_in,
                "rows_out": rows_out,
                "elapsed_seconds": elapsed_seconds,
                "error": error,
            }
        )


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def audit() -> RecordingAudit:
    return RecordingAudit()


def raw_tables() -> dict[str, list[list]]:
    """A small but complete set of raw exports (header row first)."""
    return {
        "raw_clerk_orgs": [
            ["Org ID", "Org Name", "Org Slug", "Created At"],
            ["org_a", "Acme", "acme", datetime(2024, 1, 5)],
            ["org_b", "", "beta-co", "2024-01-20"],
            ["org_c", "Cyan", "cyan", datetime(2024, 2, 2)],
            ["", "No Id", "noid", datetime(2024, 2, 3)],
        ],
        "raw_clerk_users": [
            ["email", "created_at", "org_id", "stripe_subscription_id", "trial_start_date", "trial_ends_at", "public_metadata"],
            ["alice@acme.com", "2024-01-05", None, "sub_1", "2024-01-05", "2024-01-19", None],
            ["bob+work@acme.com", "2024-01-06", None, "sub_2", None, None, None],
            ["carol@beta.co", "2024-01-21", None, "sub_3", None, None,
             '{"trialStartDate": "2024-01-20", "trialEndsAt": "2024-02-03"}'],
            ["dave@cyan.io", "2024-02-02", None, None, None, None, None],
        ],
        "raw_clerk_memberships": [
            ["org_id", "email", "role", "created_at"],
            ["org_a", "bob@acme.com", "org:member", "2024-01-06"],
            ["org_a", "alice@acme.com", "org:admin", "2024-01-05"],
            ["org_b", "carol@beta.co", "org:owner", "2024-01-21"],
        ],
        "raw_stripe_subscriptions": [
            ["stripe_subscription_id", "status", "created_at", "first_payment_at"],
            ["sub_1", "Active", "2024-01-25", "2024-01-25"],
            ["sub_2", "trialing", "2024-02-10", None],
            ["sub_3", "active", "2024-03-15", "2024-03-15"],
        ],
        "arr_snapshot": [
            ["snapshot_date", "trial_cohort_month", "total_arr"],
            [datetime(2024, 1, 15), "2023-12", "150.5"],
            ["bad-date", None, ""],
        ],
        "raw_posthog_user_metrics": [
            [
                "email",
                "calendar_connected",
                "first_calendar_connected_date",
                "email_connected",
                "first_email_connected_date",
                "pm_karbon_connected",
                "pm_karbon_first_connected_date",
                "pm_keeper_connected",
                "pm_keeper_first_connected_date",
                "pm_financial_cents_connected",
                "pm_financial_cents_first_connected_date",
            ],
            ["alice@acme.com", True, None, "no", None, None, None, None, None, None, None],
            ["BOB@acme.com", None, None, None, "2024-01-08", None, None, "yes", None, None, None],
            ["dave@cyan.io", None, None, None, None, None, None, None, None, None, None],
            ["ghost@nowhere.io", True, None, True, None, True, None, None, None, None, None],
        ],
    }


@pytest.fixture()
def source() -> FrameSource:
    return FrameSource(raw_tables())


@pytest.fixture()
def sample_config_yaml() -> str:
    return """source_workbook: ./data/raw_exports.xlsx
output:
  kind: workbook
  directory: ./out
lock:
  path: ./logs/pipeline.lock
  timeout_seconds: 1
audit_log: ./logs/audit.jsonl
steps:
  - render_org_info_view
  - render_org_conversion_stats
  - render_arr_snapshot_audit
  - render_stripe_multi_sub_audit
  - render_onboarding_stats
reports:
  conversion_window_days: 7
  onboarding_cutoff: "2024-01-06"
  type_audit:
    cohort_grain: day
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "pipeline.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def source_workbook(temp_workdir: Path) -> Path:
    path = temp_workdir / "data" / "raw_exports.xlsx"
    with pd.ExcelWriter(path) as writer:
        for sheet, rows in raw_tables().items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=sheet, header=False, index=False)
    return path


@pytest.fixture()
def raw_data() -> dict[str, list[list]]:
    return raw_tables()
