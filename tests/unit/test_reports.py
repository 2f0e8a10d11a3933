from __future__ import annotations

from dataclasses import replace

import pytest

from metrics_pipeline.config.loader import ReportSettings
from metrics_pipeline.reports import conversion, multi_subscription, onboarding, org_info, type_audit
from metrics_pipeline.reports.base import ReportContext
from metrics_pipeline.tables.reader import EmptyInput, MissingColumns
from metrics_pipeline.tables.sink import MemorySink
from metrics_pipeline.tables.source import FrameSource, MissingTable


def _ctx(source, **settings) -> tuple[ReportContext, MemorySink]:
    sink = MemorySink()
    base = ReportSettings(onboarding_cutoff="2024-01-06", cohort_grain="day")
    return ReportContext(source=source, sink=sink, settings=replace(base, **settings)), sink


def _source_with(tables, **overrides) -> FrameSource:
    tables.update(overrides)
    return FrameSource(tables)


class TestOrgInfo:
    def test_dates_derived_from_clerk_and_stripe(self, source):
        ctx, sink = _ctx(source)
        result = org_info.build_org_info(ctx)

        assert result.rows_in == 4
        assert result.rows_out == 3
        assert sink.tables["org_info"] == [
            list(org_info.COLUMNS),
            ["org_a", "Acme", 2, "sub_2, sub_1", "2024-01-05", "2024-01-19", "2024-01-25", "2024-01-25"],
            ["org_b", "beta-co", 1, "sub_3", "2024-01-20", "2024-02-03", "2024-03-15", "2024-03-15"],
            ["org_c", "Cyan", 0, "", "", "", "", ""],
        ]

    def test_columns_win_over_metadata(self):
        users = [
            {"email": "a@x.io", "trial_start_date": "2024-05-01",
             "private_metadata": '{"trialStartDate": "2024-04-01", "trialEndsAt": "2024-05-15"}'},
            {"email": "b@x.io", "public_metadata": "not json"},
        ]
        info = org_info._org_info(users, [])
        assert info.trial_start.date().isoformat() == "2024-05-01"
        assert info.trial_end.date().isoformat() == "2024-05-15"
        assert info.subscription_start is None and info.purchase is None

    def test_earliest_subscription_dates_win(self):
        subs = [
            {"created_at": "2024-03-01", "first_payment_at": None},
            {"created_at": "2024-02-01", "first_payment_at": "2024-02-20"},
            {"created_at": "garbage", "first_payment_at": "2024-04-01"},
        ]
        info = org_info._org_info([], subs)
        assert info.subscription_start.date().isoformat() == "2024-02-01"
        assert info.purchase.date().isoformat() == "2024-02-20"

    def test_derive_keys_orgs_with_members(self, source):
        ctx, _ = _ctx(source)
        derived = org_info.derive_org_info(ctx)
        assert set(derived) == {"org_a", "org_b"}
        assert derived["org_b"].purchase.date().isoformat() == "2024-03-15"

    def test_missing_subscriptions_table(self, raw_data):
        del raw_data["raw_stripe_subscriptions"]
        ctx, sink = _ctx(FrameSource(raw_data))
        with pytest.raises(MissingTable):
            org_info.build_org_info(ctx)
        assert sink.tables == {}


class TestConversionStats:
    def test_monthly_conversion(self, source):
        ctx, sink = _ctx(source)
        result = conversion.build_conversion_stats(ctx)

        assert result.rows_in == 4
        assert result.rows_out == 2
        assert sink.tables["conversion_stats"] == [
            list(conversion.COLUMNS),
            ["2024-01", 2, 2, 1.0, 1, 0.5],
            ["2024-02", 1, 0, 0.0, 0, 0.0],
        ]

    def test_wider_window_counts_late_purchase(self, source):
        ctx, sink = _ctx(source, conversion_window_days=60)
        conversion.build_conversion_stats(ctx)
        assert sink.tables["conversion_stats"][1] == ["2024-01", 2, 2, 1.0, 2, 1.0]

    def test_follows_raw_billing_dates(self, raw_data):
        raw_data["raw_stripe_subscriptions"] = [
            ["stripe_subscription_id", "status", "created_at", "first_payment_at"],
            ["sub_1", "active", "2024-01-25", "2024-02-20"],
        ]
        ctx, sink = _ctx(FrameSource(raw_data))
        conversion.build_conversion_stats(ctx)
        # org_a paid after its window closed, org_b has no subscription row left
        assert sink.tables["conversion_stats"][1] == ["2024-01", 2, 1, 0.5, 0, 0.0]

    def test_converted_within_window_needs_all_dates(self):
        info = conversion.OrgInfo()
        assert conversion.converted_within_window(info, 7) is False

    def test_missing_org_table(self, raw_data):
        tables = raw_data
        del tables["raw_clerk_orgs"]
        ctx, _ = _ctx(FrameSource(tables))
        with pytest.raises(MissingTable):
            conversion.build_conversion_stats(ctx)


class TestTypeAudit:
    def test_summary_and_detail_blocks(self, source):
        ctx, sink = _ctx(source)
        result = type_audit.build_type_audit(ctx)

        grid = sink.tables["arr_snapshot_audit"]
        assert result.rows_in == 2
        assert result.rows_out == 4
        assert len(grid) == 7

        assert tuple(grid[0]) == type_audit.summary_columns("trial_cohort_month", "snapshot_date")
        assert grid[1] == ["2024-01-15", 1, 150.5, 0, 1, 0, 0, 0, 1, 0, 0, 1, 0, 0, 0]
        assert grid[2] == ["bad-date", 1, 0.0, 0, 0, 1, 0, 0, 0, 0, 1, 0, 0, 1, 0]

        # one blank separator row
        assert all(v is None for v in grid[3])

        detail_header = type_audit.detail_columns("trial_cohort_month")
        assert tuple(grid[4][: len(detail_header)]) == detail_header
        assert grid[5][:12] == ["2024-01-15", "2023-12", 1, 150.5, 0, 1, 0, 0, 0, 1, 0, 0]
        assert grid[6][:12] == ["bad-date", "(blank)", 1, 0.0, 0, 0, 1, 0, 0, 0, 0, 1]

    def test_column_names(self):
        cols = type_audit.summary_columns("trial_cohort_month", "snapshot_date")
        assert cols[:7] == (
            "cohort_key",
            "row_count",
            "numeric_field_sum",
            "numeric_count",
            "numeric_as_text_count",
            "blank_count",
            "opaque_text_count",
        )
        assert "trial_cohort_month_date_as_text_count" in cols
        assert "snapshot_date_blank_count" in cols

    def test_month_grain(self, source):
        ctx, sink = _ctx(source, cohort_grain="month")
        type_audit.build_type_audit(ctx)
        assert sink.tables["arr_snapshot_audit"][1][0] == "2024-01"

    def test_empty_snapshot_raises(self, raw_data):
        ctx, sink = _ctx(_source_with(raw_data, arr_snapshot=[["snapshot_date", "trial_cohort_month", "total_arr"]]))
        with pytest.raises(EmptyInput):
            type_audit.build_type_audit(ctx)
        assert sink.tables == {}

    def test_missing_column_raises(self, raw_data):
        ctx, _ = _ctx(_source_with(raw_data, arr_snapshot=[["snapshot_date", "total_arr"], ["2024-01-01", 1]]))
        with pytest.raises(MissingColumns):
            type_audit.build_type_audit(ctx)

    def test_configured_field_names(self):
        tables = {"snap": [["Day", "Cohort", "ARR"], ["2024-03-01", "2024-02", 10], ["2024-03-01", "2024-02", 5]]}
        ctx, sink = _ctx(
            FrameSource(tables),
            type_audit_sheet="snap",
            type_audit_cohort_field="Day",
            type_audit_secondary_field="Cohort",
            type_audit_numeric_field="ARR",
        )
        result = type_audit.build_type_audit(ctx)
        grid = sink.tables["snap_audit"]
        assert result.rows_out == 2
        assert grid[1][:4] == ["2024-03", 2, 15, 2]


class TestMultiSubscriptionAudit:
    def test_only_orgs_with_several_subscriptions(self, source):
        ctx, sink = _ctx(source)
        result = multi_subscription.build_multi_subscription_audit(ctx)

        assert result.rows_in == 3
        assert result.rows_out == 1
        assert sink.tables["stripe_multi_sub_audit"] == [
            list(multi_subscription.COLUMNS),
            ["org_a", "Acme", "alice@acme.com", 2, "sub_2, sub_1", "trialing, active"],
        ]

    def test_no_multi_subscription_orgs_publishes_header_only(self, raw_data):
        ctx, sink = _ctx(
            _source_with(raw_data, raw_stripe_subscriptions=[["stripe_subscription_id", "status"], ["sub_1", "active"]],
                         raw_clerk_users=[["email", "created_at", "org_id", "stripe_subscription_id"],
                                          ["alice@acme.com", "2024-01-05", None, "sub_1"]])
        )
        result = multi_subscription.build_multi_subscription_audit(ctx)
        assert result.rows_out == 0
        assert sink.tables["stripe_multi_sub_audit"] == [list(multi_subscription.COLUMNS)]

    def test_owner_contact_prefers_owner_then_admin(self):
        members = [
            {"email": "m@x.io", "role": "org:member", "created_at": "2024-01-01"},
            {"email": "a@x.io", "role": "org:admin", "created_at": "2024-01-02"},
            {"email": "o@x.io", "role": "org:owner", "created_at": "2024-01-03"},
        ]
        assert multi_subscription.owner_contact(members) == "o@x.io"
        assert multi_subscription.owner_contact(members[:2]) == "a@x.io"
        assert multi_subscription.owner_contact(members[:1]) == "m@x.io"
        assert multi_subscription.owner_contact([]) == ""

    def test_owner_contact_earliest_wins(self):
        members = [
            {"email": "late@x.io", "role": "admin", "created_at": "2024-02-01"},
            {"email": "early@x.io", "role": "admin", "created_at": "2024-01-01"},
        ]
        assert multi_subscription.owner_contact(members) == "early@x.io"


class TestOnboardingStats:
    def test_monthly_rows_and_cutoff_periods(self, source):
        ctx, sink = _ctx(source)
        result = onboarding.build_onboarding_stats(ctx)

        assert result.rows_in == 4
        assert result.rows_out == 5
        grid = sink.tables["onboarding_stats"]
        assert grid[0] == list(onboarding.COLUMNS)
        assert grid[1] == ["2024-01", 2, 1, 0.5, 1, 0.5, 1, 0.5]
        assert grid[2] == ["2024-02", 1, 0, 0.0, 0, 0.0, 0, 0.0]
        assert grid[3] == ["Before 2024-01-06", 1, 1, 1.0, 0, 0.0, 0, 0.0]
        assert grid[4] == ["On/After 2024-01-06", 2, 0, 0.0, 1, 0.5, 1, 0.5]
        assert grid[5][:3] == ["TOTAL", 3, 1]
        assert grid[5][3] == pytest.approx(1 / 3)

    def test_without_cutoff_only_monthly_rows(self, source):
        ctx, sink = _ctx(source, onboarding_cutoff=None)
        result = onboarding.build_onboarding_stats(ctx)
        assert result.rows_out == 2
        assert [row[0] for row in sink.tables["onboarding_stats"][1:]] == ["2024-01", "2024-02"]

    def test_invalid_cutoff(self, source):
        ctx, _ = _ctx(source, onboarding_cutoff="someday")
        with pytest.raises(ValueError):
            onboarding.build_onboarding_stats(ctx)

    def test_missing_metric_columns(self, raw_data):
        ctx, _ = _ctx(_source_with(raw_data, raw_posthog_user_metrics=[["email", "calendar_connected"], ["a@b.c", True]]))
        with pytest.raises(MissingColumns):
            onboarding.build_onboarding_stats(ctx)

    def test_missing_email_column(self, raw_data):
        ctx, _ = _ctx(_source_with(raw_data, raw_clerk_users=[["user", "created_at"], ["u1", "2024-01-01"]]))
        with pytest.raises(MissingColumns):
            onboarding.build_onboarding_stats(ctx)

    def test_connection_flags(self):
        record = {
            "calendar_connected": "TRUE",
            "email_connected": None,
            "first_email_connected_date": None,
            "pm_financial_cents_first_connected_date": "2024-03-01",
        }
        assert onboarding.connection_flags(record) == {"calendar": True, "email": False, "pm": True}
