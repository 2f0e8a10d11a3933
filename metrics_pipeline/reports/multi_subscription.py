from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

from metrics_pipeline.classify.values import to_instant
from metrics_pipeline.identity.keys import normalize_id
from metrics_pipeline.models.step_result import JobResult
from metrics_pipeline.services.assembler import ReportBlock, ReportTable, publish
from metrics_pipeline.services.join_index import (
    JoinIndex,
    first_present,
    org_names,
    subscription_ids_by_org,
)
from metrics_pipeline.tables.reader import Record

from .base import ReportContext, read_table

"""Orgs paying through more than one billing subscription.

Subscriptions are tied to orgs through the users that hold them (membership
email -> user, or the user's own ``org_id``). Only orgs with at least two
distinct subscription ids are reported, sorted by subscription count
(descending), then org name, then org id.
"""

__all__ = [
    "COLUMNS",
    "SHEET",
    "build_multi_subscription_audit",
    "owner_contact",
]

SHEET = "stripe_multi_sub_audit"
SUBSCRIPTIONS_TABLE = "raw_stripe_subscriptions"
USERS_TABLE = "raw_clerk_users"
MEMBERSHIPS_TABLE = "raw_clerk_memberships"
ORGS_TABLE = "raw_clerk_orgs"

COLUMNS = (
    "entity_id",
    "entity_name",
    "owner_contact",
    "subscription_count",
    "subscription_ids",
    "subscription_statuses",
)

_NO_DATE = datetime.min.replace(tzinfo=UTC)


def _joined_at(member: Record) -> datetime:
    return to_instant(member.get("created_at")) or _NO_DATE


def owner_contact(members: Sequence[Record]) -> str:
    """Email of the earliest owner, else the earliest admin, else the earliest member."""
    ordered = sorted(members, key=_joined_at)
    for role in ("owner", "admin"):
        for member in ordered:
            if role in normalize_id(member.get("role")).lower():
                email = normalize_id(member.get("email"))
                if email:
                    return email
                break
    if ordered:
        return normalize_id(ordered[0].get("email"))
    return ""


def _statuses(sub_ids: Sequence[str], subscriptions: JoinIndex) -> list[str]:
    out: list[str] = []
    for sub_id in sub_ids:
        sub = subscriptions.get(sub_id)
        if sub is None:
            continue
        status = normalize_id(sub.get("status")).lower()
        if status and status not in out:
            out.append(status)
    return out


def build_multi_subscription_audit(ctx: ReportContext) -> JobResult:
    subs = list(read_table(ctx, SUBSCRIPTIONS_TABLE))
    users = list(read_table(ctx, USERS_TABLE))
    memberships = list(read_table(ctx, MEMBERSHIPS_TABLE))
    names = org_names(read_table(ctx, ORGS_TABLE))

    by_sub_id = JoinIndex.unique(
        subs, lambda r: normalize_id(first_present(r, "stripe_subscription_id", "subscription_id", "id"))
    )
    members_by_org = JoinIndex.many(memberships, lambda r: normalize_id(r.get("org_id")))

    rows: list[tuple[object, ...]] = []
    for org_id, sub_ids in subscription_ids_by_org(memberships, users).items():
        if len(sub_ids) <= 1:
            continue
        rows.append(
            (
                org_id,
                names.get(org_id, ""),
                owner_contact(members_by_org.get_all(org_id)),
                len(sub_ids),
                ", ".join(sub_ids),
                ", ".join(_statuses(sub_ids, by_sub_id)),
            )
        )
    rows.sort(key=lambda r: (-r[3], r[1], r[0]))

    table = ReportTable(SHEET, (ReportBlock(header=COLUMNS, rows=tuple(rows)),))
    rows_out = publish(ctx.sink, table)
    return JobResult(rows_in=len(subs), rows_out=rows_out)
