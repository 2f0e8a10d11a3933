from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from metrics_pipeline.classify.values import day_key, to_instant
from metrics_pipeline.identity.keys import normalize_id
from metrics_pipeline.models.step_result import JobResult
from metrics_pipeline.services.assembler import ReportBlock, ReportTable, publish
from metrics_pipeline.services.join_index import (
    JoinIndex,
    first_present,
    org_names,
    subscription_id_of,
    subscription_ids_by_org,
    users_by_org,
)
from metrics_pipeline.tables.reader import Record

from .base import ReportContext, read_table

"""Per-org trial and billing dates derived from the raw Clerk and Stripe exports.

Orgs reach their users through memberships (by normalized email) or the
user's own ``org_id``, and reach their subscriptions through those users.
For each org the earliest instant wins:

- trial start / end: the members' ``trial_start_date`` / ``trial_ends_at``,
  read from the Clerk metadata JSON when the columns are blank
- subscription start: the subscriptions' ``created_at``
- purchase: the subscriptions' ``first_payment_at``

Unparseable dates are skipped, and an org with none of them gets blanks.
"""

__all__ = [
    "COLUMNS",
    "SHEET",
    "OrgInfo",
    "build_org_info",
    "derive_org_info",
]

SHEET = "org_info"
ORGS_TABLE = "raw_clerk_orgs"
USERS_TABLE = "raw_clerk_users"
MEMBERSHIPS_TABLE = "raw_clerk_memberships"
SUBSCRIPTIONS_TABLE = "raw_stripe_subscriptions"

COLUMNS = (
    "org_id",
    "org_name",
    "member_count",
    "subscription_ids",
    "trial_start_date",
    "trial_end_date",
    "subscription_start_date",
    "purchase_date",
)

METADATA_COLUMNS = ("private_metadata", "public_metadata", "unsafe_metadata", "metadata")
TRIAL_START_FIELDS = ("trial_start_date", "trialStartDate")
TRIAL_END_FIELDS = ("trial_ends_at", "trial_end_date", "trialEndsAt")


@dataclass(frozen=True)
class OrgInfo:
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    subscription_start: datetime | None = None
    purchase: datetime | None = None


def _metadata(user: Record) -> dict[str, Any]:
    for column in METADATA_COLUMNS:
        text = normalize_id(user.get(column))
        if not text:
            continue
        try:
            parsed = json.loads(text)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return {}


def _user_date(user: Record, fields: Sequence[str]) -> datetime | None:
    value = first_present(user, *fields)
    if value is None:
        value = first_present(_metadata(user), *fields)
    return to_instant(value)


def _earliest(instants: Iterable[datetime | None]) -> datetime | None:
    present = [d for d in instants if d is not None]
    return min(present) if present else None


def _org_info(users: Sequence[Record], subs: Sequence[Record]) -> OrgInfo:
    return OrgInfo(
        trial_start=_earliest(_user_date(u, TRIAL_START_FIELDS) for u in users),
        trial_end=_earliest(_user_date(u, TRIAL_END_FIELDS) for u in users),
        subscription_start=_earliest(to_instant(s.get("created_at")) for s in subs),
        purchase=_earliest(to_instant(s.get("first_payment_at")) for s in subs),
    )


@dataclass(frozen=True)
class _Derived:
    orgs: list[Record]
    users_by_org: dict[str, list[Record]]
    sub_ids_by_org: dict[str, list[str]]
    info_by_id: dict[str, OrgInfo]


def _derive(ctx: ReportContext) -> _Derived:
    orgs = list(read_table(ctx, ORGS_TABLE))
    users = list(read_table(ctx, USERS_TABLE))
    memberships = list(read_table(ctx, MEMBERSHIPS_TABLE))
    subs_by_id = JoinIndex.unique(read_table(ctx, SUBSCRIPTIONS_TABLE), subscription_id_of)

    org_users = users_by_org(memberships, users)
    sub_ids = subscription_ids_by_org(memberships, users)
    info: dict[str, OrgInfo] = {}
    for org_id, group in org_users.items():
        subs = [s for s in (subs_by_id.get(i) for i in sub_ids.get(org_id, ())) if s is not None]
        info[org_id] = _org_info(group, subs)
    return _Derived(orgs, org_users, sub_ids, info)


def derive_org_info(ctx: ReportContext) -> dict[str, OrgInfo]:
    """org id -> derived dates, for every org that has at least one member."""
    return _derive(ctx).info_by_id


def _cell(value: datetime | None) -> str:
    return day_key(value) if value is not None else ""


def build_org_info(ctx: ReportContext) -> JobResult:
    derived = _derive(ctx)
    names = org_names(derived.orgs)

    rows: list[tuple[object, ...]] = []
    seen: set[str] = set()
    for org in derived.orgs:
        org_id = normalize_id(org.get("org_id"))
        if not org_id or org_id in seen:
            continue
        seen.add(org_id)
        info = derived.info_by_id.get(org_id) or OrgInfo()
        rows.append(
            (
                org_id,
                names.get(org_id, ""),
                len(derived.users_by_org.get(org_id, ())),
                ", ".join(derived.sub_ids_by_org.get(org_id, ())),
                _cell(info.trial_start),
                _cell(info.trial_end),
                _cell(info.subscription_start),
                _cell(info.purchase),
            )
        )

    table = ReportTable(SHEET, (ReportBlock(header=COLUMNS, rows=tuple(rows)),))
    rows_out = publish(ctx.sink, table)
    return JobResult(rows_in=len(derived.orgs), rows_out=rows_out)
