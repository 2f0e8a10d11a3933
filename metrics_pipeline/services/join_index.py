from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any

from metrics_pipeline.classify.values import to_instant
from metrics_pipeline.identity.keys import normalize_email, normalize_id

"""Cross-table lookup structures keyed by normalized identifiers.

Built fresh per run from the current raw tables and never persisted.
Referential integrity is not assumed: a lookup miss returns ``None`` (1:1)
or an empty tuple (1:many) and the caller decides the fallback.

Records whose key normalizes to ``""`` are skipped at build time so that
unrelated entities are never merged under an empty key.
"""

__all__ = [
    "JoinIndex",
    "earliest_by_key",
    "email_key_of",
    "org_names",
    "subscription_ids_by_org",
    "users_by_org",
]

Record = Mapping[str, Any]
KeyFn = Callable[[Record], str]


class JoinIndex:
    """1:1 or 1:many index of records by IdentityKey."""

    def __init__(self, *, multi: bool) -> None:
        self.multi = multi
        self._unique: dict[str, Record] = {}
        self._many: dict[str, list[Record]] = {}

    @classmethod
    def unique(cls, records: Iterable[Record], key_fn: KeyFn) -> JoinIndex:
        """1:1 index; the last record with a given key wins."""
        index = cls(multi=False)
        for record in records:
            key = key_fn(record)
            if not key:
                continue
            index._unique[key] = record
        return index

    @classmethod
    def many(cls, records: Iterable[Record], key_fn: KeyFn) -> JoinIndex:
        """1:many index; records are kept in input order per key."""
        index = cls(multi=True)
        for record in records:
            key = key_fn(record)
            if not key:
                continue
            index._many.setdefault(key, []).append(record)
        return index

    def get(self, key: str) -> Record | None:
        if self.multi:
            raise TypeError("get() on a 1:many index; use get_all()")
        if not key:
            return None
        return self._unique.get(key)

    def get_all(self, key: str) -> tuple[Record, ...]:
        if not self.multi:
            record = self.get(key)
            return (record,) if record is not None else ()
        return tuple(self._many.get(key, ()))

    def keys(self) -> Iterator[str]:
        return iter(self._many if self.multi else self._unique)

    def items(self) -> Iterator[tuple[str, tuple[Record, ...]]]:
        for key in self.keys():
            yield key, self.get_all(key)

    def __contains__(self, key: object) -> bool:
        return key in (self._many if self.multi else self._unique)

    def __len__(self) -> int:
        return len(self._many if self.multi else self._unique)


def email_key_of(record: Record) -> str:
    """Normalized email of a record, preferring a precomputed ``email_key``."""
    return normalize_email(record.get("email_key") or record.get("email"))


def first_present(record: Record, *fields: str) -> Any:
    """Value of the first field that is present and non-blank."""
    for name in fields:
        value = record.get(name)
        if value is not None and str(value).strip():
            return value
    return None


def org_names(orgs: Iterable[Record]) -> dict[str, str]:
    """org id -> display name (name, else slug, else empty string)."""
    index = JoinIndex.unique(orgs, lambda r: normalize_id(r.get("org_id")))
    out: dict[str, str] = {}
    for org_id, (record,) in index.items():
        out[org_id] = normalize_id(first_present(record, "org_name", "org_slug"))
    return out


def subscription_id_of(record: Record) -> str:
    return normalize_id(
        first_present(record, "stripe_subscription_id", "subscription_id", "stripesubscriptionid")
    )


def users_by_org(memberships: Iterable[Record], users: Iterable[Record]) -> dict[str, list[Record]]:
    """User rows belonging to each org, each at most once, in first-seen order.

    Two paths feed an org: memberships resolved to users through the
    normalized email, and user rows that carry their own ``org_id``. An org
    whose memberships resolve to nobody still gets an empty list.
    """
    user_list = list(users)
    user_by_email = JoinIndex.unique(user_list, email_key_of)
    members_by_org = JoinIndex.many(memberships, lambda r: normalize_id(r.get("org_id")))

    out: dict[str, list[Record]] = {}

    def add(org_id: str, user: Record) -> None:
        group = out.setdefault(org_id, [])
        if not any(u is user for u in group):
            group.append(user)

    for org_id, members in members_by_org.items():
        out.setdefault(org_id, [])
        for member in members:
            user = user_by_email.get(email_key_of(member))
            if user is not None:
                add(org_id, user)

    for user in user_list:
        org_id = normalize_id(user.get("org_id"))
        if org_id:
            add(org_id, user)
    return out


def subscription_ids_by_org(
    memberships: Iterable[Record], users: Iterable[Record]
) -> dict[str, list[str]]:
    """Every distinct subscription id touched by the users of each org (see ``users_by_org``)."""
    out: dict[str, list[str]] = {}
    for org_id, group in users_by_org(memberships, users).items():
        ids = out.setdefault(org_id, [])
        for user in group:
            sub_id = subscription_id_of(user)
            if sub_id and sub_id not in ids:
                ids.append(sub_id)
    return out


def earliest_by_key(records: Iterable[Record], key_fn: KeyFn, date_field: str) -> dict[str, datetime]:
    """key -> earliest parseable ``date_field`` instant among its records."""
    out: dict[str, datetime] = {}
    for key, group in JoinIndex.many(records, key_fn).items():
        instants = [d for d in (to_instant(r.get(date_field)) for r in group) if d is not None]
        if instants:
            out[key] = min(instants)
    return out
