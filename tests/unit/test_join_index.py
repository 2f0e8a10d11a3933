from __future__ import annotations

from datetime import UTC, datetime

import pytest

from metrics_pipeline.identity.keys import normalize_id
from metrics_pipeline.services.join_index import (
    JoinIndex,
    earliest_by_key,
    email_key_of,
    first_present,
    org_names,
    subscription_id_of,
    subscription_ids_by_org,
    users_by_org,
)


def _by_id(r):
    return normalize_id(r.get("id"))


def test_unique_last_record_wins():
    index = JoinIndex.unique([{"id": "a", "v": 1}, {"id": "a", "v": 2}, {"id": "b", "v": 3}], _by_id)
    assert len(index) == 2
    assert index.get("a")["v"] == 2
    assert index.get("missing") is None
    assert index.get_all("b") == ({"id": "b", "v": 3},)


def test_empty_keys_are_skipped():
    index = JoinIndex.unique([{"id": ""}, {"id": "  "}, {"id": None}], _by_id)
    assert len(index) == 0
    assert "" not in index
    assert index.get("") is None


def test_many_keeps_input_order():
    records = [{"id": "a", "n": 1}, {"id": "b", "n": 2}, {"id": "a", "n": 3}]
    index = JoinIndex.many(records, _by_id)
    assert [r["n"] for r in index.get_all("a")] == [1, 3]
    assert index.get_all("zzz") == ()
    assert list(index.keys()) == ["a", "b"]


def test_get_on_many_index_is_an_error():
    with pytest.raises(TypeError):
        JoinIndex.many([{"id": "a"}], _by_id).get("a")


def test_email_key_prefers_precomputed_key():
    assert email_key_of({"email_key": "x@y.com", "email": "other@y.com"}) == "x@y.com"
    assert email_key_of({"email": "A+tag@Y.com"}) == "a@y.com"
    assert email_key_of({}) == ""


def test_first_present_skips_blank_values():
    assert first_present({"a": " ", "b": None, "c": "v"}, "a", "b", "c") == "v"
    assert first_present({}, "a") is None


def test_org_names_falls_back_to_slug():
    orgs = [
        {"org_id": "o1", "org_name": "Acme", "org_slug": "acme"},
        {"org_id": "o2", "org_name": "", "org_slug": "beta"},
        {"org_id": "", "org_name": "ignored"},
    ]
    assert org_names(orgs) == {"o1": "Acme", "o2": "beta"}


def test_subscription_id_field_fallbacks():
    assert subscription_id_of({"stripe_subscription_id": " sub_1 "}) == "sub_1"
    assert subscription_id_of({"subscription_id": "sub_2"}) == "sub_2"
    assert subscription_id_of({"stripesubscriptionid": "sub_3"}) == "sub_3"
    assert subscription_id_of({}) == ""


def test_subscription_ids_by_org_joins_memberships_and_users():
    users = [
        {"email": "a@x.com", "stripe_subscription_id": "sub_1"},
        {"email": "b+work@x.com", "stripe_subscription_id": "sub_2"},
        {"email": "c@x.com", "stripe_subscription_id": "sub_3", "org_id": "org_2"},
        {"email": "d@x.com", "stripe_subscription_id": "sub_1", "org_id": "org_1"},
    ]
    memberships = [
        {"org_id": "org_1", "email": "a@x.com"},
        {"org_id": "org_1", "email": "B@x.com"},
        {"org_id": "org_1", "email": "unknown@x.com"},
        {"org_id": "org_3", "email": "nobody@x.com"},
    ]
    out = subscription_ids_by_org(memberships, users)
    assert out["org_1"] == ["sub_1", "sub_2"]
    assert out["org_2"] == ["sub_3"]
    assert out["org_3"] == []


def test_users_by_org_lists_each_member_once():
    alice = {"email": "alice@x.com", "org_id": "org_1"}
    bob = {"email": "bob+tag@x.com"}
    users = [alice, bob]
    memberships = [
        {"org_id": "org_1", "email": "Bob@x.com"},
        {"org_id": "org_1", "email": "alice@x.com"},
        {"org_id": "org_2", "email": "ghost@x.com"},
    ]
    out = users_by_org(memberships, users)
    assert [u["email"] for u in out["org_1"]] == ["bob+tag@x.com", "alice@x.com"]
    assert out["org_2"] == []


def test_earliest_by_key():
    records = [
        {"email": "a@x.com", "created_at": "2024-02-01"},
        {"email": "A+1@x.com", "created_at": "2024-01-15"},
        {"email": "a@x.com", "created_at": "garbage"},
        {"email": "b@x.com", "created_at": None},
    ]
    out = earliest_by_key(records, email_key_of, "created_at")
    assert out == {"a@x.com": datetime(2024, 1, 15, tzinfo=UTC)}
