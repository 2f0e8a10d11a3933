from __future__ import annotations

import pytest

from metrics_pipeline.identity.keys import has_key, normalize_email, normalize_id


def test_plus_address_fold():
    assert normalize_email("a+promo@x.com") == normalize_email("a@x.com") == "a@x.com"


def test_email_trim_and_lowercase():
    assert normalize_email("  Alice.Smith+News@Example.COM ") == "alice.smith@example.com"


@pytest.mark.parametrize("raw", ["a+b+c@x.com", "a+b@c+d@x.com", " B+@Y.org", "plain@x.com", "no-at-sign+tag", "", None, 12.0])
def test_email_normalization_is_idempotent(raw):
    once = normalize_email(raw)
    assert normalize_email(once) == once


def test_email_plus_without_at_is_kept():
    assert normalize_email("user+tag") == "user+tag"


def test_empty_email_has_no_key():
    assert normalize_email(None) == ""
    assert normalize_email("   ") == ""
    assert not has_key(normalize_email(""))


def test_id_trimmed_case_preserved():
    assert normalize_id("  Org_ABC ") == "Org_ABC"


def test_id_integral_float_renders_as_int():
    assert normalize_id(123.0) == "123"
    assert normalize_id(12.5) == "12.5"
    assert normalize_id(float("nan")) == ""
    assert normalize_id(None) == ""


@pytest.mark.parametrize("raw", [" x ", "sub_1", 7.0, 7, None])
def test_id_normalization_is_idempotent(raw):
    once = normalize_id(raw)
    assert normalize_id(once) == once


def test_every_plus_tag_folded_in_one_pass():
    # malformed exports can carry several "@"
    assert normalize_email("a+b@c+d@x.com") == "a@c@x.com"
