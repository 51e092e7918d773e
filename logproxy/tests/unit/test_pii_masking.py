from __future__ import annotations

import copy

import pytest

from logproxy.domain.models import PiiRule
from logproxy.services.pii_masking import (
    MASKED,
    build_matchers,
    mask_document,
    mask_hits,
    mask_search_response,
    partial_mask,
    pii_action,
)


def _rules(*pairs: tuple[str, str]) -> list[PiiRule]:
    return [PiiRule(pattern=pattern, action=action) for pattern, action in pairs]


def test_mask_replaces_nested_leaf_and_keeps_siblings() -> None:
    document = {"user": {"email": "a@b.com", "name": "Bob"}}
    masked = mask_document(document, _rules(("user.email", "mask")))
    assert masked == {"user": {"email": "[masked]", "name": "Bob"}}


@pytest.mark.parametrize(
    "rules",
    [
        (("user.email", "mask"), ("user.email", "hide")),
        (("user.email", "hide"), ("user.email", "mask")),
    ],
)
def test_hide_wins_over_mask_on_same_path(rules) -> None:
    document = {"user": {"email": "a@b.com", "name": "Bob"}}
    masked = mask_document(document, _rules(*rules))
    assert masked == {"user": {"name": "Bob"}}


def test_hide_wildcard_removes_every_child() -> None:
    document = {"user": {"email": "a@b.com", "name": "Bob"}, "message": "ok"}
    masked = mask_document(document, _rules(("user.email", "mask"), ("user.*", "hide")))
    assert masked == {"user": {}, "message": "ok"}


def test_no_rules_returns_independent_copy() -> None:
    document = {"user": {"email": "a@b.com"}}
    result = mask_document(document, [])
    assert result == document
    assert result is not document
    result["user"]["email"] = "changed"
    assert document["user"]["email"] == "a@b.com"


def test_pattern_does_not_match_path_with_trailing_newline() -> None:
    masked = mask_document({"email\n": "a@b.com"}, _rules(("email", "hide")))
    assert masked == {"email\n": "a@b.com"}


@pytest.mark.parametrize(
    "rules",
    [
        (("user.email", "mask"), ("user.*", "partial")),
        (("user.*", "partial"), ("user.email", "mask")),
    ],
)
def test_mask_wins_over_partial_in_either_order(rules) -> None:
    masked = mask_document({"user": {"email": "alice@example.com"}}, _rules(*rules))
    assert masked["user"]["email"] == MASKED


def test_pii_action_precedence() -> None:
    matchers = build_matchers(_rules(("a.*", "partial"), ("a.b", "mask"), ("a.c", "hide")))
    assert pii_action("a.b", matchers) == "mask"
    assert pii_action("a.c", matchers) == "hide"
    assert pii_action("a.d", matchers) == "partial"
    assert pii_action("z", matchers) is None


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", ""),
        ("a", "*"),
        ("ab", "**"),
        ("abc", "a***c"),
        ("abcd", "a***d"),
        ("abcde", "ab***de"),
        ("abcdef", "ab***ef"),
        (1234567, "12***67"),
        (True, "t***e"),
        (None, None),
        ({"k": "v"}, MASKED),
        (["x"], MASKED),
    ],
)
def test_partial_mask_boundaries(value, expected) -> None:
    assert partial_mask(value) == expected


def test_mask_on_container_replaces_it_wholesale() -> None:
    document = {"user": {"email": "a@b.com", "address": {"city": "Oslo"}}}
    masked = mask_document(document, _rules(("user.address", "mask")))
    assert masked["user"]["address"] == MASKED
    assert masked["user"]["email"] == "a@b.com"


def test_array_indices_are_path_segments() -> None:
    document = {"contacts": [{"email": "a@b.com"}, {"email": "c@d.com", "phone": "555"}]}
    masked = mask_document(document, _rules(("contacts.*.email", "hide"), ("contacts.1.phone", "partial")))
    assert masked == {"contacts": [{}, {"phone": "5***5"}]}


def test_hidden_array_elements_are_removed() -> None:
    masked = mask_document({"tags": ["a", "secret", "c"]}, _rules(("tags.1", "hide")))
    assert masked == {"tags": ["a", "c"]}


def test_wildcard_does_not_treat_dots_as_regex() -> None:
    masked = mask_document({"userXemail": "a@b.com"}, _rules(("user.email", "mask")))
    assert masked == {"userXemail": "a@b.com"}


def test_input_document_is_not_mutated() -> None:
    document = {"user": {"email": "a@b.com", "tokens": ["t1", "t2"]}}
    original = copy.deepcopy(document)
    mask_document(document, _rules(("user.email", "mask"), ("user.tokens", "hide")))
    assert document == original


def test_mask_hits_only_touches_source() -> None:
    hits = [{"_index": "logs-app", "_id": "secret-id", "_score": 2.0, "_source": {"id": "x", "email": "a@b.com"}}]
    masked = mask_hits(hits, _rules(("*", "mask")))
    # The root of _source is the empty path, which "*" also matches.
    assert masked[0]["_source"] == MASKED
    assert masked[0]["_id"] == "secret-id"
    assert masked[0]["_index"] == "logs-app"

    masked = mask_hits(hits, _rules(("email", "hide"), ("_id", "mask")))
    assert masked[0]["_source"] == {"id": "x"}
    assert masked[0]["_id"] == "secret-id"


def test_hidden_source_root_becomes_empty_object() -> None:
    hits = [{"_id": "1", "_source": {"a": 1}}]
    masked = mask_hits(hits, _rules(("*", "hide")))
    assert masked == [{"_id": "1", "_source": {}}]


def test_mask_search_response_preserves_envelope() -> None:
    data = {
        "took": 3,
        "hits": {"total": {"value": 1}, "hits": [{"_id": "1", "_source": {"user": {"email": "a@b.com"}}}]},
        "aggregations": {"by_user": {"buckets": [{"key": "a@b.com"}]}},
    }
    masked = mask_search_response(data, _rules(("user.email", "mask")))
    assert masked["took"] == 3
    assert masked["hits"]["total"] == {"value": 1}
    assert masked["hits"]["hits"][0]["_source"]["user"]["email"] == MASKED
    assert data["hits"]["hits"][0]["_source"]["user"]["email"] == "a@b.com"
    assert masked["aggregations"] == data["aggregations"]


def test_mask_search_response_ignores_non_search_payloads() -> None:
    assert mask_search_response({"acknowledged": True}, _rules(("a", "mask"))) == {"acknowledged": True}
