from __future__ import annotations

import pytest

from app.crm.imports.coercion import (
    MALFORMED_JSON,
    TRUNCATED,
    WRONG_SHAPE,
    WRONG_SHAPE_MESSAGE,
    Unusable,
    coerce,
    interpret_response,
)


def test_coerce_fills_missing_collections_with_empty_lists() -> None:
    result = coerce({"companies": [{"_tempId": "c0", "company_name": "Acme"}]})

    assert result is not None
    assert result["companies"] == [{"_tempId": "c0", "company_name": "Acme"}]
    for key in ("contacts", "deals", "notes", "tasks"):
        assert result[key] == []


def test_coerce_unwraps_data_envelope() -> None:
    result = coerce({"data": {"contacts": [{"_tempId": "k0"}]}, "summary": "outer"})

    assert result is not None
    assert result["contacts"] == [{"_tempId": "k0"}]


def test_coerce_ignores_data_key_without_entities() -> None:
    result = coerce({"data": {"other": 1}, "deals": [{"_tempId": "d0"}]})

    assert result is not None
    assert result["deals"] == [{"_tempId": "d0"}]


def test_coerce_turns_keyed_objects_into_lists() -> None:
    result = coerce({"companies": {"a": {"_tempId": "c0"}, "b": {"_tempId": "c1"}}})

    assert result is not None
    assert result["companies"] == [{"_tempId": "c0"}, {"_tempId": "c1"}]


def test_coerce_replaces_scalars_with_empty_lists() -> None:
    result = coerce({"companies": "Acme", "tasks": [{"_tempId": "t0"}]})

    assert result is not None
    assert result["companies"] == []


def test_coerce_carries_other_keys_through() -> None:
    result = coerce({"notes": [{"_tempId": "n0"}], "stageMappings": {"Won": None}, "summary": "s"})

    assert result is not None
    assert result["stageMappings"] == {"Won": None}
    assert result["summary"] == "s"


@pytest.mark.parametrize(
    "parsed",
    [
        {},
        {"companies": [], "contacts": [], "deals": [], "notes": [], "tasks": []},
        {"summary": "nothing found"},
        {"companies": {}},
        [],
        "text",
        None,
    ],
)
def test_coerce_returns_none_when_every_collection_is_empty(parsed: object) -> None:
    assert coerce(parsed) is None


def test_coerce_is_idempotent() -> None:
    once = coerce({"data": {"companies": {"x": {"_tempId": "c0"}}}, "warnings": ["w"]})
    twice = coerce(once)

    assert once == twice


def test_interpret_response_accepts_fenced_json() -> None:
    result = interpret_response('```json\n{"contacts": [{"_tempId": "k0"}]}\n```', "end_turn")

    assert not isinstance(result, Unusable)
    assert result["contacts"] == [{"_tempId": "k0"}]


def test_interpret_response_classifies_malformed_json() -> None:
    result = interpret_response('{"companies": [}', "end_turn")

    assert isinstance(result, Unusable)
    assert result.reason == MALFORMED_JSON
    assert result.error.startswith("JSON parse failed:")
    assert result.stop_reason == "end_turn"


def test_interpret_response_classifies_wrong_shape() -> None:
    result = interpret_response('{"companies": [], "summary": "empty"}', "end_turn")

    assert isinstance(result, Unusable)
    assert result.reason == WRONG_SHAPE
    assert result.error == WRONG_SHAPE_MESSAGE


def test_interpret_response_accepts_explicit_empty_list_for_named_key() -> None:
    result = interpret_response('{"tasks": [], "summary": "Nothing to do."}', "end_turn", empty_list_key="tasks")

    assert not isinstance(result, Unusable)
    assert result["tasks"] == []
    assert result["companies"] == []
    assert result["summary"] == "Nothing to do."


@pytest.mark.parametrize(
    ("text", "stop_reason"),
    [
        ('{"summary": "Nothing to do."}', "end_turn"),
        ('{"tasks": "none"}', "end_turn"),
        ('{"tasks": []', "max_tokens"),
    ],
)
def test_interpret_response_still_rejects_other_empty_answers(text: str, stop_reason: str) -> None:
    result = interpret_response(text, stop_reason, empty_list_key="tasks")

    assert isinstance(result, Unusable)


@pytest.mark.parametrize("stop_reason", ["max_tokens", "length"])
def test_interpret_response_repairs_truncated_output(stop_reason: str) -> None:
    result = interpret_response('{"companies":[{"_tempId":"c0","company_name":"A', stop_reason)

    assert not isinstance(result, Unusable)
    assert result["companies"] == [{"_tempId": "c0", "company_name": "A"}]


def test_interpret_response_does_not_repair_complete_responses() -> None:
    result = interpret_response('{"companies":[{"_tempId":"c0","company_name":"A', "end_turn")

    assert isinstance(result, Unusable)
    assert result.reason == MALFORMED_JSON


def test_interpret_response_reports_truncation_over_other_reasons() -> None:
    unparseable = interpret_response("Sorry, I can't", "max_tokens")
    empty = interpret_response('{"companies": [', "max_tokens")

    assert isinstance(unparseable, Unusable)
    assert unparseable.reason == TRUNCATED
    assert isinstance(empty, Unusable)
    assert empty.reason == TRUNCATED
    assert empty.stop_reason == "max_tokens"
