"""Tests for storyloom.extractor: fence stripping, span finding, repair, fallback."""

import json

import pytest

from storyloom.extractor import (
    FALLBACK_PAYLOAD,
    balance_brackets,
    close_open_string,
    extract_json,
    extract_list,
    extract_object,
    find_json_span,
    repair_json,
    strip_ellipses,
    strip_fences,
    strip_trailing_commas,
)


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

class TestStripFences:
    def test_object_fence(self) -> None:
        assert strip_fences('```json\n{"scene": "A"}\n```') == '{"scene": "A"}'

    def test_array_fence(self) -> None:
        assert strip_fences('```\n[1, 2]\n```') == "[1, 2]"

    def test_no_fence(self) -> None:
        assert strip_fences('{"scene": "A"}') is None


class TestFindJsonSpan:
    def test_prefers_array(self) -> None:
        text = 'Choices: [{"id": 1, "text": "a"}] and later {"x": 1}'
        assert find_json_span(text) == '[{"id": 1, "text": "a"}]'

    def test_array_inside_object_belongs_to_object(self) -> None:
        text = 'Here you go: {"scene": "A", "choices": [1]} enjoy'
        assert find_json_span(text) == '{"scene": "A", "choices": [1]}'

    def test_none_without_brackets(self) -> None:
        assert find_json_span("just prose") is None


# ---------------------------------------------------------------------------
# Repair steps
# ---------------------------------------------------------------------------

def test_strip_trailing_commas():
    assert strip_trailing_commas('{"a": [1, 2,], }') == '{"a": [1, 2] }'


def test_strip_ellipses():
    assert strip_ellipses("[1, 2, ...]") == "[1, 2, ]"
    assert strip_ellipses("[1, …]") == "[1, ]"


def test_close_open_string():
    assert close_open_string('{"scene": "It was') == '{"scene": "It was"'


def test_close_open_string_fills_dangling_value():
    assert close_open_string('{"scene": ') == '{"scene": ""'


def test_close_open_string_ignores_escaped_quote():
    assert close_open_string('{"scene": "say \\"hi') == '{"scene": "say \\"hi"'


def test_balance_brackets_closes_innermost_first():
    assert balance_brackets('{"a": [{"b": 1') == '{"a": [{"b": 1}]}'


def test_balance_brackets_ignores_brackets_in_strings():
    assert balance_brackets('{"a": "[{"') == '{"a": "[{"}'


class TestRepairJson:
    def test_valid_json_untouched(self) -> None:
        text = '{"scene": "A", "choices": [1, 2]}'
        assert repair_json(text) == text

    def test_idempotent(self) -> None:
        once = repair_json('{"scene": "A", "choices": [1, 2,')
        assert repair_json(once) == once
        assert json.loads(once) == {"scene": "A", "choices": [1, 2]}

    def test_truncated_choice_list(self) -> None:
        text = '{"scene": "It was dark", "choices": [{"id": 1, "text": "Run"'
        assert json.loads(repair_json(text))["choices"][0]["text"] == "Run"

    def test_ellipsis_then_trailing_comma(self) -> None:
        assert json.loads(repair_json('{"choices": [1, 2, ...]}')) == {"choices": [1, 2]}


# ---------------------------------------------------------------------------
# extract_json
# ---------------------------------------------------------------------------

class TestExtractJson:
    def test_fenced_with_trailing_comma(self) -> None:
        raw = '```json\n{"scene": "A", "choices": [1,2,]}\n```'
        assert extract_json(raw) == {"scene": "A", "choices": [1, 2]}

    def test_object_in_prose(self) -> None:
        assert extract_json('Sure! {"scene": "B"} Hope this helps.') == {"scene": "B"}

    def test_unterminated_scene(self) -> None:
        assert extract_json('{"scene": "The door creaks') == {"scene": "The door creaks"}

    def test_no_json_gives_fallback(self) -> None:
        assert extract_json("I cannot help with that.") == FALLBACK_PAYLOAD

    def test_fallback_is_a_copy(self) -> None:
        result = extract_json("")
        result["choices"].append("x")
        assert FALLBACK_PAYLOAD["choices"] == []

    @pytest.mark.parametrize("raw", [
        "",
        None,
        b"\xff\xfe\x00garbage",
        "\x00\x01\x02",
        "[",
        "{",
        "}}]]",
        '{"scene": ',
        '"just a string',
        "[" * 5000,
        '{"a": 1}',
    ])
    def test_total(self, raw) -> None:
        result = extract_json(raw)
        json.dumps(result)

    def test_minimal_object_recovery(self) -> None:
        raw = '{"scene": "Kept", "mood": "calm"} and then {"junk": ]}'
        assert extract_json(raw) == {"scene": "Kept", "mood": "calm"}


def test_extract_object_rejects_list():
    assert extract_object("[1, 2]") == FALLBACK_PAYLOAD


def test_extract_list_from_fence():
    raw = '```json\n[{"id": 1, "text": "a"}, {"id": 2, "text": "b"}]\n```'
    assert [c["text"] for c in extract_list(raw)] == ["a", "b"]


def test_extract_list_from_choices_key():
    assert extract_list('{"choices": [{"text": "a"}]}') == [{"text": "a"}]


def test_extract_list_nothing_usable():
    assert extract_list("nothing here") == []
