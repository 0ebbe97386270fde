"""Tests for response repair parsing."""

from __future__ import annotations

import orjson
import pytest

from worldbook_forge.core.errors import ParseError
from worldbook_forge.parsing.response import (
    extract_longest_object,
    extract_worldbook_data,
    filter_response_tags,
    is_token_limit_error,
    parse_response,
    repair_unescaped_quotes,
)


def test_parses_clean_json_directly() -> None:
    assert parse_response('{"角色": {"张三": {"内容": "x"}}}') == {"角色": {"张三": {"内容": "x"}}}


def test_strips_code_fences() -> None:
    response = '```json\n{"a": 1}\n```'
    assert parse_response(response) == {"a": 1}


def test_extracts_object_from_commentary() -> None:
    response = 'Here is the result:\n{"a": {"b": [1, 2]}}\nHope this helps!'
    assert parse_response(response) == {"a": {"b": [1, 2]}}


def test_repairs_unescaped_quotes_in_values() -> None:
    assert parse_response('{"a": "he said "hi""}') == {"a": 'he said "hi"'}


def test_quote_repair_leaves_valid_json_alone() -> None:
    text = '{"a": "x", "b": ["y", "z"], "c": {"d": "e"}}'
    assert repair_unescaped_quotes(text) == text


def test_falls_back_to_longest_balanced_object() -> None:
    response = 'first {"x": 1} then {"a": {"b": 2}, "c": [1, 2, 3]} and done'
    assert parse_response(response) == {"a": {"b": 2}, "c": [1, 2, 3]}


def test_longest_object_ignores_braces_inside_strings() -> None:
    text = 'noise {"a": "}{"} tail'
    assert extract_longest_object(text) == '{"a": "}{"}'


def test_unparseable_response_raises_with_truncated_raw() -> None:
    response = "no json here " * 100
    with pytest.raises(ParseError) as excinfo:
        parse_response(response)
    assert len(excinfo.value.raw) <= 503
    assert excinfo.value.raw.endswith("...")


@pytest.mark.parametrize("response", ["", "   ", None])
def test_empty_response_raises(response) -> None:
    with pytest.raises(ParseError):
        parse_response(response)


def test_filter_removes_tag_blocks() -> None:
    text = '<thinking>step by step</thinking>{"a": 1}'
    assert filter_response_tags(text, "thinking") == '{"a": 1}'


def test_filter_removes_untagged_preamble() -> None:
    text = 'let me reason about it...</think>\n{"a": 1}'
    assert filter_response_tags(text, "thinking,/think") == '{"a": 1}'


def test_filter_with_no_tags_only_trims() -> None:
    assert filter_response_tags('  {"a": 1} ', "") == '{"a": 1}'


@pytest.mark.parametrize(
    "message",
    [
        "prompt is too long: 210000 tokens > 200000 maximum",
        "Error code: context_length_exceeded",
        "This request exceeded the maximum context window",
        "max_prompt_tokens reached",
    ],
)
def test_detects_token_limit_messages(message: str) -> None:
    assert is_token_limit_error(message)


@pytest.mark.parametrize("message", ["rate limited, retry later", "", None])
def test_ignores_unrelated_errors(message) -> None:
    assert not is_token_limit_error(message)


def test_extract_worldbook_data_keeps_object_categories() -> None:
    parsed = {"角色": {"张三": {}}, "note": "ignored", "地点": ["bad"], "组织": {}}
    assert extract_worldbook_data(parsed) == {"角色": {"张三": {}}, "组织": {}}
    assert extract_worldbook_data(parsed, ["组织"]) == {"组织": {}}
    assert extract_worldbook_data(["not", "a", "mapping"]) == {}


@pytest.mark.parametrize(
    "value",
    [
        {"角色": {"张三": {"关键词": ["张三", "老张"], "内容": "剑客\n\n---\n\n饮酒"}}},
        {"nested": {"list": [1, 2.5, None, True, {"deep": ["x", {"deeper": []}]}]}},
        {"quote": 'he said "hi"', "backslash": "C:\\path\\to", "tab": "a\tb", "dragon": "🐉"},
        [],
    ],
)
def test_serialized_values_parse_back_unchanged(value) -> None:
    assert parse_response(orjson.dumps(value).decode("utf-8")) == value


def test_integers_beyond_64_bits_come_back_as_floats() -> None:
    parsed = parse_response('{"a": 18446744073709552000}')
    assert isinstance(parsed["a"], float)
