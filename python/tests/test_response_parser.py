from __future__ import annotations

import pytest

from undertekst.response_parser import (
    ResponseParseError,
    ResponseValidationError,
    has_target_script,
    parse_translation_pairs,
    parse_translation_pairs_with_strategy,
    salvage_truncated_json,
    validate_translation_pairs,
)


def test_array_of_pairs():
    strategy, pairs = parse_translation_pairs_with_strategy('[["u1", "一"], ["u2", "二"]]')

    assert strategy == "strict_json"
    assert pairs == [("u1", "一"), ("u2", "二")]


def test_object_with_root_key_and_text_synonyms():
    raw = '{"translations": [{"id": "a", "translation": " x "}, {"id": "b", "translatedText": "y"}, {"id": "c"}]}'

    assert parse_translation_pairs(raw) == [("a", "x"), ("b", "y")]


def test_unknown_text_key_falls_back_to_first_string_value():
    raw = '{"s": [{"id": "a", "start": "0", "zh": "你好"}]}'

    assert parse_translation_pairs(raw) == [("a", "你好")]


def test_code_fence_and_surrounding_prose():
    fenced = '```json\n{"segments": [{"id": "a", "text": "x"}]}\n```'
    prose = 'Sure, here you go: {"segments": [{"id": "a", "text": "x"}]} Hope it helps.'

    assert parse_translation_pairs(fenced) == [("a", "x")]
    assert parse_translation_pairs(prose) == [("a", "x")]


def test_truncated_object_is_salvaged():
    raw = '{"segments": [{"id": "u1", "text": "一"}, {"id": "u2", "text": "二"}, {"id": "u3", "te'

    strategy, pairs = parse_translation_pairs_with_strategy(raw)

    assert strategy == "salvaged_json"
    assert pairs == [("u1", "一"), ("u2", "二")]


def test_salvage_closes_truncated_arrays():
    assert salvage_truncated_json('[{"id": "a", "text": "x"}, {"id": "b"') == [{"id": "a", "text": "x"}]
    assert salvage_truncated_json('[["a", "x"], ["b", "y"], ["c", "z') == [["a", "x"], ["b", "y"]]
    assert salvage_truncated_json("no json here") is None


def test_ndjson_lines_with_noise():
    raw = "```\n" + '{"id": "u1", "text": "a"},\n' + "not json\n\n" + 'item: {"id": "u2", "text": "b"}\n' + "```"

    strategy, pairs = parse_translation_pairs_with_strategy(raw)

    assert strategy == "ndjson"
    assert pairs == [("u1", "a"), ("u2", "b")]


@pytest.mark.parametrize("raw", ["", "   ", "I cannot help with that."])
def test_unparsable_output_raises(raw):
    with pytest.raises(ResponseParseError):
        parse_translation_pairs(raw)


def test_parse_error_carries_preview():
    with pytest.raises(ResponseParseError) as excinfo:
        parse_translation_pairs("x" * 1000)

    assert excinfo.value.preview == "x" * 400
    assert "translate output missing JSON" in str(excinfo.value)


def test_chinese_validation():
    latin = [("a", "hello"), ("b", "world"), ("c", "again")]

    with pytest.raises(ResponseValidationError, match="does not look like zh"):
        validate_translation_pairs(latin, "zh", 3)

    # Too few items to judge.
    validate_translation_pairs(latin, "zh", 2)
    # One Han item is enough.
    validate_translation_pairs(latin + [("d", "你好")], "zh-cn", 4)
    # No script check for Latin targets.
    validate_translation_pairs(latin, "fr", 3)


def test_target_script_detection():
    assert has_target_script("こんにちは", "ja")
    assert has_target_script("안녕하세요", "ko")
    assert not has_target_script("hello", "ko")
    assert has_target_script("anything", "de")
