"""Tests for heuristic JSON repair."""

from __future__ import annotations

import json

import pytest

from call_ai.llm.json_repair import _null_dangling_key, is_valid_json, repair_json


class TestRepairJson:
    @pytest.mark.parametrize("text", [
        '{"a": 1}',
        '{"a": [1, 2, {"b": null}]}',
        "[]",
        '"just a string"',
    ])
    def test_valid_input_unchanged(self, text: str):
        assert repair_json(text) == text

    def test_trailing_comma(self):
        assert repair_json('{"a": 1,}') == '{"a": 1}'

    def test_only_first_trailing_comma_fixed(self):
        # Second comma survives; output is returned even though still invalid
        out = repair_json('{"a": [1,], "b": 2,}')
        assert out == '{"a": [1], "b": 2,}'
        assert not is_valid_json(out)

    def test_missing_closing_brace(self):
        assert json.loads(repair_json('{"name": "Ada"')) == {"name": "Ada"}

    def test_missing_opening_brace(self):
        assert json.loads(repair_json('"name": "Ada"}')) == {"name": "Ada"}

    def test_missing_value_becomes_null(self):
        assert json.loads(repair_json('{"a": , "b": 2}')) == {"a": None, "b": 2}

    def test_missing_value_needs_ascii_key(self):
        assert repair_json('{"\u00e9": , "b": 1}') == '{"\u00e9": , "b": 1}'

    def test_dangling_key_only_at_end(self):
        assert _null_dangling_key('{"a": 1, "b": ') == '{"a": 1, "b":null'
        assert _null_dangling_key('{"b": \n"c": 1}') == '{"b": \n"c": 1}'

    def test_nested_truncation(self):
        assert json.loads(repair_json('{"a": {"b": 1')) == {"a": {"b": 1}}

    def test_never_raises(self):
        assert repair_json("") == "{}"
        assert isinstance(repair_json("]]]{{{"), str)


class TestIsValidJson:
    def test_valid(self):
        assert is_valid_json('{"a": 1}')

    def test_invalid(self):
        assert not is_valid_json('{"a": 1')
        assert not is_valid_json("")
