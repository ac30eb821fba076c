"""Tests for JSON parsing and repair utilities."""
import json

import pytest

from repair_assist.errors import JSONExtractionError
from repair_assist.json_utils import _repair_truncated_json, _fix_newlines_in_json_strings, extract_json


class TestRepairTruncatedJson:
    """Test _repair_truncated_json."""

    def test_already_valid(self):
        result = _repair_truncated_json('{"problem": "test"}')
        assert result == '{"problem": "test"}'

    def test_missing_closing_brace(self):
        result = _repair_truncated_json('{"problem": "test"')
        assert json.loads(result)["problem"] == "test"

    def test_truncated_array(self):
        result = _repair_truncated_json('{"repairSteps": ["a", "b"')
        assert json.loads(result)["repairSteps"] == ["a", "b"]

    def test_truncated_string_value(self):
        result = _repair_truncated_json('{"explanation": "truncated val')
        assert "truncated val" in json.loads(result)["explanation"]

    def test_trailing_comma_removed(self):
        result = _repair_truncated_json('{"a": 1,')
        assert not result.rstrip().endswith(',')

    def test_brackets_inside_strings_ignored(self):
        result = _repair_truncated_json('{"tip": "use [care] {always}"')
        assert json.loads(result)["tip"] == "use [care] {always}"

    def test_empty_input(self):
        assert _repair_truncated_json('') == ''


class TestFixNewlinesInJsonStrings:
    """Test _fix_newlines_in_json_strings."""

    def test_newline_inside_string(self):
        result = _fix_newlines_in_json_strings('{"text": "line1\nline2"}')
        assert json.loads(result)["text"] == "line1 line2"

    def test_newline_outside_string(self):
        text = '{\n  "key": "value"\n}'
        assert json.loads(_fix_newlines_in_json_strings(text))["key"] == "value"

    def test_escaped_quote_inside_string(self):
        result = _fix_newlines_in_json_strings('{"text": "say \\"hello\\""}')
        assert 'hello' in json.loads(result)["text"]

    def test_no_newlines(self):
        text = '{"key": "value"}'
        assert _fix_newlines_in_json_strings(text) == text


class TestExtractJson:
    """Test extract_json."""

    def test_direct_json(self):
        assert extract_json('{"problem": "Dead battery"}')["problem"] == "Dead battery"

    def test_json_in_code_block(self):
        text = 'Here is the diagnosis:\n```json\n{"problem": "Blown fuse"}\n```'
        assert extract_json(text)["problem"] == "Blown fuse"

    def test_json_with_surrounding_text(self):
        text = 'Based on the symptoms: {"repairSteps": []} Hope this helps.'
        assert "repairSteps" in extract_json(text)

    def test_truncated_json(self):
        text = '{"problem": "Bad capacitor", "repairSteps": ["Discharge it", "Desolder'
        result = extract_json(text)
        assert result["problem"] == "Bad capacitor"
        assert result["repairSteps"][0] == "Discharge it"

    def test_trailing_comma(self):
        result = extract_json('{"toolsNeeded": ["Multimeter",],}')
        assert result["toolsNeeded"] == ["Multimeter"]

    def test_no_json_raises(self):
        with pytest.raises(JSONExtractionError):
            extract_json("Sorry, I cannot help with that.")

    def test_empty_raises(self):
        with pytest.raises(JSONExtractionError):
            extract_json("")

    def test_array_is_not_an_object(self):
        with pytest.raises(JSONExtractionError):
            extract_json('```json\n["a", "b"]\n```')
