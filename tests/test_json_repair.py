"""Tests for JSON extraction and truncation repair."""

import pytest

from brokerage_ledger.exceptions import MalformedResponseError
from brokerage_ledger.services.json_repair import (
    close_open_structures,
    extract_json_text,
    load_json_lenient,
    parse_response_json,
)


class TestExtractJsonText:
    def test_prefers_fenced_block(self):
        text = 'Sure.\n```json\n{"transactions": []}\n```\nAnything else?'

        assert extract_json_text(text) == '{"transactions": []}'

    def test_unlabelled_fence(self):
        assert extract_json_text('```\n[1, 2]\n```') == "[1, 2]"

    def test_brace_span_without_fence(self):
        text = 'Result: {"a": {"b": 1}} -- done'

        assert extract_json_text(text) == '{"a": {"b": 1}}'

    def test_truncated_document_runs_to_end(self):
        text = 'Result: {"a": [1, 2'

        assert extract_json_text(text) == '{"a": [1, 2'

    def test_unterminated_fence_is_still_extracted(self):
        text = '```json\n{"a": [1, 2'

        assert extract_json_text(text) == '{"a": [1, 2'

    def test_no_json_returns_none(self):
        assert extract_json_text("I cannot help with that.") is None


class TestCloseOpenStructures:
    def test_closes_brackets_in_order(self):
        assert close_open_structures('{"a": [1, {"b": 2') == '{"a": [1, {"b": 2}]}'

    def test_closes_open_string(self):
        assert close_open_structures('{"a": "trunc') == '{"a": "trunc"}'

    def test_drops_dangling_comma(self):
        assert close_open_structures('{"a": [1, 2,') == '{"a": [1, 2]}'

    def test_brackets_inside_strings_are_ignored(self):
        assert close_open_structures('{"a": "[{"') == '{"a": "[{"}'


class TestLoadJsonLenient:
    def test_valid_json_is_untouched(self):
        assert load_json_lenient('{"a": 1}') == {"a": 1}

    def test_truncated_array_keeps_complete_items(self):
        text = '{"transactions": [{"id": 1}, {"id": 2}, {"id": 3, "name": "thr'

        result = load_json_lenient(text)

        assert result["transactions"][:2] == [{"id": 1}, {"id": 2}]

    def test_dangling_key_is_cut_back(self):
        text = '{"transactions": [{"id": 1}, {"id": 2, "name":'

        result = load_json_lenient(text)

        assert result == {"transactions": [{"id": 1}, {"id": 2}]}

    def test_unrecoverable_text_raises(self):
        with pytest.raises(MalformedResponseError):
            load_json_lenient("{not json at all")


class TestParseResponseJson:
    def test_fenced_truncated_response(self):
        text = 'Here you go:\n```json\n{"transactions": [{"id": 1}, {"id": 2'

        result = parse_response_json(text)

        assert result["transactions"][0] == {"id": 1}

    def test_text_without_json_raises(self):
        with pytest.raises(MalformedResponseError) as exc_info:
            parse_response_json("Rate limit exceeded, try later")

        assert "excerpt" in exc_info.value.context
