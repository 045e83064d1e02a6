"""Unit tests for tool-call extraction and field resolution."""

import pytest

from responsekit.llm.tool_calls import (
    extract_tool_calls,
    function_call_output,
    resolve_tool_call,
    to_jsonable,
)


class TestExtractToolCalls:
    def test_picks_function_and_tool_call_items(self):
        response = {
            "output": [
                {"type": "message", "content": []},
                {"type": "function_call", "name": "a", "call_id": "c1"},
                {"type": "tool_call", "name": "b", "call_id": "c2"},
                {"type": "file_search_call"},
            ]
        }

        assert [item["name"] for item in extract_tool_calls(response)] == ["a", "b"]

    def test_missing_output(self):
        assert extract_tool_calls({}) == []
        assert extract_tool_calls({"output": None}) == []


class TestResolveToolCall:
    """Tests for the name / arguments / call id precedence contract."""

    def test_flat_function_call(self):
        call = resolve_tool_call(
            {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "lookup", "arguments": '{"q": "x"}'}
        )

        assert call.name == "lookup"
        assert call.call_id == "call_1"
        assert call.arguments == {"q": "x"}

    def test_nested_function_fields(self):
        call = resolve_tool_call(
            {"id": "call_9", "function": {"name": "lookup", "arguments": '{"q": 1}'}}
        )

        assert call.name == "lookup"
        assert call.call_id == "call_9"
        assert call.arguments == {"q": 1}

    def test_top_level_name_beats_nested(self):
        call = resolve_tool_call(
            {"name": "outer", "tool_name": "legacy", "function": {"name": "inner"}, "call_id": "c"}
        )
        assert call.name == "outer"

    def test_tool_name_is_last_resort(self):
        call = resolve_tool_call({"tool_name": "legacy", "tool_call_id": "tc_1"})

        assert call.name == "legacy"
        assert call.call_id == "tc_1"

    def test_top_level_arguments_beat_nested(self):
        call = resolve_tool_call(
            {"name": "f", "call_id": "c", "arguments": {"a": 1}, "function": {"arguments": '{"b": 2}'}}
        )
        assert call.arguments == {"a": 1}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", "", None, 42])
    def test_unusable_arguments_become_empty(self, raw):
        assert resolve_tool_call({"name": "f", "call_id": "c", "arguments": raw}).arguments == {}

    @pytest.mark.parametrize(
        "item",
        [
            {"call_id": "c"},
            {"name": "f"},
            {"name": "", "call_id": "c"},
        ],
    )
    def test_malformed_items_are_skipped(self, item):
        assert resolve_tool_call(item) is None


class TestOutputs:
    def test_string_output_is_passed_through(self):
        assert function_call_output("c1", "sunny") == {
            "type": "function_call_output",
            "call_id": "c1",
            "output": "sunny",
        }

    def test_structured_output_is_json_encoded(self):
        assert function_call_output("c1", {"error": "boom"})["output"] == '{"error": "boom"}'

    def test_to_jsonable_stringifies_unknown_types(self):
        from datetime import date

        assert to_jsonable({"day": date(2024, 1, 2)}) == {"day": "2024-01-02"}
