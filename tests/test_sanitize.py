"""Tests for gantry.sanitize."""

from gantry.messages import ToolCall
from gantry.sanitize import sanitize_tool_calls


def test_empty_list():
    assert sanitize_tool_calls([]) == []


def test_drops_missing_id_and_blank_name():
    calls = [
        ToolCall("", "read_file", {"path": "a"}),
        ToolCall("c1", "", {}),
        ToolCall("c2", "   ", {}),
        ToolCall("c3", "read_file", {"path": "b"}),
    ]
    assert [c.id for c in sanitize_tool_calls(calls)] == ["c3"]


def test_duplicate_id_keeps_first():
    calls = [
        ToolCall("c1", "read_file", {"path": "a"}),
        ToolCall("c1", "grep", {"pattern": "x"}),
    ]
    result = sanitize_tool_calls(calls)
    assert result == [calls[0]]


def test_same_name_and_arguments_collapse():
    calls = [
        ToolCall("c1", "read_file", {"path": "a", "offset": 1}),
        ToolCall("c2", "read_file", {"offset": 1, "path": "a"}),
    ]
    assert [c.id for c in sanitize_tool_calls(calls)] == ["c1"]


def test_different_arguments_kept_in_order():
    calls = [
        ToolCall("c2", "read_file", {"path": "b"}),
        ToolCall("c1", "read_file", {"path": "a"}),
        ToolCall("c3", "grep", {"path": "a"}),
    ]
    assert [c.id for c in sanitize_tool_calls(calls)] == ["c2", "c1", "c3"]


def test_idempotent():
    calls = [
        ToolCall("c1", "read_file", {"path": "a"}),
        ToolCall("c1", "read_file", {"path": "b"}),
        ToolCall("c2", "read_file", {"path": "a"}),
        ToolCall("c3", "", {}),
        ToolCall("c4", "execute_bash", {"command": "ls"}),
    ]
    once = sanitize_tool_calls(calls)
    assert sanitize_tool_calls(once) == once


def test_string_arguments_compare_by_value():
    calls = [
        ToolCall("c1", "grep", "{broken"),
        ToolCall("c2", "grep", "{broken"),
    ]
    assert len(sanitize_tool_calls(calls)) == 1
