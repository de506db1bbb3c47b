"""Tests for llm.function_call -- text-embedded function call detection."""

import json

from llm.base import ToolDefinition
from llm.function_call import format_tools_for_prompt, parse_function_call


def test_bare_json_call():
    resp = parse_function_call('{"name": "read_file", "arguments": {"target_file": "main.go"}}')
    assert not resp.is_text
    assert resp.function_call.name == "read_file"
    assert json.loads(resp.function_call.arguments) == {"target_file": "main.go"}
    assert resp.function_call.id.startswith("call_")


def test_call_surrounded_by_prose_and_fences():
    text = (
        "Let me look at the file first.\n```json\n"
        '{"name": "read_file", "arguments": {"target_file": "a.py"}}\n```\nThanks!'
    )
    resp = parse_function_call(text)
    assert resp.function_call.name == "read_file"


def test_nested_braces_and_braces_in_strings():
    text = '{"name": "write_file", "arguments": {"file_path": "x.py", "content": "d = {\\"k\\": {1: 2}}"}}'
    resp = parse_function_call(text)
    assert resp.function_call.name == "write_file"
    assert json.loads(resp.function_call.arguments)["content"] == 'd = {"k": {1: 2}}'


def test_stringified_arguments_kept():
    resp = parse_function_call('{"name": "echo", "arguments": "{\\"text\\": \\"hi\\"}"}')
    assert resp.function_call.arguments == '{"text": "hi"}'


def test_wrapper_and_explicit_id():
    text = '{"function_call": {"id": "call_abc", "name": "echo", "arguments": {"text": "x"}}}'
    resp = parse_function_call(text)
    assert resp.function_call.id == "call_abc"
    assert resp.function_call.name == "echo"


def test_first_valid_object_wins():
    text = '{"note": "not a call"} then {"name": "echo", "arguments": {"text": "1"}} {"name": "other", "arguments": {}}'
    resp = parse_function_call(text)
    assert resp.function_call.name == "echo"


def test_plain_text_stays_text():
    resp = parse_function_call("  The answer is 42.  ")
    assert resp.is_text
    assert resp.text == "The answer is 42."


def test_invalid_json_falls_back_to_text():
    text = 'Here: {"name": "read_file", "arguments": {"target_file": "a.py"'
    resp = parse_function_call(text)
    assert resp.is_text
    assert resp.function_call is None
    assert resp.text == text


def test_missing_name_or_arguments_is_text():
    assert parse_function_call('{"name": "", "arguments": {}}').is_text
    assert parse_function_call('{"name": "echo"}').is_text
    assert parse_function_call('{"name": "echo", "arguments": [1, 2]}').is_text
    assert parse_function_call('{"name": "echo", "arguments": "not json"}').is_text


def test_nested_call_inside_other_object_is_ignored():
    resp = parse_function_call('{"data": {"name": "echo", "arguments": {}}}')
    assert resp.is_text


def test_truncated_outer_object_never_yields_inner_call():
    text = 'Sure: {"name": "write_file", "arguments": {"name": "rm_everything", "arguments": {}}'
    resp = parse_function_call(text)
    assert resp.is_text
    assert resp.text == text


def test_truncated_wrapper_is_text():
    resp = parse_function_call('{"tool_call": {"name": "echo", "arguments": {"text": "x"}}')
    assert resp.is_text
    assert resp.function_call is None


def test_broken_object_skipped_then_later_call_found():
    text = 'Note {not json} and {"name": "echo", "arguments": {"text": "}{"}}'
    resp = parse_function_call(text)
    assert resp.function_call.name == "echo"
    assert json.loads(resp.function_call.arguments) == {"text": "}{"}


def test_none_input():
    resp = parse_function_call(None)
    assert resp.is_text and resp.text == ""


def test_format_tools_for_prompt():
    tools = [ToolDefinition("echo", "Echo text", {"type": "object", "properties": {"text": {"type": "string"}}})]
    text = format_tools_for_prompt(tools)
    assert text.startswith("\n\nAvailable tools:\n- echo: Echo text\n  Parameters: ")
    assert '{"name": "tool_name", "arguments": {' in text
    assert text.rstrip().endswith("respond normally with text.")
    assert format_tools_for_prompt([]) == ""
