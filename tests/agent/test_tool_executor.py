"""Tests for agent.tool_executor -- single function-call execution.

Run with:
    python -m pytest tests/agent/test_tool_executor.py -v
"""

import dataclasses
from unittest.mock import MagicMock

import pytest

from agent.tool_executor import (
    ToolExecConfig,
    execute_tool_call,
    is_error_content,
    sanitize_tool_output,
    strip_ansi,
)
from cge_errors import ValidationError
from llm.base import FunctionCall
from tools.base import Tool, ToolErrorCode, ToolRegistry


# ---------------------------------------------------------------------------
# Output sanitization
# ---------------------------------------------------------------------------


class TestSanitize:
    def test_strips_ansi_sequences(self):
        colored = "\x1b[31mred\x1b[0m \x1b]0;title\x07plain\x1bM"
        assert strip_ansi(colored) == "red plain"

    def test_removes_nul_bytes(self):
        assert sanitize_tool_output("a\x00b\x00c") == "abc"

    def test_truncates_with_marker(self):
        out = sanitize_tool_output("x" * 5000, max_chars=2000)
        assert out.startswith("x" * 2000)
        assert out.endswith("[output truncated: 5000 chars total]")
        assert len(out) < 2100

    def test_short_output_untouched(self):
        assert sanitize_tool_output("fine", max_chars=2000) == "fine"
        assert sanitize_tool_output("") == ""

    def test_error_prefix_detection(self):
        assert is_error_content("ERROR: bad")
        assert is_error_content("Error: tool not found")
        assert not is_error_content("all good")


class TestToolExecConfig:
    def test_frozen(self):
        cfg = ToolExecConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.tool_timeout_s = 1


# ---------------------------------------------------------------------------
# execute_tool_call
# ---------------------------------------------------------------------------


def _callbacks():
    return MagicMock(), MagicMock(), MagicMock()


class TestExecuteToolCall:
    @pytest.mark.asyncio
    async def test_successful_call_reports_start_progress_complete(self, tool_registry):
        on_start, on_progress, on_complete = _callbacks()
        call = FunctionCall("echo", '{"text": "hello"}', id="call_1")
        execution = await execute_tool_call(
            ToolExecConfig(), tool_registry, call,
            on_start=on_start, on_progress=on_progress, on_complete=on_complete,
        )
        assert execution.success and execution.dispatched
        assert execution.content == "hello"
        on_start.assert_called_once_with("call_1", "echo", '{"text": "hello"}')
        fractions = [c.args[1] for c in on_progress.call_args_list]
        assert fractions == [0.0, 1.0]
        args = on_complete.call_args.args
        assert args[:4] == ("call_1", "echo", True, "hello")

    @pytest.mark.asyncio
    async def test_unknown_tool_is_recoverable(self, tool_registry):
        on_start, _, on_complete = _callbacks()
        execution = await execute_tool_call(
            ToolExecConfig(), tool_registry, FunctionCall("nope", "{}"),
            on_start=on_start, on_complete=on_complete,
        )
        assert not execution.success
        assert not execution.dispatched
        assert execution.content.startswith("Error: tool not found: nope")
        assert "echo" in execution.content
        on_start.assert_called_once()
        assert on_complete.call_args.args[2] is False

    @pytest.mark.asyncio
    async def test_disallowed_tool_treated_as_unknown(self, tool_registry):
        cfg = ToolExecConfig(allowed_tools=frozenset({"echo"}))
        execution = await execute_tool_call(cfg, tool_registry, FunctionCall("broken", "{}"))
        assert execution.error_kind == "not_found"
        assert "Available tools: echo" in execution.content

    @pytest.mark.asyncio
    async def test_slow_tool_times_out(self, tool_registry):
        cfg = ToolExecConfig(tool_timeout_s=0.05)
        execution = await execute_tool_call(cfg, tool_registry, FunctionCall("slow", "{}"))
        assert not execution.success
        assert execution.dispatched
        assert execution.error_kind == "timeout"
        assert execution.content.startswith("ERROR: Tool 'slow' timed out")
        assert tool_registry.get("slow").cancelled

    @pytest.mark.asyncio
    async def test_raising_tool_becomes_error_content(self, tool_registry):
        execution = await execute_tool_call(ToolExecConfig(), tool_registry, FunctionCall("broken", "{}"))
        assert execution.error_kind == "exception"
        assert "kaboom" in execution.content
        assert is_error_content(execution.content)

    @pytest.mark.asyncio
    async def test_bad_arguments_are_tool_errors(self, tool_registry):
        execution = await execute_tool_call(ToolExecConfig(), tool_registry, FunctionCall("echo", "{}"))
        assert execution.error_kind == "tool_error"
        assert execution.content.startswith("ERROR: Required parameter 'text' is missing")

    @pytest.mark.asyncio
    async def test_validation_error_raised_by_tool_is_folded(self):
        class StrictTool(Tool):
            name = "strict"
            description = "Decodes its arguments without catching"
            parameters = {"type": "object", "properties": {}}

            async def execute(self, raw_args, progress=None):
                raise ValidationError("limit", "must be positive")

        execution = await execute_tool_call(
            ToolExecConfig(), ToolRegistry([StrictTool()]), FunctionCall("strict", "{}")
        )
        assert execution.dispatched and not execution.success
        assert execution.error_kind == "tool_error"
        assert execution.result.standardized_error.code == ToolErrorCode.INVALID_PARAMETERS
        assert execution.content.startswith("ERROR: Invalid parameter 'limit': must be positive")

    @pytest.mark.asyncio
    async def test_output_is_sanitized_and_capped(self, tool_registry):
        noisy = "\x1b[32m" + "y" * 500 + "\x00"
        cfg = ToolExecConfig(max_tool_result_chars=100)
        execution = await execute_tool_call(
            cfg, tool_registry, FunctionCall("echo", '{"text": "%s"}' % noisy.replace("\x1b", "\\u001b").replace("\x00", "\\u0000"))
        )
        assert "\x1b" not in execution.content
        assert "\x00" not in execution.content
        assert "[output truncated: 500 chars total]" in execution.content

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_break_execution(self, tool_registry):
        def explode(*args):
            raise RuntimeError("observer bug")

        execution = await execute_tool_call(
            ToolExecConfig(), tool_registry, FunctionCall("echo", '{"text": "ok"}'),
            on_start=explode, on_progress=explode, on_complete=explode,
        )
        assert execution.success
