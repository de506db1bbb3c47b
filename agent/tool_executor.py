"""Tool call execution with frozen configuration.

Executes one function call requested by the model: registry lookup,
allowed-tool filtering, per-tool timeout, progress reporting and output
sanitization. Every failure mode a model can trigger (unknown tool, bad
arguments, a tool raising, a tool timing out) comes back as a failed
``ToolExecution`` whose ``content`` explains the problem; nothing here
aborts the run. ``asyncio.CancelledError`` is never caught.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet, Optional

from cge_constants import DEFAULT_TOOL_TIMEOUT_S, MAX_TOOL_RESULT_CHARS
from cge_errors import ToolExecutionError, ToolNotFoundError, ValidationError
from llm.base import FunctionCall
from tools.base import StandardizedToolError, ToolErrorCode, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

# CSI (colors, cursor movement), OSC (titles, hyperlinks) and two-byte escapes.
_ANSI_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ANSI_ESC_RE = re.compile(r"\x1b[@-Z\\-_]")

TRUNCATION_MARKER = "\n... [output truncated: {total} chars total]"

# (call_id, tool_name, raw_arguments)
ToolStartCallback = Callable[[str, str, str], None]
# (call_id, fraction, status, step, total_steps)
ToolProgressCallback = Callable[[str, float, str, int, int], None]
# (call_id, tool_name, success, content, duration_s)
ToolCompleteCallback = Callable[[str, str, bool, str, float], None]


def strip_ansi(text: str) -> str:
    text = _ANSI_OSC_RE.sub("", text)
    text = _ANSI_CSI_RE.sub("", text)
    return _ANSI_ESC_RE.sub("", text)


def sanitize_tool_output(text: str, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    """Strip terminal escapes and NUL bytes, then cap the length.

    The cap keeps the first *max_chars* characters and appends a marker
    naming the full (cleaned) length.
    """
    if not text:
        return ""
    cleaned = strip_ansi(text).replace("\x00", "")
    if max_chars and len(cleaned) > max_chars:
        return cleaned[:max_chars] + TRUNCATION_MARKER.format(total=len(cleaned))
    return cleaned


@dataclass(frozen=True)
class ToolExecConfig:
    """Immutable configuration for tool execution."""

    tool_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S
    max_tool_result_chars: int = MAX_TOOL_RESULT_CHARS
    allowed_tools: FrozenSet[str] = frozenset()


@dataclass
class ToolExecution:
    """Outcome of one function call, ready to be stored as a tool message."""

    call: FunctionCall
    content: str
    success: bool
    dispatched: bool
    duration_s: float = 0.0
    result: Optional[ToolResult] = None
    error_kind: Optional[str] = None  # not_found | timeout | exception | tool_error


def _safe_call(callback, *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as cb_err:
        logger.debug("Tool callback error: %s", cb_err)


async def execute_tool_call(
    config: ToolExecConfig,
    registry: ToolRegistry,
    call: FunctionCall,
    *,
    on_start: Optional[ToolStartCallback] = None,
    on_progress: Optional[ToolProgressCallback] = None,
    on_complete: Optional[ToolCompleteCallback] = None,
) -> ToolExecution:
    """Execute *call* against *registry*.

    Calls *on_start* before and *on_complete* after every call (including
    unknown tools) so consumers always see a matching pair per call id.
    """
    start_time = time.monotonic()
    _safe_call(on_start, call.id, call.name, call.arguments)

    def finish(execution: ToolExecution) -> ToolExecution:
        execution.duration_s = time.monotonic() - start_time
        _safe_call(on_complete, call.id, call.name, execution.success,
                   execution.content, execution.duration_s)
        return execution

    tool = registry.get(call.name)
    if tool is not None and config.allowed_tools and call.name not in config.allowed_tools:
        tool = None
    if tool is None:
        available = sorted(config.allowed_tools) if config.allowed_tools else registry.names()
        err = ToolNotFoundError(call.name)
        logger.warning("%s (available: %s)", err, ", ".join(available))
        content = f"Error: {err}. Available tools: {', '.join(available)}"
        return finish(ToolExecution(call, content, success=False, dispatched=False,
                                    error_kind="not_found"))

    def progress(fraction: float, status: str, step: int = 0, total_steps: int = 0) -> None:
        fraction = min(max(float(fraction), 0.0), 1.0)
        _safe_call(on_progress, call.id, fraction, status, step, total_steps)

    if not tool.reports_progress:
        progress(0.0, "Starting", 0, 1)

    logger.debug("Executing tool %s (%s)", call.name, call.id)
    try:
        result = await asyncio.wait_for(
            tool.execute(call.arguments, progress), timeout=config.tool_timeout_s
        )
    except asyncio.TimeoutError:
        logger.warning("Tool %s timed out after %.1fs", call.name, config.tool_timeout_s)
        result = ToolResult.fail(StandardizedToolError(
            ToolErrorCode.TIMEOUT,
            f"Tool '{call.name}' timed out after {config.tool_timeout_s:g}s",
            "Narrow the request (smaller scope, fewer files) and try again.",
        ))
        content = sanitize_tool_output(result.format_for_llm(), config.max_tool_result_chars)
        return finish(ToolExecution(call, content, success=False, dispatched=True,
                                    result=result, error_kind="timeout"))
    except ValidationError as e:
        logger.debug("Tool %s rejected its arguments: %s", call.name, e)
        result = ToolResult.fail(StandardizedToolError.from_validation(e))
        content = sanitize_tool_output(result.format_for_llm(), config.max_tool_result_chars)
        return finish(ToolExecution(call, content, success=False, dispatched=True,
                                    result=result, error_kind="tool_error"))
    except Exception as e:
        err = ToolExecutionError(call.name, f"{type(e).__name__}: {e}")
        logger.warning("%s", err, exc_info=logger.isEnabledFor(logging.DEBUG))
        content = sanitize_tool_output(f"Error: {err}", config.max_tool_result_chars)
        return finish(ToolExecution(call, content, success=False, dispatched=True,
                                    error_kind="exception"))

    if not isinstance(result, ToolResult):
        result = ToolResult.ok(result)

    if not tool.reports_progress:
        progress(1.0, "Completed", 1, 1)

    if not result.success:
        logger.warning("Tool %s failed: %s", call.name, result.error)

    content = sanitize_tool_output(result.format_for_llm(), config.max_tool_result_chars)
    return finish(ToolExecution(
        call, content,
        success=result.success,
        dispatched=True,
        result=result,
        error_kind=None if result.success else "tool_error",
    ))


def is_error_content(content: str) -> bool:
    """True when a stored tool message reports a failure."""
    return content.startswith("ERROR:") or content.startswith("Error:")
