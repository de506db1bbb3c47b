"""Function-call extraction for providers without native tool calling.

Models prompted with ``format_tools_for_prompt`` answer either in prose or
with a JSON object like::

    {"name": "read_file", "arguments": {"target_file": "main.py"}}

possibly wrapped in prose or markdown fences. ``parse_function_call`` finds
that object with a real JSON decoder (``raw_decode`` at every top-level
``{``) rather than a regex, so nested braces and braces inside strings are
handled correctly. Anything it cannot fully validate is returned as text.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from llm.base import FunctionCall, FunctionCallResponse, ToolDefinition, new_call_id

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()

_WRAPPER_KEYS = ("function_call", "tool_call")


def _normalize_arguments(value: Any) -> Optional[str]:
    """Return arguments as JSON text if they describe an object, else None."""
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        if isinstance(decoded, dict):
            return value
    return None


def _call_from_object(obj: Dict[str, Any]) -> Optional[FunctionCall]:
    for key in _WRAPPER_KEYS:
        inner = obj.get(key)
        if isinstance(inner, dict):
            return _call_from_object(inner)

    name = obj.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    if "arguments" not in obj:
        return None
    arguments = _normalize_arguments(obj["arguments"])
    if arguments is None:
        return None

    call_id = obj.get("id")
    if not isinstance(call_id, str) or not call_id:
        call_id = new_call_id()
    return FunctionCall(name=name.strip(), arguments=arguments, id=call_id)


def _span_end(text: str, start: int) -> int:
    """Index just past the brace that closes ``text[start]``, or ``len(text)``.

    Braces inside JSON strings are ignored. An unterminated object spans to
    the end of the text.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return len(text)


def parse_function_call(text: str) -> FunctionCallResponse:
    """Extract a function call from free text, falling back to plain text.

    Never raises. The first top-level JSON object carrying a non-empty
    ``name`` and an object-valued ``arguments`` wins; a truncated or
    otherwise invalid candidate never yields a partial call.
    """
    if text is None:
        return FunctionCallResponse.from_text("")
    stripped = str(text).strip()

    pos = 0
    while True:
        start = stripped.find("{", pos)
        if start < 0:
            break
        try:
            value, end = _decoder.raw_decode(stripped, start)
        except json.JSONDecodeError:
            # Nothing nested inside a broken candidate counts as top-level.
            pos = _span_end(stripped, start)
            continue

        if isinstance(value, dict):
            call = _call_from_object(value)
            if call is not None:
                logger.debug("Parsed function call %s from text response", call.name)
                return FunctionCallResponse.from_call(call)
        # Skip the decoded value entirely; nested objects are not top-level.
        pos = end

    return FunctionCallResponse.from_text(stripped)


def format_tools_for_prompt(tools: List[ToolDefinition]) -> str:
    """Describe tools inside the prompt for models without native tool calling."""
    if not tools:
        return ""

    lines = ["", "", "Available tools:"]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}")
        lines.append(f"  Parameters: {json.dumps(tool.parameters, ensure_ascii=False)}")
    lines.append("")
    lines.append("To use a tool, respond with JSON in this format:")
    lines.append('{"name": "tool_name", "arguments": {"param1": "value1", "param2": "value2"}}')
    lines.append("")
    lines.append("If you don't need to use a tool, respond normally with text.")
    return "\n".join(lines) + "\n"
