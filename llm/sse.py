"""Server-Sent-Events framing for OpenAI-compatible streaming responses."""

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str):
    """Decode one SSE line.

    Returns the decoded JSON payload, ``DONE_SENTINEL`` at the end of the
    stream, or None for anything to ignore (comments, ``event:`` lines,
    blank keep-alives, malformed JSON).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return DONE_SENTINEL
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE chunk: %.80s", data)
        return None


def iter_sse_events(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    for line in lines:
        event = parse_sse_line(line)
        if event is None:
            continue
        if event == DONE_SENTINEL:
            return
        if isinstance(event, dict):
            yield event


async def aiter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[Dict[str, Any]]:
    """Async variant of ``iter_sse_events`` for ``httpx.Response.aiter_lines``."""
    async for line in lines:
        event = parse_sse_line(line)
        if event is None:
            continue
        if event == DONE_SENTINEL:
            return
        if isinstance(event, dict):
            yield event


def delta_content(event: Dict[str, Any]) -> Optional[str]:
    """Text delta of a chat-completions chunk, or None when it carries none."""
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if isinstance(content, str) and content:
        return content
    return None


def parse_sse_text(raw: str) -> List[Dict[str, Any]]:
    """Parse a fully buffered SSE body into its JSON events."""
    return list(iter_sse_events(raw.split("\n")))
