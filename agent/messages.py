"""Conversation message model and prompt rendering.

The message list of a run is append-only. Providers receive it flattened
into a single prompt string by ``render_prompt``; the system prompt is
passed to them separately.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from llm.base import FunctionCall

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

VALID_ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})


@dataclass
class Message:
    role: str
    content: str = ""
    tool_call: Optional[FunctionCall] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"invalid message role: {self.role!r}")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(ROLE_SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(ROLE_USER, content)

    @classmethod
    def assistant(cls, content: str = "", tool_call: Optional[FunctionCall] = None) -> "Message":
        return cls(ROLE_ASSISTANT, content, tool_call=tool_call)

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str) -> "Message":
        return cls(ROLE_TOOL, content, tool_call_id=tool_call_id, name=name)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call is not None:
            out["tool_call"] = self.tool_call.to_dict()
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        if self.name:
            out["name"] = self.name
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        call = data.get("tool_call")
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_call=FunctionCall.from_dict(call) if call else None,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


def render_prompt(messages: Iterable[Message]) -> str:
    """Flatten a conversation into the prompt text sent to the model."""
    parts: List[str] = []
    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            continue
        if msg.role == ROLE_USER:
            parts.append(f"User: {msg.content}")
        elif msg.role == ROLE_ASSISTANT:
            if msg.tool_call is not None:
                parts.append(
                    f"Assistant: [Called tool: {msg.tool_call.name} "
                    f"with arguments {msg.tool_call.arguments}]"
                )
            else:
                parts.append(f"Assistant: {msg.content}")
        elif msg.role == ROLE_TOOL:
            parts.append(f"Tool ({msg.name or 'unknown'}): {msg.content}")
    return "\n\n".join(parts)


def messages_to_dicts(messages: Iterable[Message]) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in messages]


def messages_from_dicts(items: Iterable[Dict[str, Any]]) -> List[Message]:
    return [Message.from_dict(item) for item in items]

