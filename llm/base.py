"""LLM client contract shared by every provider implementation.

One capability interface, one concrete class per provider, picked once in
``llm.providers.create_client``. Nothing downstream switches on the
provider type.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def extract_error_message(response) -> str:
    """Best-effort error text from a provider's non-2xx response.

    Understands ``{"error": {"message": ...}}`` and ``{"error": "..."}``
    bodies and falls back to the raw (truncated) body text.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    text = (response.text or "").strip()
    return text[:500] if text else f"HTTP {response.status_code}"


@dataclass(frozen=True)
class ToolDefinition:
    """Schema-described tool as advertised to the model."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class FunctionCall:
    """A tool invocation requested by the model.

    ``arguments`` is kept as the raw JSON text the model produced; decoding
    is the tool's job.
    """

    name: str
    arguments: str = "{}"
    id: str = field(default_factory=new_call_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FunctionCall":
        return cls(
            name=data["name"],
            arguments=data.get("arguments") or "{}",
            id=data.get("id") or new_call_id(),
        )


@dataclass
class FunctionCallResponse:
    """Either final text or a single function call, never both."""

    is_text: bool
    text: str = ""
    function_call: Optional[FunctionCall] = None

    @classmethod
    def from_text(cls, text: str) -> "FunctionCallResponse":
        return cls(is_text=True, text=text)

    @classmethod
    def from_call(cls, call: FunctionCall) -> "FunctionCallResponse":
        return cls(is_text=False, function_call=call)


class LLMClient(ABC):
    """Strategy interface over heterogeneous chat/completion providers.

    Every network failure surfaces as ``cge_errors.TransportError``; clients
    never retry on their own.
    """

    @abstractmethod
    async def generate(self, model: str, prompt: str, system_prompt: str = "",
                       tools: Optional[List[ToolDefinition]] = None) -> str:
        """Single-shot completion. No function-call parsing."""

    @abstractmethod
    async def generate_with_functions(self, model: str, prompt: str, system_prompt: str,
                                      tools: List[ToolDefinition]) -> FunctionCallResponse:
        """Completion that may come back as a function call."""

    @abstractmethod
    def stream(self, model: str, prompt: str, system_prompt: str = "",
               tools: Optional[List[ToolDefinition]] = None) -> AsyncIterator[str]:
        """Yield incremental text deltas.

        Implemented as an async generator; closing it or cancelling the
        consuming task stops the underlying request.
        """

    @abstractmethod
    async def list_models(self) -> List[str]:
        pass

    @abstractmethod
    def supports_native_function_calling(self) -> bool:
        pass

    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
