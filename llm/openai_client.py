"""OpenAI-compatible chat-completions client.

Used for OpenAI itself, OpenRouter and any custom endpoint that speaks
``POST {base}/chat/completions``. Tool calls are native: the first
``tool_calls`` entry of the reply becomes the FunctionCall.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from cge_constants import DEFAULT_REQUEST_TIMEOUT_S, OPENAI_BASE_URL
from cge_errors import ModelNotFoundError, TransportError
from llm.base import (
    FunctionCall,
    FunctionCallResponse,
    LLMClient,
    ToolDefinition,
    extract_error_message,
    new_call_id,
)
from llm.sse import aiter_sse_events, delta_content

logger = logging.getLogger(__name__)


class OpenAIClient(LLMClient):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = OPENAI_BASE_URL,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        extra_headers: Optional[Dict[str, str]] = None,
        provider_label: str = "openai",
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.provider_label = provider_label
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if extra_headers:
            headers.update(extra_headers)
        self._headers = headers
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s), transport=transport
        )

    def supports_native_function_calling(self) -> bool:
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Request helpers ---------------------------------------------------

    @staticmethod
    def _messages(prompt: str, system_prompt: str) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _body(self, model: str, prompt: str, system_prompt: str,
              tools: Optional[List[ToolDefinition]], stream: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": self._messages(prompt, system_prompt),
        }
        if tools:
            body["tools"] = [t.to_openai() for t in tools]
            body["tool_choice"] = "auto"
        if stream:
            body["stream"] = True
        return body

    def _raise_for_error(self, response: httpx.Response, model: str) -> None:
        if response.is_success:
            return
        message = extract_error_message(response)
        if response.status_code == 404 and "model" in message.lower():
            raise ModelNotFoundError(
                f"{self.provider_label}: model '{model}' not found: {message}",
                response.status_code,
            )
        raise TransportError(
            f"{self.provider_label}: HTTP {response.status_code}: {message}",
            response.status_code,
        )

    async def _complete(self, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        try:
            response = await self._client.post(url, json=body, headers=self._headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"{self.provider_label}: request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.provider_label}: cannot reach {self.base_url}: {e}") from e

        self._raise_for_error(response, body.get("model", ""))
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"{self.provider_label}: malformed response body: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("choices"), list) or not data["choices"]:
            raise TransportError(f"{self.provider_label}: response has no choices")
        return data

    def _malformed(self, what: str) -> TransportError:
        return TransportError(f"{self.provider_label}: malformed response body: {what}")

    def _first_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        choice = data["choices"][0]
        if not isinstance(choice, dict):
            raise self._malformed("choices[0] is not an object")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise self._malformed("choices[0].message is not an object")
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            raise self._malformed("message content is not a string")
        return message

    def _tool_call(self, message: Dict[str, Any]) -> Optional[FunctionCall]:
        tool_calls = message.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise self._malformed("tool_calls is not a list")
        if not tool_calls:
            return None
        if len(tool_calls) > 1:
            logger.debug("Model returned %d tool calls; using the first", len(tool_calls))

        first = tool_calls[0]
        if not isinstance(first, dict):
            raise self._malformed("tool_calls[0] is not an object")
        function = first.get("function") or {}
        if not isinstance(function, dict):
            raise self._malformed("tool_calls[0].function is not an object")
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise TransportError(f"{self.provider_label}: tool call without a function name")
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments, ensure_ascii=False)
        elif arguments is not None and not isinstance(arguments, str):
            raise self._malformed("tool call arguments are neither text nor an object")
        call_id = first.get("id")
        return FunctionCall(
            name=name,
            arguments=arguments or "{}",
            id=call_id if isinstance(call_id, str) and call_id else new_call_id(),
        )

    # -- LLMClient -----------------------------------------------------------

    async def generate(self, model: str, prompt: str, system_prompt: str = "",
                       tools: Optional[List[ToolDefinition]] = None) -> str:
        data = await self._complete(self._body(model, prompt, system_prompt, tools))
        return self._first_message(data).get("content") or ""

    async def generate_with_functions(self, model: str, prompt: str, system_prompt: str,
                                      tools: List[ToolDefinition]) -> FunctionCallResponse:
        data = await self._complete(self._body(model, prompt, system_prompt, tools))
        message = self._first_message(data)
        call = self._tool_call(message)
        if call is not None:
            return FunctionCallResponse.from_call(call)
        return FunctionCallResponse.from_text((message.get("content") or "").strip())

    async def stream(self, model: str, prompt: str, system_prompt: str = "",
                     tools: Optional[List[ToolDefinition]] = None) -> AsyncIterator[str]:
        url = f"{self.base_url}/chat/completions"
        body = self._body(model, prompt, system_prompt, tools, stream=True)
        headers = dict(self._headers, Accept="text/event-stream")
        try:
            async with self._client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_error(response, model)
                async for event in aiter_sse_events(response.aiter_lines()):
                    content = delta_content(event)
                    if content:
                        yield content
        except httpx.TimeoutException as e:
            raise TransportError(f"{self.provider_label}: stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.provider_label}: stream failed: {e}") from e

    async def list_models(self) -> List[str]:
        try:
            response = await self._client.get(f"{self.base_url}/models", headers=self._headers)
        except httpx.HTTPError as e:
            raise TransportError(f"{self.provider_label}: cannot reach {self.base_url}: {e}") from e
        self._raise_for_error(response, "")
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"{self.provider_label}: malformed model list: {e}") from e
        data = body.get("data", []) if isinstance(body, dict) else []
        return sorted(m["id"] for m in data if isinstance(m, dict) and m.get("id"))
