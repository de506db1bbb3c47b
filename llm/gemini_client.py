"""Google Gemini client (``generateContent`` REST API).

Gemini has native function calling: tools are sent as
``functionDeclarations`` and a ``functionCall`` part in the reply becomes
the FunctionCall. Parameter schemas are reduced to the OpenAPI subset the
API accepts (type, description, properties, items, required, enum).
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from cge_constants import DEFAULT_REQUEST_TIMEOUT_S, GEMINI_BASE_URL, GEMINI_DEFAULT_TEMPERATURE
from cge_errors import ModelNotFoundError, TransportError
from llm.base import (
    FunctionCall,
    FunctionCallResponse,
    LLMClient,
    ToolDefinition,
    extract_error_message,
    new_call_id,
)
from llm.sse import aiter_sse_events

logger = logging.getLogger(__name__)

_SCHEMA_KEYS = ("type", "description", "enum", "required", "format", "nullable")

# Upper bound on model-list pages; the API pages at 50 by default.
_MAX_MODEL_PAGES = 20


def gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a JSON schema to the fields Gemini function declarations accept."""
    out: Dict[str, Any] = {}
    for key in _SCHEMA_KEYS:
        if key in schema:
            out[key] = schema[key]
    if isinstance(out.get("type"), str):
        out["type"] = out["type"].upper()
    if isinstance(out.get("enum"), list):
        out["enum"] = [str(v) for v in out["enum"]]
    properties = schema.get("properties")
    if isinstance(properties, dict):
        out["properties"] = {
            name: gemini_schema(prop) for name, prop in properties.items() if isinstance(prop, dict)
        }
    items = schema.get("items")
    if isinstance(items, dict):
        out["items"] = gemini_schema(items)
    return out


def _model_path(model: str) -> str:
    return model if model.startswith(("models/", "tunedModels/")) else f"models/{model}"


class GeminiClient(LLMClient):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = GEMINI_BASE_URL,
        temperature: Optional[float] = GEMINI_DEFAULT_TEMPERATURE,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or GEMINI_BASE_URL).rstrip("/")
        self.temperature = temperature
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-goog-api-key"] = api_key
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

    def _body(self, prompt: str, system_prompt: str,
              tools: Optional[List[ToolDefinition]]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": t.name,
                        "description": t.description,
                        "parameters": gemini_schema(
                            t.parameters or {"type": "object", "properties": {}}
                        ),
                    }
                    for t in tools
                ],
            }]
        if self.temperature is not None:
            body["generationConfig"] = {"temperature": self.temperature}
        return body

    def _raise_for_error(self, response: httpx.Response, model: str) -> None:
        if response.is_success:
            return
        message = extract_error_message(response)
        if response.status_code == 404:
            raise ModelNotFoundError(
                f"gemini: model '{model}' not found: {message}", response.status_code
            )
        raise TransportError(f"gemini: HTTP {response.status_code}: {message}", response.status_code)

    async def _generate_content(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{_model_path(model)}:generateContent"
        logger.debug("Gemini generateContent: model=%s", model)
        try:
            response = await self._client.post(url, json=body, headers=self._headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"gemini: request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"gemini: cannot reach {self.base_url}: {e}") from e

        self._raise_for_error(response, model)
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"gemini: malformed response body: {e}") from e
        if not isinstance(data, dict):
            raise TransportError("gemini: malformed response body: expected an object")
        return data

    @staticmethod
    def _parts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Parts of the first candidate; raises TransportError when there are none."""
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = data.get("promptFeedback")
            reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            if reason:
                raise TransportError(f"gemini: prompt blocked: {reason}")
            raise TransportError("gemini: no content in response")
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise TransportError("gemini: malformed response body: candidate is not an object")
        content = candidate.get("content")
        if content is None:
            raise TransportError(
                f"gemini: no content in response (finishReason={candidate.get('finishReason')})"
            )
        if not isinstance(content, dict) or not isinstance(content.get("parts", []), list):
            raise TransportError("gemini: malformed response body: content has no parts list")
        parts = content.get("parts", [])
        if not all(isinstance(part, dict) for part in parts):
            raise TransportError("gemini: malformed response body: part is not an object")
        return parts

    @staticmethod
    def _text(parts: List[Dict[str, Any]]) -> str:
        return "".join(p["text"] for p in parts if isinstance(p.get("text"), str))

    @staticmethod
    def _function_call(parts: List[Dict[str, Any]]) -> Optional[FunctionCall]:
        for part in parts:
            call = part.get("functionCall")
            if call is None:
                continue
            if not isinstance(call, dict):
                raise TransportError("gemini: malformed response body: functionCall is not an object")
            name = call.get("name")
            if not isinstance(name, str) or not name:
                raise TransportError("gemini: function call without a name")
            args = call.get("args") or {}
            if not isinstance(args, dict):
                raise TransportError("gemini: malformed response body: functionCall args is not an object")
            call_id = call.get("id")
            return FunctionCall(
                name=name,
                arguments=json.dumps(args, ensure_ascii=False),
                id=call_id if isinstance(call_id, str) and call_id else new_call_id(),
            )
        return None

    # -- LLMClient -----------------------------------------------------------

    async def generate(self, model: str, prompt: str, system_prompt: str = "",
                       tools: Optional[List[ToolDefinition]] = None) -> str:
        data = await self._generate_content(model, self._body(prompt, system_prompt, None))
        return self._text(self._parts(data))

    async def generate_with_functions(self, model: str, prompt: str, system_prompt: str,
                                      tools: List[ToolDefinition]) -> FunctionCallResponse:
        data = await self._generate_content(model, self._body(prompt, system_prompt, tools))
        parts = self._parts(data)
        call = self._function_call(parts)
        if call is not None:
            return FunctionCallResponse.from_call(call)
        return FunctionCallResponse.from_text(self._text(parts).strip())

    async def stream(self, model: str, prompt: str, system_prompt: str = "",
                     tools: Optional[List[ToolDefinition]] = None) -> AsyncIterator[str]:
        url = f"{self.base_url}/{_model_path(model)}:streamGenerateContent"
        body = self._body(prompt, system_prompt, None)
        try:
            async with self._client.stream("POST", url, params={"alt": "sse"}, json=body,
                                           headers=self._headers) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_error(response, model)
                async for event in aiter_sse_events(response.aiter_lines()):
                    candidates = event.get("candidates")
                    if not isinstance(candidates, list) or not candidates:
                        continue
                    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
                    parts = content.get("parts") if isinstance(content, dict) else None
                    if not isinstance(parts, list):
                        continue
                    text = self._text([p for p in parts if isinstance(p, dict)])
                    if text:
                        yield text
        except httpx.TimeoutException as e:
            raise TransportError(f"gemini: stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"gemini: stream failed: {e}") from e

    async def list_models(self) -> List[str]:
        names: List[str] = []
        params: Dict[str, str] = {}
        for _ in range(_MAX_MODEL_PAGES):
            try:
                response = await self._client.get(f"{self.base_url}/models", params=params,
                                                  headers=self._headers)
            except httpx.HTTPError as e:
                raise TransportError(f"gemini: cannot reach {self.base_url}: {e}") from e
            self._raise_for_error(response, "")
            try:
                body = response.json()
            except ValueError as e:
                raise TransportError(f"gemini: malformed model list: {e}") from e
            if not isinstance(body, dict):
                break
            for m in body.get("models") or []:
                if isinstance(m, dict) and isinstance(m.get("name"), str):
                    names.append(m["name"].split("/", 1)[-1])
            token = body.get("nextPageToken")
            if not token:
                break
            params = {"pageToken": token}
        return sorted(names)
