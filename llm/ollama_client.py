"""Ollama client (``/api/generate``, ``/api/tags``).

Ollama's generate endpoint has no structured tool calling, so tools are
described in the prompt and the reply is run through
``parse_function_call``.
"""

import json
import logging
from typing import AsyncIterator, List, Optional

import httpx

from cge_constants import DEFAULT_REQUEST_TIMEOUT_S, OLLAMA_DEFAULT_HOST, OLLAMA_DEFAULT_KEEP_ALIVE
from cge_errors import ModelNotFoundError, TransportError
from llm.base import FunctionCallResponse, LLMClient, ToolDefinition, extract_error_message
from llm.function_call import format_tools_for_prompt, parse_function_call

logger = logging.getLogger(__name__)


def _is_model_not_found(message: str) -> bool:
    lowered = message.lower()
    return "model" in lowered and ("not found" in lowered or "does not exist" in lowered)


class OllamaClient(LLMClient):
    def __init__(
        self,
        host_url: str = OLLAMA_DEFAULT_HOST,
        keep_alive: str = OLLAMA_DEFAULT_KEEP_ALIVE,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host_url = (host_url or OLLAMA_DEFAULT_HOST).rstrip("/")
        self.keep_alive = keep_alive
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s), transport=transport
        )

    def supports_native_function_calling(self) -> bool:
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _payload(self, model: str, prompt: str, system_prompt: str, stream: bool) -> dict:
        payload = {"model": model, "prompt": prompt, "stream": stream}
        if system_prompt:
            payload["system"] = system_prompt
        if self.keep_alive:
            payload["keep_alive"] = self.keep_alive
        return payload

    def _raise_for_error(self, response: httpx.Response, model: str) -> None:
        if response.is_success:
            return
        message = extract_error_message(response)
        if _is_model_not_found(message) or response.status_code == 404:
            logger.error("Ollama model not found: %s (%s)", model, message)
            raise ModelNotFoundError(
                f"ollama: model '{model}' not found: {message}", response.status_code
            )
        raise TransportError(
            f"ollama: HTTP {response.status_code}: {message}", response.status_code
        )

    async def generate(self, model: str, prompt: str, system_prompt: str = "",
                       tools: Optional[List[ToolDefinition]] = None) -> str:
        url = f"{self.host_url}/api/generate"
        logger.debug("Ollama generate: model=%s prompt_chars=%d", model, len(prompt))
        try:
            response = await self._client.post(
                url, json=self._payload(model, prompt, system_prompt, stream=False)
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"ollama: request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"ollama: cannot reach {self.host_url}: {e}") from e

        self._raise_for_error(response, model)
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"ollama: malformed response body: {e}") from e
        if not isinstance(body, dict):
            raise TransportError("ollama: malformed response body: expected an object")
        if body.get("error"):
            message = str(body["error"])
            if _is_model_not_found(message):
                raise ModelNotFoundError(f"ollama: model '{model}' not found: {message}")
            raise TransportError(f"ollama: {message}")
        text = body.get("response", "")
        if not isinstance(text, str):
            raise TransportError("ollama: malformed response body: 'response' is not a string")
        return text

    async def generate_with_functions(self, model: str, prompt: str, system_prompt: str,
                                      tools: List[ToolDefinition]) -> FunctionCallResponse:
        enhanced = prompt + format_tools_for_prompt(tools) if tools else prompt
        text = await self.generate(model, enhanced, system_prompt)
        return parse_function_call(text)

    async def stream(self, model: str, prompt: str, system_prompt: str = "",
                     tools: Optional[List[ToolDefinition]] = None) -> AsyncIterator[str]:
        url = f"{self.host_url}/api/generate"
        payload = self._payload(model, prompt, system_prompt, stream=True)
        try:
            async with self._client.stream("POST", url, json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_error(response, model)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed Ollama chunk: %.80s", line)
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    if chunk.get("error"):
                        raise TransportError(f"ollama: {chunk['error']}")
                    text = chunk.get("response")
                    if text:
                        yield text
                    if chunk.get("done"):
                        return
        except httpx.TimeoutException as e:
            raise TransportError(f"ollama: stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"ollama: stream failed: {e}") from e

    async def list_models(self) -> List[str]:
        try:
            response = await self._client.get(f"{self.host_url}/api/tags")
        except httpx.HTTPError as e:
            raise TransportError(f"ollama: cannot reach {self.host_url}: {e}") from e
        if not response.is_success:
            raise TransportError(
                f"ollama: HTTP {response.status_code}: {extract_error_message(response)}",
                response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"ollama: malformed model list: {e}") from e
        models = body.get("models", []) if isinstance(body, dict) else []
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]
