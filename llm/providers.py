"""
Central provider registry for CGE LLM backends.

Lightweight and dependency-safe: the CLI (model listing, show-config) and
client construction share the same provider metadata and resolution
behavior. ``create_client`` is the single place where a provider id turns
into a concrete LLMClient.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional, Tuple

from cge_constants import GEMINI_BASE_URL, OLLAMA_DEFAULT_HOST, OPENAI_BASE_URL, OPENROUTER_BASE_URL
from cge_errors import ConfigurationError
from llm.base import LLMClient

if TYPE_CHECKING:
    from cge_cli.config import AppConfig

logger = logging.getLogger(__name__)

EnvGetter = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    native_function_calling: bool = True
    aliases: Tuple[str, ...] = ()


PROVIDERS: Dict[str, ProviderMeta] = {
    "ollama": ProviderMeta(
        id="ollama",
        label="Ollama (local)",
        default_base_url=OLLAMA_DEFAULT_HOST,
        base_url_env_var="OLLAMA_HOST",
        native_function_calling=False,
        aliases=("local",),
    ),
    "openai": ProviderMeta(
        id="openai",
        label="OpenAI",
        default_base_url=OPENAI_BASE_URL,
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
        aliases=("gpt",),
    ),
    "openrouter": ProviderMeta(
        id="openrouter",
        label="OpenRouter",
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY", "OPENAI_API_KEY"),
        base_url_env_var="OPENROUTER_BASE_URL",
    ),
    "gemini": ProviderMeta(
        id="gemini",
        label="Google Gemini",
        default_base_url=GEMINI_BASE_URL,
        api_key_env_vars=("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        base_url_env_var="GEMINI_BASE_URL",
        aliases=("google",),
    ),
    "custom": ProviderMeta(
        id="custom",
        label="Custom OpenAI-compatible endpoint",
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid


def normalize_provider_id(provider_id: Optional[str], default: str = "ollama") -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider(provider_id: str) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def _first_env(env_get: EnvGetter, names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = env_get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_provider_api_key(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    """Configured key first, then the provider's key variables in order."""
    if explicit_api_key:
        return explicit_api_key
    meta = get_provider(provider_id)
    return _first_env(env_get, meta.api_key_env_vars) if meta else None


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    """Explicit URL, then the provider's env override, then its default."""
    meta = get_provider(provider_id)
    candidates = [explicit_base_url if isinstance(explicit_base_url, str) else None]
    if meta is not None:
        if meta.base_url_env_var:
            candidates.append(_first_env(env_get, (meta.base_url_env_var,)))
        candidates.append(meta.default_base_url)
    for url in candidates:
        if url and url.strip():
            return url.strip().rstrip("/")
    return None


def create_client(config: "AppConfig", *, env_get: EnvGetter = os.getenv,
                  transport=None) -> LLMClient:
    """Build the LLMClient for ``config.provider``.

    Raises ConfigurationError for an unknown provider, an empty model name,
    or a custom provider without a base URL. ``transport`` is handed to the
    underlying httpx client (tests pass an ``httpx.MockTransport``).
    """
    # Imported here so llm.providers stays importable without the HTTP stack.
    from llm.gemini_client import GeminiClient
    from llm.ollama_client import OllamaClient
    from llm.openai_client import OpenAIClient

    provider_id = normalize_provider_id(config.provider)
    meta = PROVIDERS.get(provider_id)
    if meta is None:
        raise ConfigurationError(
            f"unknown provider '{config.provider}' (expected one of: {', '.join(PROVIDERS)})"
        )
    if not config.model or not config.model.strip():
        raise ConfigurationError("no model configured")

    if provider_id == "ollama":
        logger.debug("Creating Ollama client for %s", config.ollama_host_url)
        return OllamaClient(
            host_url=config.ollama_host_url,
            keep_alive=config.ollama_keep_alive,
            timeout_s=config.request_timeout_s,
            transport=transport,
        )

    if provider_id == "gemini":
        base_url = resolve_provider_base_url(provider_id, env_get=env_get)
        api_key = resolve_provider_api_key(
            provider_id, env_get=env_get, explicit_api_key=config.gemini_api_key
        )
        if not api_key:
            logger.warning("No API key found for provider gemini (set GEMINI_API_KEY)")
        logger.debug("Creating %s client for %s", meta.label, base_url)
        return GeminiClient(
            api_key=api_key,
            base_url=base_url,
            temperature=config.gemini_temperature,
            timeout_s=config.request_timeout_s,
            transport=transport,
        )

    # openai_base_url defaults to OpenAI's URL; only a changed value
    # overrides the OpenRouter default.
    explicit_url = config.openai_base_url
    if provider_id == "openrouter" and (explicit_url or "").rstrip("/") == OPENAI_BASE_URL:
        explicit_url = None
    base_url = resolve_provider_base_url(provider_id, env_get=env_get, explicit_base_url=explicit_url)
    if not base_url:
        raise ConfigurationError(f"provider '{provider_id}' needs a base URL (set openai_base_url)")

    api_key = resolve_provider_api_key(
        provider_id, env_get=env_get, explicit_api_key=config.openai_api_key
    )
    if not api_key and provider_id in ("openai", "openrouter"):
        logger.warning("No API key found for provider %s", provider_id)

    extra_headers = None
    if provider_id == "openrouter":
        extra_headers = {"X-Title": "cge"}

    logger.debug("Creating %s client for %s", meta.label, base_url)
    return OpenAIClient(
        api_key=api_key,
        base_url=base_url,
        timeout_s=config.request_timeout_s,
        extra_headers=extra_headers,
        provider_label=provider_id,
        transport=transport,
    )
