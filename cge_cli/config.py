"""Configuration loading for CGE.

Sources, lowest to highest precedence:

1. defaults (``AppConfig`` field defaults)
2. YAML: ``~/.cge/config.yaml``, then ``./cge.yaml`` in the workspace
   (or a single explicit ``--config`` file). Keys live under ``llm:``,
   ``project:`` and ``agent:`` sections; flat top-level keys also work.
3. ``CGE_*`` environment variables, after python-dotenv has loaded
   ``~/.cge/.env`` and ``./.env`` (without overriding the real environment)
4. explicit overrides (CLI flags)

The result is a frozen ``AppConfig`` that is passed to every component;
nothing reads configuration globally.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from cge_constants import (
    CGE_HOME,
    DEFAULT_ALLOWED_SHELL_COMMANDS,
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_LLM_TIMEOUT_S,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_RUN_TIMEOUT_S,
    DEFAULT_TOOL_TIMEOUT_S,
    GEMINI_DEFAULT_TEMPERATURE,
    MAX_TOOL_RESULT_CHARS,
    OLLAMA_DEFAULT_HOST,
    OLLAMA_DEFAULT_KEEP_ALIVE,
    OPENAI_BASE_URL,
)
from cge_errors import ConfigurationError
from llm.providers import PROVIDERS, normalize_provider_id

logger = logging.getLogger(__name__)

ENV_PREFIX = "CGE_"
PROJECT_CONFIG_NAME = "cge.yaml"

# YAML section keys that differ from the AppConfig field names.
_YAML_ALIASES = {
    "request_timeout_seconds": "request_timeout_s",
    "run_timeout_seconds": "run_timeout_s",
    "tool_timeout_seconds": "tool_timeout_s",
    "llm_timeout_seconds": "llm_timeout_s",
    "session_directory": "history_dir",
}
_YAML_SECTIONS = ("llm", "project", "agent")


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    ollama_host_url: str = OLLAMA_DEFAULT_HOST
    ollama_keep_alive: str = OLLAMA_DEFAULT_KEEP_ALIVE
    openai_base_url: str = OPENAI_BASE_URL
    openai_api_key: Optional[str] = Field(default=None, repr=False)
    gemini_api_key: Optional[str] = Field(default=None, repr=False)
    gemini_temperature: Optional[float] = Field(default=GEMINI_DEFAULT_TEMPERATURE, ge=0, le=2)
    request_timeout_s: float = Field(default=DEFAULT_REQUEST_TIMEOUT_S, gt=0)
    llm_timeout_s: float = Field(default=DEFAULT_LLM_TIMEOUT_S, gt=0)
    run_timeout_s: float = Field(default=DEFAULT_RUN_TIMEOUT_S, gt=0)
    tool_timeout_s: float = Field(default=DEFAULT_TOOL_TIMEOUT_S, gt=0)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    max_tool_result_chars: int = Field(default=MAX_TOOL_RESULT_CHARS, ge=100)
    workspace_root: str = "."
    history_dir: str = str(CGE_HOME / "sessions")
    event_buffer_size: int = Field(default=DEFAULT_EVENT_BUFFER_SIZE, ge=1)
    allowed_shell_commands: Tuple[str, ...] = DEFAULT_ALLOWED_SHELL_COMMANDS

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        provider_id = normalize_provider_id(value)
        if provider_id not in PROVIDERS:
            raise ValueError(f"unknown provider '{value}' (expected one of: {', '.join(PROVIDERS)})")
        return provider_id

    @field_validator("model")
    @classmethod
    def _non_empty_model(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("model must not be empty")
        return value.strip()

    @field_validator("workspace_root", "history_dir")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        return str(Path(value).expanduser().resolve())

    @field_validator("allowed_shell_commands", mode="before")
    @classmethod
    def _split_commands(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    def run_config(self):
        """RunConfig carrying this configuration's bounds."""
        from agent.runner import RunConfig

        return RunConfig(
            max_iterations=self.max_iterations,
            tool_timeout_s=self.tool_timeout_s,
            llm_timeout_s=self.llm_timeout_s,
            run_timeout_s=self.run_timeout_s,
            max_tool_result_chars=self.max_tool_result_chars,
        )

    def redacted(self) -> Dict[str, Any]:
        """Dict view safe to print (API keys masked)."""
        data = self.model_dump()
        for name in ("openai_api_key", "gemini_api_key"):
            key = data.get(name)
            if key:
                data[name] = key[:4] + "..." + key[-4:] if len(key) > 12 else "***"
        data["allowed_shell_commands"] = list(data["allowed_shell_commands"])
        return data


def load_env_files(cge_home: Path = CGE_HOME, project_dir: Optional[Path] = None) -> None:
    """Load ``~/.cge/.env`` then the project ``.env``; real env vars win."""
    for env_path in (Path(cge_home) / ".env", Path(project_dir or Path.cwd()) / ".env"):
        if not env_path.exists():
            continue
        try:
            load_dotenv(dotenv_path=env_path, encoding="utf-8", override=False)
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=env_path, encoding="latin-1", override=False)
        logger.debug("Loaded environment variables from %s", env_path)


def _flatten_yaml(data: Mapping[str, Any], source: Path) -> Dict[str, Any]:
    fields = set(AppConfig.model_fields)
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _YAML_SECTIONS and isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                name = _YAML_ALIASES.get(sub_key, sub_key)
                if name in fields:
                    flat[name] = sub_value
                else:
                    logger.debug("Ignoring unknown key %s.%s in %s", key, sub_key, source)
        else:
            name = _YAML_ALIASES.get(key, key)
            if name in fields:
                flat[name] = value
            elif not isinstance(value, Mapping):
                logger.debug("Ignoring unknown key %s in %s", key, source)
    return flat


def read_yaml_config(path: Path) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    return _flatten_yaml(data, path)


def config_from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in AppConfig.model_fields:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw.strip() != "":
            values[name] = raw.strip()
    return values


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    *,
    cge_home: Path = CGE_HOME,
    project_dir: Optional[str] = None,
) -> AppConfig:
    """Merge defaults, YAML, environment and overrides into an AppConfig.

    Passing *env* explicitly skips .env loading and ``os.environ`` (tests).
    Raises ConfigurationError for unreadable files or invalid values.
    """
    project = Path(project_dir or Path.cwd())
    if env is None:
        load_env_files(cge_home, project)
        env = os.environ

    merged: Dict[str, Any] = {}
    if path:
        explicit = Path(path).expanduser()
        if not explicit.is_file():
            raise ConfigurationError(f"config file not found: {explicit}")
        merged.update(read_yaml_config(explicit))
    else:
        for candidate in (Path(cge_home) / "config.yaml", project / PROJECT_CONFIG_NAME):
            if candidate.is_file():
                merged.update(read_yaml_config(candidate))
                logger.debug("Loaded config from %s", candidate)

    merged.update(config_from_env(env))
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        return AppConfig(**merged)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"invalid configuration: {problems}") from e
