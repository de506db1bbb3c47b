"""Tests for cge_cli.config -- layered configuration loading."""

import pytest
from pydantic import ValidationError

from cge_cli.config import AppConfig, config_from_env, load_config
from cge_errors import ConfigurationError


@pytest.fixture
def dirs(tmp_path):
    home = tmp_path / "home"
    project = tmp_path / "project"
    home.mkdir()
    project.mkdir()
    return home, project


def _load(dirs, **kwargs):
    home, project = dirs
    kwargs.setdefault("env", {})
    return load_config(cge_home=home, project_dir=str(project), **kwargs)


def test_defaults(dirs):
    cfg = _load(dirs)
    assert cfg.provider == "ollama"
    assert cfg.max_iterations == 8
    assert cfg.openai_api_key is None


def test_precedence_yaml_env_overrides(dirs):
    home, project = dirs
    (home / "config.yaml").write_text(
        "llm:\n  model: home-model\n  request_timeout_seconds: 42\nagent:\n  max_iterations: 3\n",
        encoding="utf-8",
    )
    (project / "cge.yaml").write_text("llm:\n  model: project-model\n", encoding="utf-8")

    cfg = _load(dirs)
    assert cfg.model == "project-model"
    assert cfg.request_timeout_s == 42
    assert cfg.max_iterations == 3

    cfg = _load(dirs, env={"CGE_MODEL": "env-model", "CGE_MAX_ITERATIONS": "5"})
    assert cfg.model == "env-model"
    assert cfg.max_iterations == 5

    cfg = _load(dirs, env={"CGE_MODEL": "env-model"}, overrides={"model": "flag-model", "provider": None})
    assert cfg.model == "flag-model"
    assert cfg.provider == "ollama"


def test_flat_keys_and_aliases(dirs):
    _, project = dirs
    (project / "cge.yaml").write_text(
        "provider: gpt\nproject:\n  session_directory: sessions\nunknown_key: 1\n",
        encoding="utf-8",
    )
    cfg = _load(dirs)
    assert cfg.provider == "openai"
    assert cfg.history_dir.endswith("sessions")


def test_explicit_path_replaces_search(dirs, tmp_path):
    _, project = dirs
    (project / "cge.yaml").write_text("llm:\n  model: project-model\n", encoding="utf-8")
    explicit = tmp_path / "other.yaml"
    explicit.write_text("llm:\n  model: explicit-model\n", encoding="utf-8")
    assert _load(dirs, path=str(explicit)).model == "explicit-model"


def test_missing_explicit_path(dirs, tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        _load(dirs, path=str(tmp_path / "nope.yaml"))


@pytest.mark.parametrize("content", ["llm: [unclosed", "- just\n- a list\n"])
def test_bad_yaml(dirs, content):
    _, project = dirs
    (project / "cge.yaml").write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        _load(dirs)


def test_invalid_values(dirs):
    with pytest.raises(ConfigurationError, match="unknown provider"):
        _load(dirs, overrides={"provider": "skynet"})
    with pytest.raises(ConfigurationError, match="max_iterations"):
        _load(dirs, env={"CGE_MAX_ITERATIONS": "0"})
    with pytest.raises(ConfigurationError, match="model"):
        _load(dirs, overrides={"model": "   "})


def test_shell_commands_from_env(dirs):
    cfg = _load(dirs, env={"CGE_ALLOWED_SHELL_COMMANDS": "ls, git ,pytest"})
    assert cfg.allowed_shell_commands == ("ls", "git", "pytest")


def test_env_ignores_blank_values():
    assert config_from_env({"CGE_MODEL": "  ", "OTHER": "x"}) == {}


def test_config_is_frozen():
    cfg = AppConfig()
    with pytest.raises(ValidationError):
        cfg.model = "other"


def test_redacted_masks_key():
    cfg = AppConfig(provider="openai", openai_api_key="sk-test-1234567890")
    data = cfg.redacted()
    assert data["openai_api_key"] == "sk-t...7890"
    assert AppConfig(openai_api_key="short").redacted()["openai_api_key"] == "***"
    assert "1234567890" not in repr(cfg)


def test_gemini_settings_from_yaml_and_masked(dirs):
    _, project = dirs
    (project / "cge.yaml").write_text(
        "llm:\n  provider: gemini\n  model: gemini-1.5-pro\n  gemini_temperature: 0.3\n",
        encoding="utf-8",
    )
    cfg = _load(dirs, env={"CGE_GEMINI_API_KEY": "AIza-secret-key-0001"})
    assert cfg.provider == "gemini"
    assert cfg.gemini_temperature == 0.3
    assert cfg.redacted()["gemini_api_key"] == "AIza...0001"


def test_run_config_carries_bounds():
    cfg = AppConfig(max_iterations=4, tool_timeout_s=9, run_timeout_s=30)
    run = cfg.run_config()
    assert run.max_iterations == 4
    assert run.tool_timeout_s == 9
    assert run.run_timeout_s == 30
    assert run.allowed_tools == frozenset()
