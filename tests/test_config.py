import json

import pytest
from pydantic import ValidationError

from chat_loop import DEFAULT_SYSTEM_PROMPT
from config import ServerConfig, Settings, load_server_configs

ENV_KEYS = (
    "CHAT_PROVIDER", "OPENROUTER_API_KEY", "OPENROUTER_BASE_URL", "GEMINI_API_KEY", "DEFAULT_MODEL",
    "SYSTEM_PROMPT", "MAX_ITERATIONS", "SAMPLING_MAX_ITERATIONS", "SAMPLING_AUTO_APPROVE",
    "MCP_CONFIG", "LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings(_env_file=None)

    assert settings.provider == "openrouter"
    assert settings.default_model == "openai/gpt-4o-mini"
    assert settings.max_iterations == 10
    assert settings.sampling_max_iterations == 10
    assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert not settings.sampling_auto_approve


def test_environment_overrides(clean_env):
    clean_env.setenv("CHAT_PROVIDER", "Gemini")
    clean_env.setenv("MAX_ITERATIONS", "4")
    clean_env.setenv("SAMPLING_AUTO_APPROVE", "yes")
    clean_env.setenv("LOG_LEVEL", "debug")
    clean_env.setenv("OPENROUTER_API_KEY", "")

    settings = Settings(_env_file=None)

    assert settings.provider == "gemini"
    assert settings.default_model.startswith("gemini")
    assert settings.max_iterations == 4
    assert settings.sampling_auto_approve
    assert settings.log_level == "DEBUG"
    assert settings.openrouter_api_key is None


def test_dotenv_file(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("DEFAULT_MODEL=anthropic/claude-sonnet-4\nMCP_CONFIG=servers.json\n")

    settings = Settings(_env_file=str(env_file))

    assert settings.default_model == "anthropic/claude-sonnet-4"
    assert settings.mcp_config == "servers.json"


def test_init_arguments_win(clean_env):
    clean_env.setenv("MAX_ITERATIONS", "4")
    settings = Settings(_env_file=None, provider="gemini", max_iterations=2)
    assert (settings.provider, settings.max_iterations) == ("gemini", 2)


def test_bad_values_are_rejected(clean_env):
    clean_env.setenv("MAX_ITERATIONS", "lots")
    with pytest.raises(ValidationError, match="max_iterations"):
        Settings(_env_file=None)

    clean_env.delenv("MAX_ITERATIONS")
    clean_env.setenv("CHAT_PROVIDER", "carrier-pigeon")
    with pytest.raises(ValidationError, match="CHAT_PROVIDER"):
        Settings(_env_file=None)


def test_load_server_configs(tmp_path):
    path = tmp_path / "mcp_config.json"
    path.write_text(json.dumps({"mcpServers": {
        "weather": {"command": "uv", "args": ["run", "weather.py"], "env": {"UNITS": "metric"}},
        "docs": {"name": "Docs", "url": "https://docs.example/mcp", "headers": {"X-Key": "k"}},
        "legacy": {"url": "https://legacy.example/sse", "transport": "sse", "enabled": False},
    }}))

    weather, docs, legacy = load_server_configs(str(path))

    assert (weather.transport, weather.command, weather.args) == ("stdio", "uv", ("run", "weather.py"))
    assert weather.name == "weather"
    assert (docs.transport, docs.name, docs.headers) == ("streamable-http", "Docs", {"X-Key": "k"})
    assert legacy.transport == "sse"
    assert not legacy.enabled


def test_missing_config_means_no_servers(tmp_path):
    assert load_server_configs(str(tmp_path / "nope.json")) == []


def test_server_needs_command_or_url():
    with pytest.raises(ValueError):
        ServerConfig.from_json("broken", {"args": []})
    with pytest.raises(ValueError):
        ServerConfig.from_json("odd", {"url": "https://x", "transport": "carrier-pigeon"})
