"""Settings from the environment (.env via pydantic-settings) and mcp_config.json.

mcp_config.json::

    {
      "mcpServers": {
        "weather": {"command": "uv", "args": ["run", "weather.py"], "env": {}},
        "docs": {"url": "https://example.com/mcp", "headers": {}, "transport": "sse"}
      }
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_loop import DEFAULT_MAX_ITERATIONS, DEFAULT_SYSTEM_PROMPT
from openrouter import OPENROUTER_BASE_URL
from sampling import DEFAULT_MAX_SAMPLING_ITERATIONS

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

TRANSPORTS = ("stdio", "streamable-http", "sse")

DEFAULT_MODELS = {
    "openrouter": "openai/gpt-4o-mini",
    "gemini": "gemini-2.5-flash",
}


@dataclass(frozen=True)
class ServerConfig:
    server_id: str
    name: str
    transport: str = "stdio"
    command: Optional[str] = None
    args: tuple[str, ...] = ()
    env: Optional[dict] = None
    url: Optional[str] = None
    headers: dict = field(default_factory=dict)
    enabled: bool = True

    @classmethod
    def from_json(cls, server_id: str, raw: dict) -> "ServerConfig":
        if raw.get("url"):
            transport = raw.get("transport", "streamable-http")
        elif raw.get("command"):
            transport = "stdio"
        else:
            raise ValueError(f"Server {server_id!r} needs either 'command' or 'url'")
        if transport not in TRANSPORTS:
            raise ValueError(f"Server {server_id!r} has unknown transport {transport!r}")
        return cls(
            server_id=server_id,
            name=raw.get("name") or server_id,
            transport=transport,
            command=raw.get("command"),
            args=tuple(raw.get("args", [])),
            env=raw.get("env"),
            url=raw.get("url"),
            headers=dict(raw.get("headers") or {}),
            enabled=raw.get("enabled", True),
        )


def load_server_configs(path: str) -> list[ServerConfig]:
    """Read the ``mcpServers`` mapping. A missing file means no servers."""
    if not os.path.exists(path):
        logging.getLogger(__name__).warning("MCP config %s not found, no servers", path)
        return []
    with open(path) as f:
        mcp_servers = json.load(f).get("mcpServers", {})
    return [ServerConfig.from_json(server_id, raw) for server_id, raw in mcp_servers.items()]


class Settings(BaseSettings):
    """Client settings from the environment and ``.env``.

    Field names map to upper-case variables (``MAX_ITERATIONS``,
    ``SAMPLING_AUTO_APPROVE``, ...); the provider is ``CHAT_PROVIDER``.
    ``DEFAULT_MODEL`` falls back to the provider's default model.
    """

    provider: Literal["openrouter", "gemini"] = Field("openrouter", validation_alias="CHAT_PROVIDER")
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = OPENROUTER_BASE_URL
    gemini_api_key: Optional[str] = None
    default_model: Optional[str] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    sampling_max_iterations: int = DEFAULT_MAX_SAMPLING_ITERATIONS
    sampling_auto_approve: bool = False
    mcp_config: str = "mcp_config.json"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("provider", mode="before")
    @classmethod
    def _lower_provider(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _provider_default_model(self) -> "Settings":
        if not self.default_model:
            self.default_model = DEFAULT_MODELS[self.provider]
        return self


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # Suppress verbose logging from libraries
    for noisy in ("httpx", "httpcore", "mcp", "google_genai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
