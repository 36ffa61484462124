"""Configuration for the chat relay.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./chat_relay.yaml``
  3. ``~/.config/chat-relay/config.yaml``
  4. Built-in defaults

Environment variables are applied on top of whatever was loaded, so a
deployment can keep secrets and per-host settings out of the YAML file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

_logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes")


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderSpec:
    """A named upstream LLM provider."""

    name: str = "openai"
    display_name: str = "OpenAI"
    url: str = "https://api.openai.com/v1"
    api_key: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o-mini"
    api_type: str = "openai"  # "openai" or "ollama" (native /api/chat)
    requires_key: bool = True
    extra_params: dict[str, Any] = field(default_factory=dict)

    @property
    def env_prefix(self) -> str:
        return self.name.upper().replace("-", "_")

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


def _default_providers() -> dict[str, ProviderSpec]:
    return {
        "openai": ProviderSpec(),
        "qwen": ProviderSpec(
            name="qwen",
            display_name="Qwen",
            url="https://dashscope.aliyuncs.com/compatible-mode/v1",
            api_key_env="QWEN_API_KEY",
            model="qwen-max",
        ),
        "ollama": ProviderSpec(
            name="ollama",
            display_name="Ollama",
            url="http://localhost:11434/v1",
            api_key="no-key",
            api_key_env="OLLAMA_API_KEY",
            model="qwen3-8b",
            api_type="ollama",
            requires_key=False,
        ),
    }


@dataclass
class ServerSpec:
    """Relay server settings: admission, sampling and streaming limits."""

    environment: str = "development"  # "development" | "production"
    allowed_origins: list[str] = field(default_factory=list)
    dev_origins: list[str] = field(
        default_factory=lambda: [
            "http://localhost:3000", "http://127.0.0.1:3000",
            "http://localhost:3001", "http://127.0.0.1:3001",
        ]
    )
    default_user_id: str = "dev-user"
    default_tenant_id: str = "dev-tenant"
    temperature: float = 0.4
    idle_timeout: float = 60.0  # seconds without an upstream fragment
    connect_timeout: float = 30.0
    prompt_trace: bool = False
    prompt_trace_preview: int = 2000
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def effective_origins(self) -> list[str]:
        """Allow-list in priority order, dev origins only outside production."""
        origins = list(self.allowed_origins)
        if not self.is_production:
            origins.extend(self.dev_origins)
        # dict preserves first-seen order
        return list(dict.fromkeys(o for o in origins if o))


@dataclass
class ClientSpec:
    """Settings for the streaming chat client."""

    api_url: str = "http://127.0.0.1:8000/api/chat"
    max_retries: int = 3
    timeout: float = 120.0


@dataclass
class RelayConfig:
    """Top-level config for the chat relay."""

    # Process-wide default provider
    provider: str = "openai"

    providers: dict[str, ProviderSpec] = field(default_factory=_default_providers)
    server: ServerSpec = field(default_factory=ServerSpec)
    client: ClientSpec = field(default_factory=ClientSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chat_relay.yaml"),
    Path.home() / ".config" / "chat-relay" / "config.yaml",
]


def _parse_provider(name: str, raw: dict[str, Any]) -> ProviderSpec:
    base = _default_providers().get(name) or ProviderSpec(
        name=name,
        display_name=name,
        api_key_env=f"{name.upper().replace('-', '_')}_API_KEY",
    )
    values = {
        k: v for k, v in raw.items()
        if v is not None and k in ProviderSpec.__dataclass_fields__
    }
    values["name"] = name
    spec = ProviderSpec(**{**base.__dict__, **values})
    spec.url = spec.base_url
    return spec


def _parse_section(cls: type, raw: dict[str, Any] | None) -> Any:
    if not raw:
        return cls()
    values = {
        k: v for k, v in raw.items()
        if v is not None and k in cls.__dataclass_fields__
    }
    return cls(**values)


def _apply_env(config: RelayConfig, env: Mapping[str, str]) -> RelayConfig:
    """Overlay environment variables onto *config* in place."""
    if env.get("PROVIDER"):
        config.provider = env["PROVIDER"].strip()

    server = config.server
    if env.get("RELAY_ENV"):
        server.environment = env["RELAY_ENV"].strip()
    if env.get("ALLOWED_ORIGINS"):
        extra = [o.strip() for o in env["ALLOWED_ORIGINS"].split(",") if o.strip()]
        server.allowed_origins = list(dict.fromkeys(server.allowed_origins + extra))
    if env.get("DEFAULT_INTERNAL_USER_ID"):
        server.default_user_id = env["DEFAULT_INTERNAL_USER_ID"]
    if env.get("DEFAULT_TENANT_ID"):
        server.default_tenant_id = env["DEFAULT_TENANT_ID"]

    trace = env.get("PROMPT_TRACE") or env.get("PROMPT_DEBUG") or env.get("LOG_PROMPTS")
    if trace is not None:
        server.prompt_trace = trace.strip().lower() in _TRUTHY
    preview = env.get("PROMPT_TRACE_PREVIEW_LENGTH")
    if preview:
        try:
            server.prompt_trace_preview = int(preview)
        except ValueError:
            _logger.warning("Ignoring non-integer PROMPT_TRACE_PREVIEW_LENGTH=%r", preview)

    for spec in config.providers.values():
        key = env.get(spec.api_key_env) or env.get(f"{spec.env_prefix}_API_KEY")
        if key:
            spec.api_key = key
        url = env.get(f"{spec.env_prefix}_API_URL")
        if url:
            spec.url = url.rstrip("/")
        model = env.get(f"{spec.env_prefix}_MODEL")
        if model:
            spec.model = model

    return config


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Load configuration from YAML, then apply environment overrides.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.
    env:
        Environment mapping (defaults to ``os.environ``).

    Returns
    -------
    RelayConfig
    """
    env = os.environ if env is None else env
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return _apply_env(RelayConfig(), env)
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return _apply_env(RelayConfig(), env)

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    providers = _default_providers()
    for name, praw in (raw.get("providers") or {}).items():
        providers[name] = _parse_provider(name, praw or {})

    config = RelayConfig(
        provider=raw.get("provider", "openai"),
        providers=providers,
        server=_parse_section(ServerSpec, raw.get("server")),
        client=_parse_section(ClientSpec, raw.get("client")),
    )
    return _apply_env(config, env)
