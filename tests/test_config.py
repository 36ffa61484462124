"""Tests for configuration loading and environment overrides."""

from __future__ import annotations

import logging

import pytest
import yaml

from chat_relay import config as config_module
from chat_relay.config import RelayConfig, ServerSpec, load_config


class TestDefaults:
    def test_defaults(self):
        config = RelayConfig()
        assert config.provider == "openai"
        assert set(config.providers) == {"openai", "qwen", "ollama"}
        assert config.server.temperature == 0.4
        assert config.server.default_user_id == "dev-user"
        assert config.client.max_retries == 3

    def test_effective_origins(self):
        server = ServerSpec(allowed_origins=["https://a.example", "http://localhost:3000"])
        assert server.effective_origins[0] == "https://a.example"
        assert server.effective_origins.count("http://localhost:3000") == 1
        assert "http://127.0.0.1:3001" in server.effective_origins

        server.environment = "Production"
        assert server.is_production
        assert server.effective_origins == ["https://a.example", "http://localhost:3000"]


class TestLoadYaml:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml", env={})
        assert config.provider == "openai"

    def test_search_path(self, tmp_path, monkeypatch):
        path = tmp_path / "chat_relay.yaml"
        path.write_text(yaml.safe_dump({"provider": "qwen"}))
        monkeypatch.setattr(config_module, "_SEARCH_PATHS", [tmp_path / "missing.yaml", path])
        assert load_config(env={}).provider == "qwen"

    def test_full_file(self, tmp_path):
        path = tmp_path / "relay.yaml"
        path.write_text(yaml.safe_dump({
            "provider": "local",
            "providers": {
                "local": {"url": "http://gpu-box:8080/v1/", "model": "llama-3", "requires_key": False},
                "openai": {"model": "gpt-4o"},
            },
            "server": {"environment": "production", "port": 9000, "unknown_key": 1},
            "client": {"max_retries": 5},
        }))
        config = load_config(path, env={})

        local = config.providers["local"]
        assert local.url == "http://gpu-box:8080/v1"
        assert local.api_key_env == "LOCAL_API_KEY"
        assert local.model == "llama-3"
        assert config.providers["openai"].model == "gpt-4o"
        assert config.providers["openai"].url == "https://api.openai.com/v1"
        assert config.server.is_production
        assert config.server.port == 9000
        assert config.client.max_retries == 5

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path, env={}).server == ServerSpec()


class TestEnvironment:
    def test_overrides(self, tmp_path):
        env = {
            "PROVIDER": "qwen",
            "RELAY_ENV": "production",
            "ALLOWED_ORIGINS": "https://a.example, https://b.example,",
            "DEFAULT_INTERNAL_USER_ID": "svc",
            "DEFAULT_TENANT_ID": "acme",
            "OPENAI_API_KEY": "sk-env",
            "QWEN_MODEL": "qwen-plus",
            "QWEN_API_URL": "https://proxy.example/v1/",
        }
        config = load_config(tmp_path / "nope.yaml", env=env)
        assert config.provider == "qwen"
        assert config.server.is_production
        assert config.server.allowed_origins == ["https://a.example", "https://b.example"]
        assert config.server.default_user_id == "svc"
        assert config.server.default_tenant_id == "acme"
        assert config.providers["openai"].api_key == "sk-env"
        assert config.providers["qwen"].model == "qwen-plus"
        assert config.providers["qwen"].url == "https://proxy.example/v1"

    @pytest.mark.parametrize("name", ["PROMPT_TRACE", "PROMPT_DEBUG", "LOG_PROMPTS"])
    def test_prompt_trace_flags(self, tmp_path, name):
        config = load_config(tmp_path / "nope.yaml", env={name: "true"})
        assert config.server.prompt_trace is True

    def test_bad_preview_length(self, tmp_path, caplog):
        caplog.set_level(logging.WARNING, logger="chat_relay.config")
        config = load_config(tmp_path / "nope.yaml", env={"PROMPT_TRACE_PREVIEW_LENGTH": "lots"})
        assert config.server.prompt_trace_preview == 2000
        assert "PROMPT_TRACE_PREVIEW_LENGTH" in caplog.text
