"""Shared fixtures: a scripted upstream provider and a relay wired to it."""

from __future__ import annotations

import httpx
import pytest
from fakes import FakeUpstream

from chat_relay.config import RelayConfig
from chat_relay.llm.client import AsyncLLMClient
from chat_relay.llm.providers import ProviderClientCache
from chat_relay.server.app import create_app


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def config() -> RelayConfig:
    config = RelayConfig()
    config.providers["openai"].api_key = "test-key"
    return config


@pytest.fixture
def clients(config: RelayConfig, upstream: FakeUpstream) -> ProviderClientCache:
    def factory(spec):
        return AsyncLLMClient(spec, backoff_base=0, transport=upstream.transport)

    return ProviderClientCache(config, factory=factory)


@pytest.fixture
def app(config: RelayConfig, clients: ProviderClientCache):
    return create_app(config, clients)


@pytest.fixture
async def relay_http(app):
    """HTTP client talking to the relay app in-process."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://relay",
    ) as http:
        yield http
