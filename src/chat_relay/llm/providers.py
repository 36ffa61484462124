"""Provider resolution and the shared provider-client cache.

Resolution order is fixed: an explicit per-request selector, then the
configured process-wide default, then ``openai``.  An unrecognized name
always raises; nothing silently falls back.
"""

from __future__ import annotations

import logging
from typing import Callable

from chat_relay.config import ProviderSpec, RelayConfig

from .client import AsyncLLMClient

_logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "openai"

# Alternative spellings accepted from clients and the environment
_ALIASES = {
    "dashscope": "qwen",
    "tongyi": "qwen",
    "chatgpt": "openai",
}


class UnknownProviderError(ValueError):
    """The requested provider is not configured."""


class ProviderConfigError(RuntimeError):
    """The provider is known but cannot be used (e.g. missing API key)."""


def normalize_provider_name(name: str, known: list[str] | tuple[str, ...]) -> str:
    """Canonicalize *name* against the *known* provider names."""
    key = name.strip().lower()
    key = _ALIASES.get(key, key)
    if key not in known:
        raise UnknownProviderError(
            f"Unsupported provider: {name!r}. Supported providers: {', '.join(sorted(known))}"
        )
    return key


def resolve_provider(selector: str | None, config: RelayConfig) -> str:
    """Return the canonical provider for a request."""
    known = tuple(config.providers)
    if selector is not None and selector.strip():
        return normalize_provider_name(selector, known)
    return normalize_provider_name(config.provider or FALLBACK_PROVIDER, known)


ClientFactory = Callable[[ProviderSpec], AsyncLLMClient]


class ProviderClientCache:
    """Lookup-or-create cache of ``AsyncLLMClient`` keyed by provider.

    Created at process start and torn down with ``aclose()`` at shutdown.
    ``get()`` never awaits, so concurrent requests for the same provider
    on one event loop always share a single client.
    """

    def __init__(
        self,
        config: RelayConfig,
        factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._factory = factory or self._default_factory
        self._clients: dict[str, AsyncLLMClient] = {}

    def _default_factory(self, spec: ProviderSpec) -> AsyncLLMClient:
        server = self._config.server
        return AsyncLLMClient(
            spec,
            idle_timeout=server.idle_timeout,
            connect_timeout=server.connect_timeout,
        )

    def spec_for(self, provider: str) -> ProviderSpec:
        spec = self._config.providers.get(provider)
        if spec is None:
            raise UnknownProviderError(f"Unsupported provider: {provider!r}")
        if spec.requires_key and not spec.api_key:
            raise ProviderConfigError(
                f"{spec.display_name} API key not configured. "
                f"Please set {spec.api_key_env} in your environment."
            )
        return spec

    def get(self, provider: str) -> AsyncLLMClient:
        """Return the client for *provider*, creating it on first use."""
        client = self._clients.get(provider)
        if client is not None:
            return client
        spec = self.spec_for(provider)
        client = self._factory(spec)
        _logger.info("Created %s client (%s)", spec.display_name, spec.base_url)
        return self._clients.setdefault(provider, client)

    def __contains__(self, provider: str) -> bool:
        return provider in self._clients

    async def aclose(self) -> None:
        """Close every cached client."""
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            try:
                await client.close()
            except RuntimeError as e:
                # Harmless httpx/anyio cleanup race at interpreter shutdown
                if "Event loop is closed" not in str(e):
                    raise
