"""Upstream LLM access for the chat relay."""

from chat_relay.llm.client import AsyncLLMClient, TokenStream, UpstreamError
from chat_relay.llm.providers import (
    ProviderClientCache,
    ProviderConfigError,
    UnknownProviderError,
    resolve_provider,
)

__all__ = [
    "AsyncLLMClient",
    "ProviderClientCache",
    "ProviderConfigError",
    "TokenStream",
    "UnknownProviderError",
    "UpstreamError",
    "resolve_provider",
]
