"""Async streaming client for OpenAI-compatible and Ollama LLM APIs.

``AsyncLLMClient.open_stream()`` performs the request (retrying transient
failures while nothing has been produced yet) and returns a
``TokenStream`` once the provider has accepted it.  Iterating the stream
yields text fragments; closing it releases the HTTP connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx

from chat_relay.config import ProviderSpec

_logger = logging.getLogger(__name__)

# Retry configuration (only before the stream is open)
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4
_RETRY_STATUSES = (429, 500, 502, 503, 504)


class UpstreamError(RuntimeError):
    """The provider failed, before or during the stream."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_detail(body: bytes) -> str:
    """Best-effort human-readable message from a provider error body."""
    text = body.decode(errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text[:500]
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, dict):
            return str(err.get("message") or err)
        return str(err)
    return text[:500]


class TokenStream:
    """A provider stream that has been opened.

    Async-iterable exactly once.  Breaking out of the loop early is fine as
    long as ``aclose()`` is awaited afterwards (or the stream is used as an
    async context manager).
    """

    def __init__(
        self,
        response: httpx.Response,
        *,
        provider: str,
        model: str,
        api_type: str = "openai",
        idle_timeout: float | None = None,
    ) -> None:
        self._response = response
        self.provider = provider
        self.model = model
        self._api_type = api_type
        self._idle_timeout = idle_timeout
        self._fragments: AsyncIterator[str] | None = None
        self.fragment_count = 0

    def __aiter__(self) -> AsyncIterator[str]:
        if self._fragments is not None:
            raise RuntimeError("TokenStream can only be iterated once")
        self._fragments = self._iterate()
        return self._fragments

    async def __aenter__(self) -> TokenStream:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    async def aclose(self) -> None:
        """Stop reading and close the underlying connection."""
        if self._fragments is not None:
            await self._fragments.aclose()  # type: ignore[attr-defined]
        await self._response.aclose()

    async def _iterate(self) -> AsyncIterator[str]:
        parse = self._parse_ollama if self._api_type == "ollama" else self._parse_openai
        try:
            async for line in self._response.aiter_lines():
                if not line.strip():
                    continue
                chunk, finished = parse(line)
                if chunk:
                    self.fragment_count += 1
                    yield chunk
                if finished:
                    break
        except httpx.ReadTimeout as e:
            raise UpstreamError(
                f"{self.provider} stream idle for more than {self._idle_timeout}s",
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.provider} stream interrupted: {e}") from e
        finally:
            await self._response.aclose()

    def _parse_openai(self, line: str) -> tuple[str, bool]:
        if not line.startswith("data:"):
            return "", False
        data_str = line[5:].strip()
        if data_str == "[DONE]":
            return "", True
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _logger.debug("Ignoring non-JSON stream line: %r", data_str[:200])
            return "", False
        if not isinstance(data, dict):
            return "", False

        if data.get("error"):
            raise UpstreamError(
                f"{self.provider} error: {_error_detail(json.dumps(data).encode())}",
            )
        if data.get("model"):
            self.model = data["model"]

        choices = data.get("choices") or []
        if not choices:
            # usage-only chunk
            return "", False
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        if not isinstance(content, str):
            return "", False
        return content, False

    def _parse_ollama(self, line: str) -> tuple[str, bool]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            _logger.debug("Ignoring non-JSON stream line: %r", line[:200])
            return "", False
        if not isinstance(data, dict):
            return "", False
        if data.get("error"):
            raise UpstreamError(f"{self.provider} error: {data['error']}")
        content = (data.get("message") or {}).get("content")
        chunk = content if isinstance(content, str) else ""
        return chunk, bool(data.get("done"))


class AsyncLLMClient:
    """Streaming client for one provider (OpenAI-compatible or Ollama)."""

    def __init__(
        self,
        spec: ProviderSpec,
        idle_timeout: float = 60,
        connect_timeout: float = 30,
        backoff_base: float = _BACKOFF_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self._api_type = spec.api_type
        self._idle_timeout = idle_timeout
        self._backoff_base = backoff_base

        headers = {"Content-Type": "application/json"}
        if spec.api_key:
            headers["Authorization"] = f"Bearer {spec.api_key}"

        # For Ollama native API, strip /v1 from url
        base_url = spec.base_url
        if self._api_type == "ollama":
            base_url = base_url.removesuffix("/v1")

        # The read timeout bounds the gap between two upstream fragments.
        self._stream_client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(idle_timeout, connect=connect_timeout),
            transport=transport,
        )

    @property
    def default_model(self) -> str:
        return self.spec.model

    def _payload(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> tuple[str, dict[str, Any]]:
        if self._api_type == "ollama":
            options: dict[str, Any] = {"temperature": temperature}
            if max_tokens:
                options["num_predict"] = max_tokens
            payload: dict[str, Any] = {
                "model": model,
                "messages": messages,
                "stream": True,
                "options": options,
            }
            path = "/api/chat"
        else:
            payload = {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "stream": True,
            }
            if max_tokens:
                payload["max_tokens"] = max_tokens
            path = "/chat/completions"
        if self.spec.extra_params:
            payload.update(self.spec.extra_params)
        return path, payload

    async def open_stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> TokenStream:
        """Start a streaming completion and return it once it is accepted.

        Raises ``UpstreamError`` if the provider rejects the request or stays
        unavailable after all retries.
        """
        model = model or self.spec.model
        path, payload = self._payload(messages, model, temperature, max_tokens)
        last_error = "exhausted retries"

        for attempt in range(_MAX_RETRIES):
            request = self._stream_client.build_request("POST", path, json=payload)
            try:
                resp = await self._stream_client.send(request, stream=True)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = str(e) or type(e).__name__
                _logger.warning(
                    "%s stream connect error (attempt %d/%d): %s",
                    self.spec.display_name, attempt + 1, _MAX_RETRIES, last_error,
                )
                await self._backoff(attempt)
                continue

            if resp.status_code in _RETRY_STATUSES:
                body = await resp.aread()
                await resp.aclose()
                last_error = f"HTTP {resp.status_code}: {_error_detail(body)}"
                _logger.warning(
                    "%s stream API returned %d (attempt %d/%d), retrying...",
                    self.spec.display_name, resp.status_code, attempt + 1, _MAX_RETRIES,
                )
                await self._backoff(attempt)
                continue

            if resp.status_code >= 400:
                body = await resp.aread()
                await resp.aclose()
                raise UpstreamError(
                    f"{self.spec.display_name} API error {resp.status_code}: "
                    f"{_error_detail(body)}",
                    status_code=resp.status_code,
                )

            return TokenStream(
                resp,
                provider=self.spec.name,
                model=model,
                api_type=self._api_type,
                idle_timeout=self._idle_timeout,
            )

        raise UpstreamError(f"{self.spec.display_name} unavailable: {last_error}")

    async def _backoff(self, attempt: int) -> None:
        if attempt < _MAX_RETRIES - 1:
            await asyncio.sleep(self._backoff_base * (2 ** attempt))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._stream_client.aclose()
