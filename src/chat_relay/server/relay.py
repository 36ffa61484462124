"""Per-request relay controller.

    admission → validation → prompt → provider → upstream stream → frames

Each request gets its own ``RequestContext``; the only state shared
between requests is the ``ProviderClientCache``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Literal

from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, ValidationError

from chat_relay.config import RelayConfig
from chat_relay.llm.client import TokenStream, UpstreamError
from chat_relay.llm.providers import (
    ProviderClientCache,
    ProviderConfigError,
    UnknownProviderError,
    resolve_provider,
)
from chat_relay.prompts import (
    CHAT_INSTRUCTIONS,
    build_provider_messages,
    format_history,
    trace_prompt,
)
from chat_relay.protocol import (
    MEDIA_TYPE,
    ContentFrame,
    DoneFrame,
    ErrorFrame,
    MetadataFrame,
    encode_frame,
)
from chat_relay.server.admission import (
    AdmissionError,
    check_origin,
    effective_origin,
    require_identity,
)

_logger = logging.getLogger(__name__)
_telemetry = logging.getLogger("chat_relay.telemetry")

ALLOW_METHODS = "POST, OPTIONS"
ALLOW_HEADERS = "Content-Type, X-Internal-User-Id, X-Tenant-Id"


# ---------------------------------------------------------------------------
# Request body
# ---------------------------------------------------------------------------

class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = ""


class ChatRequest(BaseModel):
    """Inbound body; unknown keys are the client's side-channel payload."""

    model_config = ConfigDict(extra="allow")

    messages: list[ChatTurn] = []
    provider: str | None = None


# ---------------------------------------------------------------------------
# Request context + telemetry
# ---------------------------------------------------------------------------

@dataclass
class RequestContext:
    """Ephemeral per-request state; discarded when the request ends."""

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started: float = field(default_factory=time.monotonic)
    fragment_count: int = 0
    error_count: int = 0
    finished: bool = False

    def frame_id(self, suffix: str | int) -> str:
        return f"{self.request_id}-{suffix}"


def log_request_metrics(ctx: RequestContext, error: str | None = None) -> dict[str, Any] | None:
    """Emit the request's single lifecycle record (no-op the second time)."""
    if ctx.finished:
        return None
    ctx.finished = True
    record = {
        "type": "performance_metrics",
        "requestId": ctx.request_id,
        "duration": round((time.monotonic() - ctx.started) * 1000, 2),
        "messageCount": ctx.fragment_count,
        "errorCount": ctx.error_count,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    _telemetry.info("%s", json.dumps(record), extra={"metrics": record})
    return record


def cors_headers(origin: str) -> dict[str, str]:
    headers = {"Vary": "Origin"}
    if origin:
        headers["Access-Control-Allow-Origin"] = origin
    return headers


def stream_headers(origin: str) -> dict[str, str]:
    return {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",  # disable nginx buffering
        "Access-Control-Allow-Methods": ALLOW_METHODS,
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
        **cors_headers(origin),
    }


# ---------------------------------------------------------------------------
# Frame generation
# ---------------------------------------------------------------------------

async def relay_frames(ctx: RequestContext, stream: TokenStream) -> AsyncIterator[str]:
    """Re-frame an opened upstream stream for the client.

    Always ends with exactly one terminal frame unless the client went
    away, in which case the upstream connection is closed promptly.
    """
    error: str | None = None
    try:
        yield encode_frame(MetadataFrame(
            request_id=ctx.request_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            model=stream.model,
            provider=stream.provider,
            id=ctx.request_id,
        ))
        async for fragment in stream:
            ctx.fragment_count += 1
            yield encode_frame(ContentFrame(text=fragment, id=ctx.frame_id(ctx.fragment_count)))
        yield encode_frame(DoneFrame(id=ctx.frame_id("done")))
    except (asyncio.CancelledError, GeneratorExit):
        error = "client disconnected"
        _logger.info("Client disconnected from request %s", ctx.request_id)
        raise
    except Exception as e:
        ctx.error_count += 1
        error = str(e) or type(e).__name__
        if isinstance(e, UpstreamError):
            _logger.warning("Upstream failed mid-stream for %s: %s", ctx.request_id, error)
        else:
            _logger.exception("Relay error for request %s", ctx.request_id)
        yield encode_frame(ErrorFrame(message=error, id=ctx.frame_id("error")))
    finally:
        await stream.aclose()
        log_request_metrics(ctx, error)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class ChatRelay:
    """Handles ``POST /api/chat``.

    Parameters
    ----------
    config:
        The relay configuration.
    clients:
        Provider-client cache shared by all requests.
    """

    def __init__(self, config: RelayConfig, clients: ProviderClientCache) -> None:
        self._config = config
        self._clients = clients

    def preflight(self, request: Request) -> Response:
        try:
            origin = check_origin(request.headers.get("origin"), self._config.server)
        except AdmissionError as e:
            return self._reject(e.message, e.status_code, self._fallback_origin())
        return Response(status_code=204, headers=stream_headers(origin))

    async def handle(self, request: Request) -> Response:
        ctx = RequestContext()
        server = self._config.server

        # 1. Admission
        try:
            origin = check_origin(request.headers.get("origin"), server)
        except AdmissionError as e:
            return self._fail(ctx, e.message, e.status_code, self._fallback_origin())
        try:
            identity = require_identity(request.headers, server)
        except AdmissionError as e:
            return self._fail(ctx, e.message, e.status_code, origin)

        # 2. Input validation
        try:
            body = ChatRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            return self._fail(ctx, f"Invalid request: {_first_line(e)}", 400, origin)
        if not body.messages or not body.messages[-1].content:
            return self._fail(ctx, "Invalid request: missing messages or content", 400, origin)

        # 3. Prompt assembly
        history = [m.model_dump() for m in body.messages[:-1]]
        messages = build_provider_messages(
            question=body.messages[-1].content,
            chat_history=format_history(history) or None,
            instructions=CHAT_INSTRUCTIONS,
        )

        # 4. Provider resolution
        try:
            provider = resolve_provider(body.provider, self._config)
            client = self._clients.get(provider)
        except UnknownProviderError as e:
            return self._fail(ctx, str(e), 400, origin)
        except ProviderConfigError as e:
            return self._fail(ctx, str(e), 500, origin)

        _logger.info(
            "chat request %s user=%s tenant=%s provider=%s turns=%d",
            ctx.request_id, identity.user_id, identity.tenant_id,
            provider, len(body.messages),
        )
        if server.prompt_trace:
            trace_prompt("chat.prompt", messages, ctx.request_id, server.prompt_trace_preview)

        # 5. Open the upstream stream
        try:
            stream = await client.open_stream(messages, temperature=server.temperature)
        except UpstreamError as e:
            return self._fail(ctx, str(e), 502, origin)

        return StreamingResponse(
            relay_frames(ctx, stream),
            media_type=MEDIA_TYPE,
            headers=stream_headers(origin),
        )

    def _fallback_origin(self) -> str:
        return effective_origin(None, self._config.server.effective_origins)

    def _fail(self, ctx: RequestContext, message: str, status: int, origin: str) -> Response:
        ctx.error_count += 1
        log_request_metrics(ctx, message)
        return self._reject(message, status, origin, ctx.request_id)

    @staticmethod
    def _reject(
        message: str,
        status: int,
        origin: str,
        request_id: str | None = None,
    ) -> JSONResponse:
        content: dict[str, Any] = {"error": message}
        if request_id:
            content["requestId"] = request_id
        return JSONResponse(content, status_code=status, headers=cors_headers(origin))


def _first_line(exc: Exception) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
