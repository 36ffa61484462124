"""FastAPI application exposing the streaming chat relay.

Routes
------
- ``POST /api/chat``    -- relay one conversational turn as an event stream
- ``OPTIONS /api/chat`` -- CORS preflight
- ``GET /health``       -- liveness check
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response

from chat_relay.config import RelayConfig, load_config
from chat_relay.llm.providers import ProviderClientCache
from chat_relay.server.relay import ChatRelay

_logger = logging.getLogger(__name__)


def create_app(
    config: RelayConfig | None = None,
    clients: ProviderClientCache | None = None,
) -> FastAPI:
    """Build the relay application.

    The provider-client cache is created here and closed when the app
    shuts down.  Tests pass their own *clients* to stub the upstream.
    """
    config = config or load_config()
    clients = clients or ProviderClientCache(config)
    relay = ChatRelay(config, clients)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        t0 = time.perf_counter()
        _logger.info(
            "Relay starting (env=%s, default provider=%s, origins=%s)",
            config.server.environment, config.provider,
            ", ".join(config.server.effective_origins) or "-",
        )
        try:
            yield
        finally:
            await clients.aclose()
            _logger.info("Relay stopped after %.1fs", time.perf_counter() - t0)

    app = FastAPI(title="chat-relay", lifespan=lifespan)
    app.state.config = config
    app.state.clients = clients

    @app.post("/api/chat")
    async def chat(request: Request) -> Response:
        return await relay.handle(request)

    @app.options("/api/chat")
    async def chat_preflight(request: Request) -> Response:
        return relay.preflight(request)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
