"""Relay server: admission, per-request streaming, FastAPI app."""

from chat_relay.server.app import create_app
from chat_relay.server.relay import ChatRelay, RequestContext

__all__ = ["ChatRelay", "RequestContext", "create_app"]
