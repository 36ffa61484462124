"""Streaming chat client: session store, stream reader, connection state."""

from chat_relay.client.reader import StreamReader, StreamSink
from chat_relay.client.session import (
    ChatSession,
    RetryExhaustedError,
    SessionBusyError,
    StreamMetrics,
)
from chat_relay.client.state import ConnectionState, InvalidTransition

__all__ = [
    "ChatSession",
    "ConnectionState",
    "InvalidTransition",
    "RetryExhaustedError",
    "SessionBusyError",
    "StreamMetrics",
    "StreamReader",
    "StreamSink",
]
