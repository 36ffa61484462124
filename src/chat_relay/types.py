"""Shared data types for the chat relay."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """One conversational turn.

    ``content`` only grows while the message is the session's streaming
    target; once the stream's terminal frame is processed it is left alone.
    """

    role: Role
    content: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.get("error"))

    def to_wire(self) -> dict[str, str]:
        """The ``{role, content}`` shape sent to the relay."""
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------

class ConnectionStatus(str, enum.Enum):
    """Client-side connection state of a chat session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class SessionEventType(enum.Enum):
    """Event types published by a chat session."""

    REQUEST_STARTED = "request.started"
    REQUEST_SUCCEEDED = "request.succeeded"
    CONNECTION_CHANGED = "connection.changed"
    STREAM_METADATA = "stream.metadata"
    STREAM_CONTENT = "stream.content"
    STREAM_DONE = "stream.done"
    STREAM_ERROR = "stream.error"


@dataclass
class SessionEvent:
    """Event emitted by a chat session via the EventBus."""

    type: SessionEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
