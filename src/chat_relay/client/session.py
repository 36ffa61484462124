"""Client-side conversation store driven by the relay's event stream.

``ChatSession`` owns the message list, the connection state machine, the
retry counter and the cached side-channel payload.  It processes at most
one request at a time and publishes everything it does on an ``EventBus``
so renderers stay decoupled from the state machine.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import httpx

from chat_relay.events.bus import EventBus
from chat_relay.protocol import ContentFrame, DoneFrame, MetadataFrame
from chat_relay.types import (
    ConnectionStatus,
    Message,
    SessionEvent,
    SessionEventType,
)

from .reader import StreamReader
from .state import ConnectionState

_logger = logging.getLogger(__name__)

GENERIC_ERROR_TEXT = "Sorry, there was an error processing your request."
RETRIES_EXHAUSTED_TEXT = "Maximum retry attempts reached"

_OPEN_STATUSES = (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED)


class SessionBusyError(RuntimeError):
    """The operation is not allowed while a request is in flight."""


class RetryExhaustedError(RuntimeError):
    """``retry()`` was called after the configured maximum was reached."""


@dataclass
class StreamMetrics:
    """Client-side timing for the current request."""

    request_id: str | None = None
    started_at: float = field(default_factory=time.monotonic)
    message_count: int = 0
    error_count: int = 0
    latency_ms: deque[float] = field(default_factory=lambda: deque(maxlen=10))


@dataclass
class _StreamingTarget:
    """Which message the open stream writes into."""

    index: int
    stream_id: str
    request_id: str | None = None


class ChatSession:
    """A conversation with the relay.

    Parameters
    ----------
    api_url:
        URL of the relay's chat endpoint.
    http:
        Optional shared ``httpx.AsyncClient``; one is created (and closed
        by ``aclose()``) otherwise.
    max_retries:
        How many times ``retry()`` may be called before it is refused.
    event_bus:
        Bus for observers (optional).
    headers:
        Extra request headers, e.g. identity headers.
    """

    def __init__(
        self,
        api_url: str,
        http: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        event_bus: EventBus | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.api_url = api_url
        self.max_retries = max_retries
        self.events = event_bus or EventBus()
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=30))
        self._headers = dict(headers or {})

        self._messages: list[Message] = []
        self._state = ConnectionState()
        self.error: str | None = None
        self.retry_count = 0
        self.metrics = StreamMetrics()

        self._last_payload: dict[str, Any] | None = None
        self._target: _StreamingTarget | None = None
        self._in_flight: str | None = None  # stream id of the open request
        self._task: asyncio.Task[Any] | None = None
        self._abandoned: set[str] = set()

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_loading(self) -> bool:
        return self._in_flight is not None

    @property
    def last_payload(self) -> dict[str, Any] | None:
        return self._last_payload

    @property
    def streaming_message(self) -> Message | None:
        if self._target is None:
            return None
        return self._messages[self._target.index]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send_message(self, text: str, payload: dict[str, Any] | None = None) -> bool:
        """Send a new user turn.

        Returns ``False`` without doing anything when *text* is blank or a
        request is already in flight.
        """
        if not text.strip() or self._in_flight is not None:
            return False
        self.retry_count = 0
        return await self._dispatch(text, list(self._messages), payload)

    async def retry(self) -> bool:
        """Resend the last user turn with the cached payload.

        Everything after that turn (an error stand-in or a flagged partial
        answer, if any) is dropped so nothing is duplicated.
        """
        if self._in_flight is not None:
            return False
        if self.retry_count >= self.max_retries:
            self.error = RETRIES_EXHAUSTED_TEXT
            raise RetryExhaustedError(RETRIES_EXHAUSTED_TEXT)

        index = self._last_user_index()
        if index is None:
            _logger.debug("Nothing to retry: no user message")
            return False

        self.retry_count += 1
        self.error = None
        content = self._messages[index].content
        return await self._dispatch(content, self._messages[:index], self._last_payload)

    def clear(self) -> None:
        """Forget the conversation.  Refused while a request is in flight."""
        if self._in_flight is not None:
            raise SessionBusyError("Cannot clear the conversation while a response is streaming")
        self._messages = []
        self.error = None
        self.retry_count = 0

    async def cancel(self) -> bool:
        """Abandon the open stream, if any.

        The partial assistant message stays as it is; anything the old
        stream still delivers is discarded.
        """
        stream_id = self._in_flight
        if stream_id is None:
            return False
        self._abandoned.add(stream_id)
        self._in_flight = None
        self._target = None
        if self.connection_status in _OPEN_STATUSES:
            await self._set_status(ConnectionStatus.DISCONNECTED)

        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    async def aclose(self) -> None:
        await self.cancel()
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Request dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        content: str,
        history: list[Message],
        payload: dict[str, Any] | None,
    ) -> bool:
        stream_id = str(uuid.uuid4())
        # Claimed before the first await so a concurrent send is refused.
        self._in_flight = stream_id
        self._task = asyncio.current_task()
        self._last_payload = payload
        self.error = None
        self.metrics = StreamMetrics()

        user_message = Message(role="user", content=content.strip())
        self._messages = [*history, user_message]
        body = {
            "messages": [m.to_wire() for m in self._messages],
            **(payload or {}),
        }

        try:
            await self._emit(SessionEventType.REQUEST_STARTED, {"content": user_message.content})
            await self._set_status(ConnectionStatus.CONNECTING)

            async with self._http.stream(
                "POST", self.api_url, json=body, headers=self._headers,
            ) as response:
                if not self.is_active(stream_id):
                    return False
                if not response.is_success:
                    await self._on_http_error(stream_id, await _error_text(response))
                    return True

                reader = StreamReader(self, stream_id)
                await reader.consume_response(response)

            if (
                self.is_active(stream_id)
                and self.connection_status == ConnectionStatus.DISCONNECTED
            ):
                await self._emit(
                    SessionEventType.REQUEST_SUCCEEDED,
                    {"message": self._messages[-1]},
                )
            return True
        except asyncio.CancelledError:
            if stream_id not in self._abandoned:
                raise
            _logger.debug("Stream %s cancelled by caller", stream_id)
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            return False
        except httpx.HTTPError as e:
            await self._on_transport_error(stream_id, str(e) or type(e).__name__)
            return True
        finally:
            self._abandoned.discard(stream_id)
            if self._in_flight == stream_id:
                self._in_flight = None
                self._task = None

    # ------------------------------------------------------------------
    # StreamSink implementation (called by StreamReader)
    # ------------------------------------------------------------------

    def is_active(self, stream_id: str) -> bool:
        return self._in_flight == stream_id

    async def on_open(self, stream_id: str) -> None:
        if not self.is_active(stream_id):
            return
        self._messages.append(Message(role="assistant", content=""))
        self._target = _StreamingTarget(index=len(self._messages) - 1, stream_id=stream_id)
        await self._set_status(ConnectionStatus.CONNECTED)

    async def on_metadata(self, stream_id: str, frame: MetadataFrame) -> None:
        target = self._owned_target(stream_id)
        if target is None:
            return
        target.request_id = frame.request_id
        self.metrics.request_id = frame.request_id
        self.metrics.started_at = time.monotonic()
        await self._emit(SessionEventType.STREAM_METADATA, {
            "request_id": frame.request_id,
            "model": frame.model,
            "provider": frame.provider,
            "timestamp": frame.timestamp,
        })

    async def on_content(self, stream_id: str, frame: ContentFrame) -> None:
        target = self._owned_target(stream_id)
        if target is None or not frame.belongs_to(target.request_id):
            _logger.debug("Discarding stale content frame %s", frame.id)
            return
        message = self._messages[target.index]
        message.content += frame.text

        self.metrics.message_count += 1
        self.metrics.latency_ms.append((time.monotonic() - self.metrics.started_at) * 1000)
        await self._emit(SessionEventType.STREAM_CONTENT, {
            "text": frame.text,
            "index": target.index,
        })

    async def on_done(self, stream_id: str, frame: DoneFrame) -> None:
        target = self._owned_target(stream_id)
        if target is None or not frame.belongs_to(target.request_id):
            return
        self._target = None
        await self._set_status(ConnectionStatus.DISCONNECTED)
        await self._emit(SessionEventType.STREAM_DONE, {"request_id": target.request_id})

    async def on_error(self, stream_id: str, message: str) -> None:
        if not self.is_active(stream_id):
            return
        target, self._target = self._target, None
        if target is not None and target.stream_id == stream_id:
            assistant = self._messages[target.index]
            if not assistant.content:
                assistant.content = message
            assistant.metadata["error"] = True
        await self._record_error(message)

    # ------------------------------------------------------------------
    # Error paths
    # ------------------------------------------------------------------

    async def _on_http_error(self, stream_id: str, message: str) -> None:
        """Relay rejected the request before any stream opened."""
        if not self.is_active(stream_id):
            return
        self._target = None
        # The user turn is always last here: retry() drops earlier stand-ins.
        self._messages.append(
            Message(role="assistant", content=message, metadata={"error": True}),
        )
        await self._record_error(message)

    async def _on_transport_error(self, stream_id: str, message: str) -> None:
        """Connection failed (or dropped before the reader took over)."""
        if not self.is_active(stream_id) or self.connection_status not in _OPEN_STATUSES:
            return
        target, self._target = self._target, None
        if target is not None and target.stream_id == stream_id:
            self._messages[target.index].metadata["error"] = True
        else:
            self._messages.append(
                Message(role="assistant", content=GENERIC_ERROR_TEXT, metadata={"error": True}),
            )
        await self._record_error(message)

    async def _record_error(self, message: str) -> None:
        self.error = message
        self.metrics.error_count += 1
        await self._set_status(ConnectionStatus.ERROR)
        await self._emit(SessionEventType.STREAM_ERROR, {"error": message})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _owned_target(self, stream_id: str) -> _StreamingTarget | None:
        target = self._target
        if target is None or target.stream_id != stream_id or not self.is_active(stream_id):
            return None
        return target

    def _last_user_index(self) -> int | None:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == "user":
                return index
        return None

    async def _set_status(self, status: ConnectionStatus) -> None:
        if self._state.transition(status):
            await self._emit(SessionEventType.CONNECTION_CHANGED, {"status": status})

    async def _emit(self, event_type: SessionEventType, data: dict[str, Any]) -> None:
        if not self.events.has_subscribers(event_type):
            return
        await self.events.emit(SessionEvent(type=event_type, data=data))


async def _error_text(response: httpx.Response) -> str:
    """Error message from a non-2xx relay response."""
    await response.aread()
    fallback = f"Request failed with status {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or fallback
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return fallback
