"""Observer channel between a chat session and whatever renders it."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from chat_relay.types import SessionEvent, SessionEventType

_logger = logging.getLogger(__name__)

# Handlers may be plain functions or coroutines taking a SessionEvent
Handler = Callable[[SessionEvent], Any]


class EventBus:
    """Ordered async pub/sub for ``SessionEvent``.

    Handlers run one after another in subscription order and each ``emit()``
    finishes before the session moves on, so a renderer sees stream
    fragments in exactly the order they were appended.  A failing handler
    is logged and skipped; it never reaches the session.
    """

    def __init__(self) -> None:
        self._handlers: dict[SessionEventType | None, list[Handler]] = {}

    def subscribe(
        self,
        event_type: SessionEventType | None,
        handler: Handler,
    ) -> Callable[[], None]:
        """Register *handler* for *event_type* (``None`` for every event).

        Returns a callable that removes the subscription again.
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        return self.subscribe(None, handler)

    def has_subscribers(self, event_type: SessionEventType) -> bool:
        return bool(self._handlers.get(event_type) or self._handlers.get(None))

    async def emit(self, event: SessionEvent) -> None:
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(None, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception(
                    "Session observer %s failed on %s",
                    getattr(handler, "__name__", handler),
                    event.type.value,
                )
