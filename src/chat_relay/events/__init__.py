"""Event bus for chat session observers."""

from chat_relay.events.bus import EventBus

__all__ = ["EventBus"]
