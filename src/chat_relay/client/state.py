"""Connection-status state machine for a chat session.

    disconnected          -> connecting     (request dispatched)
    connecting            -> connected      (response stream opened)
    connected             -> disconnected   (done frame)
    connecting|connected  -> error          (error frame, transport failure, bad response)
    connecting|connected  -> disconnected   (stream abandoned with cancel())
    error                 -> connecting     (send_message / retry)

No terminal state: the machine is reused for every request of a session.
"""

from __future__ import annotations

import logging

from chat_relay.types import ConnectionStatus

_logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.ERROR,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.CONNECTED: frozenset({
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.ERROR,
    }),
    ConnectionStatus.ERROR: frozenset({ConnectionStatus.CONNECTING}),
}


class InvalidTransition(RuntimeError):
    """A status change the state machine does not allow."""


class ConnectionState:
    """Holds the current ``ConnectionStatus`` and validates every change."""

    def __init__(self, initial: ConnectionStatus = ConnectionStatus.DISCONNECTED) -> None:
        self._status = initial

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def can_transition(self, target: ConnectionStatus) -> bool:
        return target in _TRANSITIONS[self._status]

    def transition(self, target: ConnectionStatus) -> bool:
        """Move to *target*.

        Returns ``False`` when already there, ``True`` on a change, and
        raises ``InvalidTransition`` for an edge the machine lacks.
        """
        if target == self._status:
            return False
        if not self.can_transition(target):
            raise InvalidTransition(f"{self._status.value} -> {target.value}")
        _logger.debug("connection %s -> %s", self._status.value, target.value)
        self._status = target
        return True
