from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class ConnectionState(str, Enum):
    """Server-side lifecycle of one accepted connection."""

    ACCEPTED = "accepted"        # transport accepted, greeting not sent yet
    READY = "ready"              # connect.connected sent, waiting for subscribeTo
    SUBSCRIBED = "subscribed"    # registered, receiving broadcasts
    CLOSED = "closed"            # unsubscribed or closed by either side
    FAILED = "failed"            # transport error

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def can_transition(self, target: ConnectionState) -> bool:
        return target in _TRANSITIONS[self]


TERMINAL_STATES: FrozenSet[ConnectionState] = frozenset({
    ConnectionState.CLOSED,
    ConnectionState.FAILED,
})

# Failed and Closed are reachable from any non-terminal state
_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.ACCEPTED: frozenset({ConnectionState.READY}) | TERMINAL_STATES,
    ConnectionState.READY: frozenset({ConnectionState.SUBSCRIBED}) | TERMINAL_STATES,
    ConnectionState.SUBSCRIBED: TERMINAL_STATES,
    ConnectionState.CLOSED: frozenset(),
    ConnectionState.FAILED: frozenset(),
}
