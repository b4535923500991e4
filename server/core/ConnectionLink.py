from __future__ import annotations

import asyncio
from typing import Any, Optional

import websockets

from server.core.ConnectionState import ConnectionState
from shared.envelope import Envelope, encode
from shared.errors import ProtocolViolation, TransportError
from shared.log import get_logger, log_envelope

logger = get_logger(__name__)


class ConnectionLink:
    """Wrapper around an accepted WebSocket with its protocol state.

    The server owns the websocket. The subscriber registry only keeps a
    reference to the link and never closes it.
    """

    def __init__(self, websocket: websockets.ServerConnection | Any):
        self.websocket = websocket
        self.state = ConnectionState.ACCEPTED
        self.connection_id: Optional[int] = None
        self.product_id: Optional[str] = None
        self.remote_address = getattr(websocket, "remote_address", None)
        # Serializes frames on this socket; the subscribe handler holds it
        # across register + ack + first quote so a broadcast can't interleave.
        self.send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<ConnectionLink id={self.connection_id} state={self.state.value} peer={self.peer}>"

    @property
    def peer(self) -> str:
        if isinstance(self.remote_address, tuple) and len(self.remote_address) >= 2:
            return f"{self.remote_address[0]}:{self.remote_address[1]}"
        return str(self.remote_address)

    @property
    def is_subscribed(self) -> bool:
        return self.state is ConnectionState.SUBSCRIBED

    def transition(self, target: ConnectionState) -> None:
        """Move to target state, raising ProtocolViolation if not allowed."""
        if not self.state.can_transition(target):
            raise ProtocolViolation(f"Cannot move from {self.state.value} to {target.value}")
        logger.debug("State %s -> %s", self.state.value, target.value,
                     extra={"connection_id": self.connection_id, "peer": self.peer})
        self.state = target

    def finish(self, target: ConnectionState) -> None:
        """Enter a terminal state unless already in one."""
        if not self.state.is_terminal:
            self.transition(target)

    async def send(self, envelope: Envelope) -> None:
        """Send one envelope, raising TransportError on failure."""
        async with self.send_lock:
            await self.write(envelope)

    async def write(self, envelope: Envelope) -> None:
        """Send without taking send_lock. Caller must already hold it."""
        try:
            await self.websocket.send(encode(envelope))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Connection closed while sending {_type_name(envelope)}") from e
        except OSError as e:
            raise TransportError(f"Error sending {_type_name(envelope)}: {e}") from e
        log_envelope(logger, "debug", "Sent", envelope=envelope,
                     connection_id=self.connection_id, peer=self.peer)

    async def send_message(self, envelope: Envelope) -> bool:
        """Fire-and-forget send. Failures are logged, never raised."""
        try:
            await self.send(envelope)
            return True
        except TransportError as e:
            log_envelope(logger, "warning", str(e), envelope=envelope,
                         connection_id=self.connection_id, peer=self.peer)
            return False

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        """Close the WebSocket connection"""
        try:
            await self.websocket.close(code=code, reason=reason or "")
        except Exception as e:
            logger.error(f"Error closing connection: {e}", extra={"connection_id": self.connection_id})


def _type_name(envelope: Envelope) -> str:
    message_type = getattr(envelope, "type", None)
    return getattr(message_type, "value", None) or type(envelope).__name__
