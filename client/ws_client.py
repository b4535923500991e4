from __future__ import annotations
import asyncio
import inspect
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple, Union

import websockets

from client.state import SessionState
from shared.config import ClientConfig
from shared.envelope import (
    ClientRequest,
    ConnectionAck,
    Connected,
    Failed,
    Quote,
    ServerEnvelope,
    SubscribeRequest,
    UnsubscribeRequest,
    decode,
    encode,
)
from shared.errors import DecodeError, ProtocolViolation, TransportError
from shared.log import get_logger, log_envelope

logger = get_logger(__name__)


QuoteCallback = Callable[[Optional[str]], Union[None, Awaitable[None]]]


class ClientSession:
    """
    One outbound connection to a quote server.

    The session answers connect.connected with a subscribeTo for its
    product, records the identity from connect.ack, then surfaces each
    quote's price to the caller. An absent value (None) is surfaced for
    undecodable frames, connect.failed, and an unexpected close.

    Sessions are independent objects; create as many as needed.

        async with ClientSession("ws://localhost:8080", "100") as session:
            async for price in session.updates():
                print(price)
    """

    def __init__(
        self,
        server_ws_url: str = "ws://localhost:8080",
        product_id: str = "100",
        *,
        open_timeout: float = 10.0,
        ping_interval: float = 15.0,
        ping_timeout: float = 45.0,
    ) -> None:
        self.server_ws_url = server_ws_url
        self.product_id = product_id
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.websocket: Optional[websockets.ClientConnection] = None
        self.state = SessionState.DISCONNECTED
        self.connection_id: Optional[int] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: ClientConfig) -> ClientSession:
        return cls(
            config.server_url,
            config.product_id,
            open_timeout=config.open_timeout,
            ping_interval=config.ping_interval,
            ping_timeout=config.ping_timeout,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> ClientSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the WebSocket. The handshake itself is driven by updates()."""
        if self._closed:
            raise TransportError("Session is closed")
        if self.websocket is not None:
            raise ProtocolViolation("Session is already connected")
        try:
            self.websocket = await websockets.connect(
                self.server_ws_url,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            self._fail()
            raise TransportError(f"Could not connect to {self.server_ws_url}: {e}") from e
        self.connection_id = None
        self._set_state(SessionState.CONNECTING)
        logger.info(f"Connected to {self.server_ws_url}")

    async def send(self, request: ClientRequest) -> None:
        """Send a request as a text frame."""
        if self.websocket is None:
            raise TransportError("Not connected")
        try:
            await self.websocket.send(encode(request).decode("utf-8"))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Connection closed while sending: {e}") from e
        log_envelope(logger, "debug", "Sent request", envelope=request, connection_id=self.connection_id)

    async def unsubscribe(self) -> None:
        """Ask the server to drop this session; the server then closes the socket."""
        if self.state is not SessionState.SUBSCRIBED or self.connection_id is None:
            raise ProtocolViolation(f"Cannot unsubscribe while {self.state.value}")
        await self.send(UnsubscribeRequest(connection_id=self.connection_id))

    async def updates(self) -> AsyncIterator[Optional[str]]:
        """
        Receive loop as an async iterator.

        Yields the price of every quote, or None for a frame that could not
        be used. Ends after close() or once the connection is lost.
        """
        if self.websocket is None:
            raise TransportError("Not connected")
        websocket = self.websocket

        while not self._closed:
            try:
                raw = await websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                if self._closed:
                    return
                logger.warning(f"Connection lost: {e}", extra={"connection_id": self.connection_id})
                self._fail()
                yield None
                return

            try:
                envelope = decode(raw)
            except DecodeError as e:
                logger.warning(f"Dropping undecodable frame: {e}", extra={"connection_id": self.connection_id})
                yield None
                continue

            try:
                surfaced, value = await self._react(envelope)
            except ProtocolViolation as e:
                log_envelope(logger, "warning", f"Ignoring out-of-sequence message: {e}",
                             envelope=envelope, connection_id=self.connection_id)
                continue
            if surfaced:
                yield value

    async def recv_loop(self, on_quote: QuoteCallback) -> None:
        """Drive updates() and hand every value to a sync or async callback."""
        async for value in self.updates():
            result = on_quote(value)
            if inspect.isawaitable(result):
                await result

    async def _react(self, envelope: ServerEnvelope) -> Tuple[bool, Optional[str]]:
        """Apply one envelope to the session. Returns (surface?, value)."""
        if isinstance(envelope, Connected):
            if self.state is not SessionState.CONNECTING:
                raise ProtocolViolation(f"connect.connected while {self.state.value}")
            try:
                await self.send(SubscribeRequest(product_id=self.product_id))
            except TransportError as e:
                # The receive side will report the close
                logger.warning(f"Subscribe not sent: {e}")
                return False, None
            self._set_state(SessionState.AWAITING_HANDSHAKE)
            return False, None

        if isinstance(envelope, ConnectionAck):
            if self.state is not SessionState.AWAITING_HANDSHAKE:
                raise ProtocolViolation(f"connect.ack while {self.state.value}")
            self.connection_id = envelope.connection_id
            self._set_state(SessionState.SUBSCRIBED)
            logger.info(f"Subscribed to product {self.product_id}", extra={"connection_id": self.connection_id})
            return False, None

        if isinstance(envelope, Quote):
            if self.state is not SessionState.SUBSCRIBED:
                raise ProtocolViolation(f"trading.quote while {self.state.value}")
            return True, envelope.current_price

        if isinstance(envelope, Failed):
            logger.warning("Server reported connect.failed", extra={"connection_id": self.connection_id})
            self._fail(keep_transport=True)
            return True, None

        raise ProtocolViolation(f"Unhandled envelope {envelope!r}")

    async def close(self) -> None:
        """Terminate the transport and the receive loop. The session cannot be reused."""
        self._closed = True
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close(code=1000)
            except Exception as e:
                logger.error(f"Error closing connection: {e}")
        self._set_state(SessionState.DISCONNECTED)

    def _fail(self, keep_transport: bool = False) -> None:
        self._set_state(SessionState.FAILED)
        if not keep_transport:
            self.websocket = None
        self._set_state(SessionState.DISCONNECTED)

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("Session %s -> %s", self.state.value, state.value)
        self.state = state
