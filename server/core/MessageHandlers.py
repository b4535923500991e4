from __future__ import annotations

from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Type

from server.core.ConnectionState import ConnectionState
from shared.envelope import ClientRequest, ConnectionAck, SubscribeRequest, UnsubscribeRequest
from shared.errors import ProtocolViolation
from shared.log import get_logger

if TYPE_CHECKING:
    from server.server import QuoteServer
    from server.core.ConnectionLink import ConnectionLink

logger = get_logger(__name__)

# Type alias for handler functions
RequestHandler = Callable[["QuoteServer", "ConnectionLink", ClientRequest], Awaitable[None]]


async def handle_subscribe(server: QuoteServer, connection: ConnectionLink, request: SubscribeRequest) -> None:
    """
    Register the connection and complete the handshake.

    The ack and the initial quote go out while send_lock is held, so the
    broadcast scheduler cannot slip a quote in ahead of the ack even
    though the connection is already in the registry.
    """
    if connection.state is not ConnectionState.READY:
        raise ProtocolViolation(f"subscribeTo received while {connection.state.value}")

    async with connection.send_lock:
        connection_id = server.registry.subscribe(connection)
        connection.connection_id = connection_id
        connection.product_id = request.product_id
        connection.transition(ConnectionState.SUBSCRIBED)
        logger.info("Subscribed to product %s", request.product_id,
                    extra={"connection_id": connection_id, "peer": connection.peer})

        await connection.write(ConnectionAck(connection_id=connection_id))
        await connection.write(server.quote_source())


async def handle_unsubscribe(server: QuoteServer, connection: ConnectionLink, request: UnsubscribeRequest) -> None:
    """
    Drop the subscriber named in the request and close its transport.

    The target is removed from the registry before its socket is closed,
    so no broadcast is attempted on it afterwards. Raises NotFound for an
    identity nobody holds.
    """
    if not connection.is_subscribed:
        raise ProtocolViolation(f"unsubscribeFrom received while {connection.state.value}")

    target = server.registry.unsubscribe(request.connection_id)
    target.finish(ConnectionState.CLOSED)
    logger.info("Closing unsubscribed connection",
                extra={"connection_id": request.connection_id, "peer": target.peer})
    await target.close(code=1000, reason="unsubscribed")


REQUEST_HANDLER_REGISTRY: Dict[Type, RequestHandler] = {
    SubscribeRequest: handle_subscribe,
    UnsubscribeRequest: handle_unsubscribe,
}
