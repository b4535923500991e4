#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, Optional, Set

import typer
import websockets
from rich.console import Console

from server.core.BroadcastScheduler import BroadcastScheduler, QuoteObserver
from server.core.ConnectionLink import ConnectionLink
from server.core.ConnectionState import ConnectionState
from server.core.MessageHandlers import REQUEST_HANDLER_REGISTRY
from server.core.QuoteSource import QuoteSource, RandomQuoteSource
from server.core.SubscriberRegistry import SubscriberRegistry
from shared.config import ServerConfig, load_server_config
from shared.envelope import Connected, Failed, decode_request
from shared.errors import (
    ConfigError,
    MalformedPayload,
    NotFound,
    ProtocolViolation,
    TransportError,
    UnknownMessageType,
)
from shared.log import configure_root_logging, get_logger, log_envelope

# Configure Logging
logger = get_logger(__name__)


class QuoteServer:
    """
    Accepts WebSocket clients, drives each through the subscribe handshake
    and fans quotes out to every subscriber on a fixed period.

    Per connection:
        accepted -> ready (send connect.connected)
        ready -> subscribed (on subscribeTo: register, send connect.ack, send one quote)
        subscribed -> closed (on unsubscribeFrom, or transport close)
        any -> failed (transport error)
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8080,
        *,
        broadcast_interval: float = 1.0,
        security_id: str = "100",
        quote_source: Optional[QuoteSource] = None,
        ping_interval: float = 15.0,
        ping_timeout: float = 45.0,
        on_quote: Optional[QuoteObserver] = None,
    ):
        self.host = host
        self.port = port
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        # Single source of truth for who receives broadcasts
        self.registry = SubscriberRegistry()
        # Every accepted connection, subscribed or not
        self.connections: Set[ConnectionLink] = set()

        self.quote_source: QuoteSource = quote_source or RandomQuoteSource(security_id)
        self.scheduler = BroadcastScheduler(
            self.registry,
            self.quote_source,
            broadcast_interval,
            on_send_failure=self.handle_send_failure,
            on_quote=on_quote,
        )
        self.ready = asyncio.Event()

        logger.info(f"Initialized quote server for security {getattr(self.quote_source, 'security_id', '?')}")

    @classmethod
    def from_config(cls, config: ServerConfig, **kwargs: Any) -> QuoteServer:
        return cls(
            config.host,
            config.port,
            broadcast_interval=config.broadcast_interval,
            security_id=config.security_id,
            ping_interval=config.ping_interval,
            ping_timeout=config.ping_timeout,
            **kwargs,
        )

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start_server(self) -> None:
        """Start the WebSocket server and the broadcast loop, run until cancelled."""
        logger.info(f"Starting quote server on {self.host}:{self.port}")

        async with websockets.serve(
            self.handle_connection,
            self.host,
            self.port,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout,
        ) as ws_server:
            # Port 0 asks the OS for a free port; report the real one
            sockets = list(ws_server.sockets)
            if sockets:
                self.port = sockets[0].getsockname()[1]
            logger.info(f"Quote server listening on {self.url}")

            self.scheduler.start()
            self.ready.set()
            try:
                await asyncio.Future()  # Run forever
            except asyncio.CancelledError:
                logger.info("Server task cancelled")
                raise
            finally:
                self.ready.clear()
                await self.shutdown()

    async def shutdown(self) -> None:
        """Stop broadcasting, tell every client, drain the registry and close."""
        await self.scheduler.stop()
        # Registry first: nothing may be broadcast to a socket being released
        self.registry.clear()
        links = list(self.connections)
        if links:
            logger.info(f"Closing {len(links)} connections")
        await asyncio.gather(*(self._close_for_shutdown(link) for link in links))

    async def _close_for_shutdown(self, link: ConnectionLink) -> None:
        await link.send_message(Failed())
        await self.cleanup_connection(link, close_code=1001, close_reason="server shutting down")

    async def handle_connection(self, websocket: websockets.ServerConnection) -> None:
        """
        Handle one WebSocket connection for its whole lifetime.

        Frames are processed strictly in arrival order; the loop only ends
        when the transport closes.
        """
        connection = ConnectionLink(websocket)
        self.connections.add(connection)
        logger.info(f"New connection from {connection.peer}")

        try:
            connection.transition(ConnectionState.READY)
            await connection.send(Connected())

            async for message in websocket:
                await self.process_message(connection, message)

        except TransportError as e:
            logger.warning(f"Handshake with {connection.peer} failed: {e}")
            connection.finish(ConnectionState.FAILED)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.info(f"Connection {connection.peer} dropped: {e}",
                        extra={"connection_id": connection.connection_id})
            connection.finish(ConnectionState.FAILED)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection {connection.peer} closed")
        except Exception as e:
            logger.error(f"Error handling connection {connection.peer}: {e}")
            connection.finish(ConnectionState.FAILED)
        finally:
            await self.cleanup_connection(connection)

    async def process_message(self, connection: ConnectionLink, message: str | bytes) -> None:
        """Decode one client frame and route it. Every failure here is local to the frame."""
        ctx = {"connection_id": connection.connection_id, "peer": connection.peer}
        try:
            request = decode_request(message)
            log_envelope(logger, "debug", "Processing request", envelope=request, **ctx)
            handler = REQUEST_HANDLER_REGISTRY[type(request)]
            await handler(self, connection, request)
        except UnknownMessageType as e:
            logger.warning(f"Dropping unrecognized message: {e}", extra=ctx)
        except MalformedPayload as e:
            logger.warning(f"Dropping malformed request: {e}", extra=ctx)
        except ProtocolViolation as e:
            logger.warning(f"Ignoring out-of-sequence request: {e}", extra=ctx)
        except NotFound as e:
            logger.warning(f"Unsubscribe ignored: {e}", extra=ctx)
        except TransportError as e:
            logger.warning(f"Reply not delivered: {e}", extra=ctx)

    async def handle_send_failure(self, connection: ConnectionLink, error: TransportError) -> None:
        """A broadcast send failed: the socket is gone, treat it as closed."""
        await self.cleanup_connection(
            connection,
            failed=True,
            close_code=1011,
            close_reason="send failed",
        )

    async def cleanup_connection(
        self,
        connection: ConnectionLink,
        *,
        failed: bool = False,
        close_code: int = 1000,
        close_reason: Optional[str] = None,
    ) -> None:
        """Remove from the registry, then release the transport. Safe to call twice."""
        connection_id = connection.connection_id
        if connection_id is not None and self.registry.get(connection_id) is connection:
            with suppress(NotFound):
                self.registry.unsubscribe(connection_id)

        connection.finish(ConnectionState.FAILED if failed else ConnectionState.CLOSED)
        self.connections.discard(connection)
        await connection.close(code=close_code, reason=close_reason)

    def get_status(self) -> Dict[str, Any]:
        """Expose internal status for health/diagnostics."""
        return {
            "endpoint": self.url,
            "listening": self.ready.is_set(),
            "connections": len(self.connections),
            "subscribers": self.registry.identities(),
            "broadcast_interval": self.scheduler.interval,
            "ticks": self.scheduler.ticks,
            "quotes_delivered": self.scheduler.delivered,
            "send_failures": self.scheduler.failures,
        }


# ========================================
#           COMMAND LINE
# ========================================

app = typer.Typer(help="Quote stream server")
console = Console()


@app.command()
def serve(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    host: Optional[str] = typer.Option(None, help="Interface to bind"),
    port: Optional[int] = typer.Option(None, help="Port to listen on"),
    interval: Optional[float] = typer.Option(None, help="Seconds between broadcasts"),
    security_id: Optional[str] = typer.Option(None, help="Security id stamped on quotes"),
    echo: bool = typer.Option(False, help="Print every broadcast value"),
    log_level: Optional[str] = typer.Option(None, help="DEBUG, INFO, WARNING or ERROR"),
):
    """Run the quote server until interrupted."""
    try:
        cfg = load_server_config(
            config,
            host=host,
            port=port,
            broadcast_interval=interval,
            security_id=security_id,
            log_level=log_level,
        )
    except ConfigError as e:
        console.print(f"[red]Configuration error[/]: {e}")
        raise typer.Exit(code=2)

    configure_root_logging(cfg.log_level)

    def echo_quote(quote) -> None:
        console.print(f"Server sending [bold]{quote.current_price}[/]")

    server = QuoteServer.from_config(cfg, on_quote=echo_quote if echo else None)
    console.print(f"[bold green]Quote server starting[/] on ws://{cfg.host}:{cfg.port}")
    try:
        asyncio.run(server.start_server())
    except KeyboardInterrupt:
        console.print("Server stopped")


def main() -> None:
    """Console script entry point"""
    app()


if __name__ == "__main__":
    main()
