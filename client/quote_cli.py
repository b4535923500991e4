#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import websockets
from rich.console import Console
from rich.table import Table

from shared.config import ClientConfig, load_client_config
from shared.envelope import Connected, ConnectionAck, SubscribeRequest, decode, encode
from shared.errors import ConfigError, DecodeError, TransportError
from shared.log import configure_root_logging
from .state import QuoteHistory
from .ws_client import ClientSession

app = typer.Typer(help="Quote stream client CLI")
console = Console()


def _load(config: Optional[Path], server: Optional[str], product: Optional[str],
          log_level: Optional[str]) -> ClientConfig:
    try:
        cfg = load_client_config(config, server_url=server, product_id=product, log_level=log_level)
    except ConfigError as e:
        console.print(f"[red]Configuration error[/]: {e}")
        raise typer.Exit(code=2)
    configure_root_logging(cfg.log_level)
    return cfg


@app.command()
def run(
    server: Optional[str] = typer.Option(None, help="WebSocket URL of the quote server"),
    product: Optional[str] = typer.Option(None, help="Product id to subscribe to"),
    count: int = typer.Option(0, help="Stop after this many prices (0 = forever)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    log_level: Optional[str] = typer.Option(None, help="DEBUG, INFO, WARNING or ERROR"),
):
    """Subscribe and print prices as they arrive."""
    cfg = _load(config, server, product, log_level)
    history = QuoteHistory()

    async def main_loop() -> None:
        session = ClientSession.from_config(cfg)
        await session.connect()
        console.print(f"[bold green]Connected[/] to {cfg.server_url}, product {cfg.product_id}")
        try:
            async for price in session.updates():
                history.record(price)
                if price is None:
                    console.print("[dim]no value[/]")
                    continue
                console.print(f"[bold cyan]{cfg.product_id}[/] {price}")
                if count and history.received >= count:
                    break
        finally:
            await session.close()

    try:
        asyncio.run(main_loop())
    except TransportError as e:
        console.print(f"[red]Connection error[/]: {e}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        pass
    finally:
        _print_summary(history)


@app.command()
def probe(
    server: Optional[str] = typer.Option(None, help="WebSocket URL of the quote server"),
    product: Optional[str] = typer.Option(None, help="Product id to subscribe to"),
    timeout: float = typer.Option(5.0, help="Seconds to wait for each frame"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Print the raw handshake frames as JSON and exit after the ack."""
    cfg = _load(config, server, product, None)

    async def handshake() -> None:
        async with websockets.connect(cfg.server_url, open_timeout=cfg.open_timeout) as ws:
            while True:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
                try:
                    envelope = decode(raw)
                except DecodeError as e:
                    console.print(f"[red]Undecodable frame[/]: {e}")
                    continue
                console.print_json(data=envelope.to_dict())
                if isinstance(envelope, Connected):
                    request = SubscribeRequest(product_id=cfg.product_id)
                    console.print(f"[dim]-> {json.dumps(request.to_dict())}[/]")
                    await ws.send(encode(request).decode("utf-8"))
                elif isinstance(envelope, ConnectionAck):
                    return

    try:
        asyncio.run(handshake())
    except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        console.print(f"[red]Probe failed[/]: {e!r}")
        raise typer.Exit(code=1)


def _print_summary(history: QuoteHistory) -> None:
    table = Table(title="Session summary")
    table.add_column("Received")
    table.add_column("Absent")
    table.add_column("Last")
    table.add_column("Min")
    table.add_column("Max")
    values = history.numeric()
    table.add_row(
        str(history.received),
        str(history.absent),
        history.last or "-",
        f"{min(values):g}" if values else "-",
        f"{max(values):g}" if values else "-",
    )
    console.print(table)


def main() -> None:
    """Console script entry point"""
    app()


if __name__ == "__main__":
    main()
