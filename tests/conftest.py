import asyncio
import json
import sys
from contextlib import suppress
from pathlib import Path

import pytest
import pytest_asyncio
import websockets

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class DummyWebSocket:
    def __init__(self, fail: bool = False, remote_address=("127.0.0.1", 50000)) -> None:
        self.sent_messages: list[bytes] = []
        self.fail = fail
        self.remote_address = remote_address
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None

    async def send(self, data) -> None:
        if self.fail or self.closed:
            raise websockets.exceptions.ConnectionClosedError(None, None)
        self.sent_messages.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def frames(self) -> list[dict]:
        return [json.loads(m) for m in self.sent_messages]


@pytest.fixture
def make_link():
    from server.core.ConnectionLink import ConnectionLink

    def factory(fail: bool = False):
        return ConnectionLink(DummyWebSocket(fail=fail))

    return factory


@pytest_asyncio.fixture
async def start_server():
    """Start QuoteServer instances on ephemeral ports; all are cancelled afterwards."""
    from server.server import QuoteServer

    running = []

    async def starter(**kwargs):
        kwargs.setdefault("broadcast_interval", 60.0)
        server = QuoteServer(host="127.0.0.1", port=0, **kwargs)
        task = asyncio.create_task(server.start_server())
        await asyncio.wait_for(server.ready.wait(), timeout=5.0)
        running.append(task)
        return server

    yield starter

    for task in running:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
