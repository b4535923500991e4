import asyncio
import json
from contextlib import suppress

import pytest
import websockets


def subscribe_frame(product: str = "100") -> str:
    return json.dumps({"subscribeTo": f"trading.product.{product}"}, separators=(",", ":"))


async def recv_json(ws, timeout: float = 2.0) -> dict:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))


async def handshake(ws, product: str = "100"):
    assert await recv_json(ws) == {"t": "connect.connected"}
    await ws.send(subscribe_frame(product))
    return await recv_json(ws), await recv_json(ws)


async def wait_for(predicate, timeout: float = 3.0) -> bool:
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return False


@pytest.mark.asyncio
async def test_connect_subscribe_ack_then_initial_quote(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        ack, quote = await handshake(ws)

    assert ack == {"t": "connect.ack", "connectionId": 0}
    assert quote["t"] == "trading.quote"
    assert quote["body"]["securityId"] == "100"
    assert 1 <= int(quote["body"]["currentPrice"]) <= 1000


@pytest.mark.asyncio
async def test_second_subscriber_gets_next_identity(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as first, websockets.connect(server.url) as second:
        ack_1, _ = await handshake(first)
        ack_2, _ = await handshake(second)

        assert ack_1["connectionId"] == 0
        assert ack_2["connectionId"] == 1
        assert server.registry.identities() == [0, 1]
        assert server.registry.get(0).connection_id == 0


@pytest.mark.asyncio
async def test_broadcast_tick_reaches_every_subscriber(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as a, websockets.connect(server.url) as b:
        await handshake(a)
        await handshake(b)

        report = await server.scheduler.tick()

        assert report.attempted == 2
        quote_a = await recv_json(a)
        quote_b = await recv_json(b)
        assert quote_a == quote_b
        assert quote_a["body"]["currentPrice"] == report.quote.current_price


@pytest.mark.asyncio
async def test_unknown_identity_unsubscribe_changes_nothing(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        await handshake(ws)
        await ws.send(json.dumps({"unsubscribeFrom": 99}))
        await asyncio.sleep(0.1)

        assert server.registry.identities() == [0]
        await server.scheduler.tick()
        assert (await recv_json(ws))["t"] == "trading.quote"


@pytest.mark.asyncio
async def test_malformed_request_keeps_connection_usable(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        assert await recv_json(ws) == {"t": "connect.connected"}
        await ws.send(json.dumps({"subscribeTo": 100}))
        await ws.send("definitely not json")
        await ws.send(json.dumps({"hello": "world"}))
        await ws.send(subscribe_frame())

        assert await recv_json(ws) == {"t": "connect.ack", "connectionId": 0}
        assert (await recv_json(ws))["t"] == "trading.quote"


@pytest.mark.asyncio
async def test_unparseable_json_values_keep_connection_usable(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        assert await recv_json(ws) == {"t": "connect.connected"}
        await ws.send('{"unsubscribeFrom": 1' + "0" * 5000 + "}")
        await ws.send("[" * 200000)
        await ws.send(subscribe_frame())

        assert await recv_json(ws) == {"t": "connect.ack", "connectionId": 0}
        assert (await recv_json(ws))["t"] == "trading.quote"
        assert len(server.connections) == 1


@pytest.mark.asyncio
async def test_second_subscribe_is_ignored(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        await handshake(ws)
        await ws.send(subscribe_frame())
        await asyncio.sleep(0.1)
        await server.scheduler.tick()

        # Only the broadcast quote follows, no second ack
        assert (await recv_json(ws))["t"] == "trading.quote"
        assert server.registry.identities() == [0]


@pytest.mark.asyncio
async def test_unsubscribe_before_subscribe_is_ignored(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        assert await recv_json(ws) == {"t": "connect.connected"}
        await ws.send(json.dumps({"unsubscribeFrom": 0}))
        await ws.send(subscribe_frame())
        assert await recv_json(ws) == {"t": "connect.ack", "connectionId": 0}


@pytest.mark.asyncio
async def test_unsubscribe_own_identity_closes_connection(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        ack, _ = await handshake(ws)
        await ws.send(json.dumps({"unsubscribeFrom": ack["connectionId"]}))

        with pytest.raises(websockets.exceptions.ConnectionClosed):
            await recv_json(ws)

    assert len(server.registry) == 0
    assert await wait_for(lambda: not server.connections)


@pytest.mark.asyncio
async def test_unsubscribe_other_identity_closes_that_connection(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as a, websockets.connect(server.url) as b:
        await handshake(a)
        ack_b, _ = await handshake(b)

        await a.send(json.dumps({"unsubscribeFrom": ack_b["connectionId"]}))

        with pytest.raises(websockets.exceptions.ConnectionClosed):
            await recv_json(b)
        assert server.registry.identities() == [0]

        await server.scheduler.tick()
        assert (await recv_json(a))["t"] == "trading.quote"


@pytest.mark.asyncio
async def test_client_disconnect_removes_subscriber(start_server):
    server = await start_server()

    ws = await websockets.connect(server.url)
    await handshake(ws)
    assert len(server.registry) == 1

    await ws.close()

    assert await wait_for(lambda: len(server.registry) == 0)
    assert await wait_for(lambda: not server.connections)


@pytest.mark.asyncio
async def test_ack_always_precedes_quotes_under_fast_broadcast(start_server):
    server = await start_server(broadcast_interval=0.005)

    async def one_client():
        async with websockets.connect(server.url) as ws:
            assert await recv_json(ws) == {"t": "connect.connected"}
            await ws.send(subscribe_frame())
            frames = [await recv_json(ws) for _ in range(4)]
        return frames

    results = await asyncio.gather(*(one_client() for _ in range(6)))

    identities = []
    for frames in results:
        assert frames[0]["t"] == "connect.ack"
        assert all(f["t"] == "trading.quote" for f in frames[1:])
        identities.append(frames[0]["connectionId"])
    assert len(set(identities)) == 6


@pytest.mark.asyncio
async def test_shutdown_notifies_and_closes_clients():
    from server.server import QuoteServer

    server = QuoteServer(host="127.0.0.1", port=0, broadcast_interval=60.0)
    task = asyncio.create_task(server.start_server())
    await asyncio.wait_for(server.ready.wait(), timeout=5.0)

    async with websockets.connect(server.url) as ws:
        await handshake(ws)

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

        assert await recv_json(ws) == {"t": "connect.failed"}
        with pytest.raises(websockets.exceptions.ConnectionClosed):
            await recv_json(ws)
        assert ws.close_code == 1001

    assert len(server.registry) == 0
    assert not server.scheduler.running


@pytest.mark.asyncio
async def test_get_status_reports_subscribers(start_server):
    server = await start_server()

    async with websockets.connect(server.url) as ws:
        await handshake(ws)
        await server.scheduler.tick()
        await recv_json(ws)

        status = server.get_status()

    assert status["endpoint"] == server.url
    assert status["listening"] is True
    assert status["subscribers"] == [0]
    assert status["ticks"] == 1
    assert status["quotes_delivered"] == 1
    assert status["send_failures"] == 0
