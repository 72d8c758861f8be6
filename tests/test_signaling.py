import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from aiohttp import test_utils, web

from relay_server import RELAY_PATH, CoordinationRelay
from signaling import SignalingClient


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_reconnect_delay_grows_linearly():
    client = SignalingClient("ws://unused", reconnect_delay=1.5)
    assert [client.delay_for(n) for n in (1, 2, 3, 4, 5)] == [1.5, 3.0, 4.5, 6.0, 7.5]


def test_gives_up_after_max_attempts():
    async def run():
        port = test_utils.unused_port()
        client = SignalingClient(f"ws://127.0.0.1:{port}/ws", max_reconnect_attempts=3,
                                 reconnect_delay=0.01, heartbeat_interval=0)
        gave_up = []
        client.add_give_up_listener(lambda: gave_up.append(client.reconnect_attempts))

        await client.start()
        await wait_until(lambda: client.persistently_disconnected)
        assert gave_up == [4]
        assert not client.running
        assert await client.send({"type": "ping"}) is False
        await client.close()

    asyncio.run(run())


def test_connects_receives_frames_and_tracks_pong():
    async def run():
        relay = CoordinationRelay()
        server = test_utils.TestServer(relay.build_app())
        await server.start_server()
        try:
            client = SignalingClient(str(server.make_url(RELAY_PATH)), heartbeat_interval=0)
            frames = []
            opened = []
            client.add_listener(frames.append)
            client.add_open_listener(lambda: opened.append(True))

            await client.start()
            assert await client.wait_connected(2.0)
            assert opened == [True]

            assert await client.send({"type": "register", "peerId": "a1", "displayName": "A"})
            assert await client.send({"type": "ping"})
            await wait_until(lambda: client.last_pong_at is not None)
            assert {"type": "registered", "peerId": "a1"} in frames

            await client.close()
        finally:
            await server.close()

    asyncio.run(run())


def test_reconnects_after_server_drops_socket():
    async def run():
        relay = CoordinationRelay()
        server = test_utils.TestServer(relay.build_app())
        await server.start_server()
        try:
            client = SignalingClient(str(server.make_url(RELAY_PATH)), reconnect_delay=0.01, heartbeat_interval=0)
            opened = []
            client.add_open_listener(lambda: opened.append(True))
            await client.start()
            assert await client.wait_connected(2.0)

            await client.send({"type": "register", "peerId": "a1", "displayName": "A"})
            await wait_until(lambda: "a1" in relay.peers)
            await relay.peers["a1"].ws.close()

            await wait_until(lambda: len(opened) == 2)
            assert client.reconnect_attempts == 0
            assert not client.persistently_disconnected
            await client.close()
        finally:
            await server.close()

    asyncio.run(run())


def test_close_waits_for_background_tasks():
    async def run():
        relay = CoordinationRelay()
        server = test_utils.TestServer(relay.build_app())
        await server.start_server()
        try:
            client = SignalingClient(str(server.make_url(RELAY_PATH)), heartbeat_interval=0.05)
            await client.start()
            assert await client.wait_connected(2.0)
            run_task, heartbeat_task = client._task, client._heartbeat_task

            await client.close()
            assert run_task.done()
            assert heartbeat_task.done()
            assert client.session is None
        finally:
            await server.close()

    asyncio.run(run())


def test_heartbeat_keeps_answered_connection():
    async def run():
        relay = CoordinationRelay()
        server = test_utils.TestServer(relay.build_app())
        await server.start_server()
        try:
            client = SignalingClient(str(server.make_url(RELAY_PATH)), heartbeat_interval=0.05)
            opened = []
            client.add_open_listener(lambda: opened.append(True))
            await client.start()
            assert await client.wait_connected(2.0)

            await asyncio.sleep(0.3)
            assert client.last_pong_at is not None
            assert opened == [True]
            await client.close()
        finally:
            await server.close()

    asyncio.run(run())


def test_unanswered_heartbeats_drop_and_reconnect():
    sockets = []

    async def silent_relay(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        sockets.append(ws)
        async for _ in ws:
            pass
        return ws

    async def run():
        app = web.Application()
        app.router.add_get(RELAY_PATH, silent_relay)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            client = SignalingClient(str(server.make_url(RELAY_PATH)), reconnect_delay=0.01,
                                     heartbeat_interval=0.05, max_missed_pongs=2)
            opened = []
            client.add_open_listener(lambda: opened.append(True))
            await client.start()

            await wait_until(lambda: len(opened) >= 2)
            assert len(sockets) >= 2
            assert client.last_pong_at is None
            await client.close()
        finally:
            await server.close()

    asyncio.run(run())
