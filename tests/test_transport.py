import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from transport import RTCChannel, RTCTransport

from fakes import FakeSignaling, RelayedSignaling

BAD_OFFER_SDP = "v=0\r\nm=application x\r\n"


async def wait_until(predicate, timeout=20.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class StubDataChannel:
    """Just enough of an aiortc data channel for RTCChannel.attach."""
    def __init__(self, ready_state="open"):
        self.readyState = ready_state
        self.handlers = {}
        self.sent = []

    def on(self, event):
        def register(fn):
            self.handlers[event] = fn
            return fn
        return register

    def send(self, payload):
        self.sent.append(payload)

    def close(self):
        self.readyState = "closed"


class StubPeerConnection:
    def __init__(self):
        self.connectionState = "new"
        self.handlers = {}
        self.closed = False

    def on(self, event):
        def register(fn):
            self.handlers[event] = fn
            return fn
        return register

    async def close(self):
        self.closed = True


def test_already_open_data_channel_emits_open_on_next_tick():
    async def run():
        channel = RTCChannel("b1", False, StubPeerConnection(), "c1")
        opened, messages = [], []
        channel.on("open", lambda: opened.append(True))
        channel.on("message", messages.append)

        data_channel = StubDataChannel("open")
        channel.attach(data_channel)
        assert opened == []
        await asyncio.sleep(0)
        assert opened == [True]

        channel.send("hello")
        assert data_channel.sent == ["hello"]
        data_channel.handlers["message"]("hi")
        assert messages == ["hi"]

    asyncio.run(run())


def test_failed_peer_connection_errors_and_closes_channel():
    async def run():
        transport = RTCTransport("a1", FakeSignaling())
        await transport.open()
        pc = StubPeerConnection()
        channel = RTCChannel("b1", True, pc, "c1")
        errors = []
        channel.on("error", errors.append)
        transport._track(channel)
        assert transport.channels == {"c1": channel}

        pc.connectionState = "failed"
        await pc.handlers["connectionstatechange"]()
        await asyncio.sleep(0)

        assert len(errors) == 1 and errors[0].kind == "channel-error"
        assert channel.closed
        assert transport.channels == {}
        assert pc.closed
        assert not transport.destroyed

    asyncio.run(run())


def test_bad_offer_only_closes_its_own_channel():
    async def run():
        signaling = FakeSignaling()
        transport = RTCTransport("a1", signaling)
        await transport.open()
        reported, incoming, channel_errors = [], [], []
        transport.on_error = reported.append

        def on_incoming(channel):
            channel.on("error", channel_errors.append)
            incoming.append(channel)

        transport.on_incoming = on_incoming

        signaling.deliver({"type": "signal", "from": "mallory",
                           "signal": {"type": "offer", "sdp": BAD_OFFER_SDP, "connectionId": "c"}})
        await wait_until(lambda: incoming and incoming[0].closed, timeout=5.0)

        assert not transport.destroyed
        assert reported == []
        assert len(channel_errors) == 1
        assert incoming[0].peer_id == "mallory"
        assert signaling.sent == []
        assert transport.channels == {}
        await transport.destroy()

    asyncio.run(run())


def test_answer_for_unknown_connection_is_ignored():
    async def run():
        signaling = FakeSignaling()
        transport = RTCTransport("a1", signaling)
        await transport.open()
        reported = []
        transport.on_error = reported.append

        signaling.deliver({"type": "signal", "from": "b1",
                           "signal": {"type": "answer", "sdp": "v=0\r\n", "connectionId": "nope"}})
        signaling.deliver({"type": "signal", "from": "b1", "signal": {"type": "answer"}})
        await asyncio.sleep(0.05)

        assert not transport.destroyed
        assert reported == []
        await transport.destroy()

    asyncio.run(run())


def test_two_transports_open_a_channel_and_exchange_messages():
    async def run():
        hub = {}
        a_signaling = RelayedSignaling("a1", hub)
        b_signaling = RelayedSignaling("b1", hub)
        a = RTCTransport("a1", a_signaling)
        b = RTCTransport("b1", b_signaling)
        await a.open()
        await b.open()

        incoming = []
        b.on_incoming = incoming.append
        outbound = a.connect("b1")
        a_opened = []
        outbound.on("open", lambda: a_opened.append(True))

        await wait_until(lambda: incoming and incoming[0].is_open and outbound.is_open)
        inbound = incoming[0]
        assert inbound.peer_id == "a1" and not inbound.outbound
        assert inbound.connection_id == outbound.connection_id
        assert a_opened == [True]

        received, replies = [], []
        inbound.on("message", received.append)
        outbound.on("message", replies.append)
        outbound.send("hello bob")
        await wait_until(lambda: received)
        inbound.send("hello alice")
        await wait_until(lambda: replies)
        assert received == ["hello bob"]
        assert replies == ["hello alice"]

        offers = [f["signal"]["type"] for f in a_signaling.sent]
        answers = [f["signal"]["type"] for f in b_signaling.sent]
        assert offers == ["offer"] and answers == ["answer"]

        await a.destroy()
        await b.destroy()
        await asyncio.sleep(0.1)
        assert outbound.closed

    asyncio.run(run())
