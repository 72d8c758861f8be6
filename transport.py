import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from errors import ProtocolError, TransportError
from protocol import RELAY_SIGNAL, new_message_id

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "p2pchat"
ICE_GATHER_TIMEOUT = 10.0

CHANNEL_EVENTS = ("open", "message", "close", "error")

_background_tasks: Set[asyncio.Task] = set()


def spawn(coro) -> asyncio.Task:
    """Runs coro in the background and keeps it referenced until it finishes."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_done)
    return task


def _background_done(task: asyncio.Task):
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task failed: {exc!r}")


class Channel:
    """
    One direct link to a remote peer.

    Events: "open" (), "message" (payload), "close" (), "error" (TransportError).
    "close" fires at most once.
    """
    def __init__(self, peer_id: str, outbound: bool):
        self.peer_id = peer_id
        self.outbound = outbound
        self.closed = False
        self._handlers: Dict[str, List[Callable]] = {event: [] for event in CHANNEL_EVENTS}

    def on(self, event: str, handler: Callable) -> Callable:
        if event not in self._handlers:
            raise ValueError(f"Unknown channel event: {event}")
        self._handlers[event].append(handler)
        return handler

    def emit(self, event: str, *args):
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Channel {event} handler failed for {self.peer_id}")

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def send(self, payload: str):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def _finish(self):
        if self.closed:
            return
        self.closed = True
        self.emit("close")

    def __repr__(self):
        direction = "out" if self.outbound else "in"
        return f"<{self.__class__.__name__} {self.peer_id} {direction} open={self.is_open}>"


class Transport:
    """
    Connection-establishment library bound to the local identity.

    on_incoming is called with each channel a remote peer opens to us;
    on_error with instance-level TransportErrors.
    """
    def __init__(self, local_peer_id: str):
        self.local_peer_id = local_peer_id
        self.destroyed = False
        self.on_incoming: Optional[Callable[[Channel], None]] = None
        self.on_error: Optional[Callable[[TransportError], None]] = None

    async def open(self):
        pass

    def connect(self, remote_peer_id: str) -> Channel:
        raise NotImplementedError

    async def destroy(self):
        self.destroyed = True

    def _report_error(self, err: TransportError):
        logger.error(f"Transport error ({err.kind}): {err}")
        if self.on_error:
            self.on_error(err)


class RTCChannel(Channel):
    """Channel backed by an aiortc data channel and its peer connection."""
    def __init__(self, peer_id: str, outbound: bool, pc: RTCPeerConnection, connection_id: str):
        super().__init__(peer_id, outbound)
        self.pc = pc
        self.connection_id = connection_id
        self.data_channel = None

    def attach(self, data_channel):
        self.data_channel = data_channel

        @data_channel.on("open")
        def on_open():
            logger.info(f"Data channel to {self.peer_id} open")
            self.emit("open")

        @data_channel.on("message")
        def on_message(message):
            self.emit("message", message)

        @data_channel.on("close")
        def on_close():
            self.close()

        if data_channel.readyState == "open":
            # remote-created channels can arrive already open
            asyncio.get_running_loop().call_soon(self.emit, "open")

    @property
    def is_open(self) -> bool:
        return (not self.closed and self.data_channel is not None
                and self.data_channel.readyState == "open")

    def send(self, payload: str):
        if not self.is_open:
            raise TransportError(f"Channel to {self.peer_id} is not open", kind="channel-closed")
        self.data_channel.send(payload)

    def close(self):
        if self.closed:
            return
        if self.data_channel is not None and self.data_channel.readyState != "closed":
            self.data_channel.close()
        spawn(self._close_pc())
        self._finish()

    async def _close_pc(self):
        try:
            await self.pc.close()
        except Exception as e:
            logger.debug(f"Closing peer connection to {self.peer_id}: {e}")


class RTCTransport(Transport):
    """
    WebRTC data channels negotiated through the relay.

    SDP offers and answers travel as relay ``signal`` frames:
    {"type": "signal", "to", "from", "signal": {"type": "offer"|"answer", "sdp", "connectionId"}}.
    Candidates are gathered before the description is sent, so no trickle ICE.
    """
    def __init__(self, local_peer_id: str, signaling, ice_servers: Sequence[str] = ()):
        super().__init__(local_peer_id)
        self.signaling = signaling
        self.ice_servers = list(ice_servers)
        self.channels: Dict[str, RTCChannel] = {}

    def _rtc_config(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])

    async def open(self):
        self.signaling.add_listener(self._on_frame)
        logger.info(f"RTC transport open for {self.local_peer_id}")

    def connect(self, remote_peer_id: str) -> RTCChannel:
        if self.destroyed:
            raise TransportError("Transport has been destroyed", kind="not-initialized")

        connection_id = new_message_id()
        pc = RTCPeerConnection(configuration=self._rtc_config())
        channel = RTCChannel(remote_peer_id, True, pc, connection_id)
        channel.attach(pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        self._track(channel)

        spawn(self._send_offer(channel))
        return channel

    async def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        self.signaling.remove_listener(self._on_frame)
        for channel in list(self.channels.values()):
            channel.close()
        self.channels.clear()
        logger.info(f"RTC transport for {self.local_peer_id} destroyed")

    def _track(self, channel: RTCChannel):
        self.channels[channel.connection_id] = channel
        channel.on("close", lambda: self.channels.pop(channel.connection_id, None))
        pc = channel.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.debug(f"Peer connection to {channel.peer_id}: {pc.connectionState}")
            if pc.connectionState == "failed":
                channel.emit("error", TransportError(f"Peer connection to {channel.peer_id} failed"))
                channel.close()
            elif pc.connectionState == "closed":
                channel.close()

    async def _wait_for_ice_gathering(self, pc: RTCPeerConnection):
        if pc.iceGatheringState == "complete":
            return
        done = asyncio.Event()

        @pc.on("icegatheringstatechange")
        def on_ice_state():
            if pc.iceGatheringState == "complete":
                done.set()

        await asyncio.wait_for(done.wait(), timeout=ICE_GATHER_TIMEOUT)

    async def _send_signal(self, remote_peer_id: str, signal: dict) -> bool:
        return await self.signaling.send({
            "type": RELAY_SIGNAL,
            "to": remote_peer_id,
            "from": self.local_peer_id,
            "signal": signal,
        })

    async def _send_offer(self, channel: RTCChannel):
        pc = channel.pc
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            await self._wait_for_ice_gathering(pc)
            sent = await self._send_signal(channel.peer_id, {
                "type": "offer",
                "sdp": pc.localDescription.sdp,
                "connectionId": channel.connection_id,
            })
            if not sent:
                raise TransportError("Signaling socket is not connected", kind="peer-unavailable")
            logger.info(f"Offer sent to {channel.peer_id} ({channel.connection_id})")
        except TransportError as e:
            channel.emit("error", e)
            channel.close()
        except Exception as e:
            channel.emit("error", TransportError(f"Offer to {channel.peer_id} failed: {e}"))
            channel.close()

    def _on_frame(self, frame: dict):
        if frame.get("type") != RELAY_SIGNAL or self.destroyed:
            return
        spawn(self._handle_signal(frame))

    async def _handle_signal(self, frame: dict):
        try:
            remote_peer_id = frame.get("from")
            signal = frame.get("signal")
            if not isinstance(remote_peer_id, str) or not isinstance(signal, dict):
                raise ProtocolError("Signal frame without sender or payload")
            if not isinstance(signal.get("sdp"), str):
                raise ProtocolError(f"Signal from {remote_peer_id} carries no SDP")

            if signal.get("type") == "offer":
                await self._accept_offer(remote_peer_id, signal)
            elif signal.get("type") == "answer":
                await self._accept_answer(remote_peer_id, signal)
            else:
                raise ProtocolError(f"Unknown signal type {signal.get('type')!r} from {remote_peer_id}")
        except ProtocolError as e:
            logger.warning(f"Ignoring signal: {e}")
        except Exception as e:
            if self.destroyed:
                return
            logger.error(f"Signaling failure, destroying transport: {e}")
            await self.destroy()
            self._report_error(TransportError(f"Signaling failure: {e}", kind="server-error"))

    async def _accept_offer(self, remote_peer_id: str, signal: dict):
        connection_id = signal.get("connectionId") or new_message_id()
        pc = RTCPeerConnection(configuration=self._rtc_config())
        channel = RTCChannel(remote_peer_id, False, pc, connection_id)
        self._track(channel)

        @pc.on("datachannel")
        def on_datachannel(data_channel):
            channel.attach(data_channel)

        if self.on_incoming:
            self.on_incoming(channel)

        # a bad offer only costs the channel it was meant to open
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=signal["sdp"], type="offer"))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            await self._wait_for_ice_gathering(pc)
            sent = await self._send_signal(remote_peer_id, {
                "type": "answer",
                "sdp": pc.localDescription.sdp,
                "connectionId": connection_id,
            })
        except Exception as e:
            logger.warning(f"Rejected offer from {remote_peer_id} ({connection_id}): {e!r}")
            channel.emit("error", TransportError(f"Bad offer from {remote_peer_id}: {e!r}"))
            channel.close()
            return

        if not sent:
            channel.emit("error", TransportError("Signaling socket is not connected", kind="peer-unavailable"))
            channel.close()
            return
        logger.info(f"Answered offer from {remote_peer_id} ({connection_id})")

    async def _accept_answer(self, remote_peer_id: str, signal: dict):
        channel = self.channels.get(signal.get("connectionId"))
        if channel is None or channel.peer_id != remote_peer_id or not channel.outbound:
            logger.debug(f"Answer from {remote_peer_id} for unknown connection ignored")
            return
        try:
            await channel.pc.setRemoteDescription(RTCSessionDescription(sdp=signal["sdp"], type="answer"))
        except Exception as e:
            channel.emit("error", TransportError(f"Bad answer from {remote_peer_id}: {e}"))
            channel.close()
