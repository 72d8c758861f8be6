import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from connection_state import ConnectionStateMachine, InvalidTransition, PeerState
from errors import TransportError
from multiplexer import GlobalHandler, MessageMultiplexer, PeerHandler
from protocol import (
    RELAY_PEER_STATUS, RELAY_REGISTER, RELAY_REGISTERED, RELAY_STATUS_UPDATE, Envelope, encode_envelope,
)
from storage import STATUS_OFFLINE, STATUS_ONLINE, now_ms
from transport import Channel, Transport, spawn

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
REINIT_COOLDOWN = 3.0
FATAL_REINIT_DELAY = 5.0

PRESENCE_STATUSES = ("online", "offline", "connecting")


class ConnectionRecord:
    """
    Link state for one remote peer. The record outlives its channels so the
    state machine keeps its history across reconnects.
    """
    def __init__(self, remote_peer_id: str, status_callback: Optional[Callable[[PeerState], None]] = None):
        self.remote_peer_id = remote_peer_id
        self.channel: Optional[Channel] = None
        self.machine = ConnectionStateMachine(remote_peer_id, status_callback)
        # resolves to None on open, or to the TransportError that ended the attempt
        self.open_future: Optional[asyncio.Future] = None

    @property
    def state(self) -> PeerState:
        return self.machine.state

    @property
    def status_callback(self):
        return self.machine.status_callback

    @status_callback.setter
    def status_callback(self, callback):
        self.machine.status_callback = callback

    @property
    def is_live(self) -> bool:
        return self.channel is not None and not self.channel.closed

    @property
    def is_open(self) -> bool:
        return self.channel is not None and self.channel.is_open

    def __repr__(self):
        return f"<ConnectionRecord {self.remote_peer_id} ({self.state.value})>"


class TransportManager:
    """
    Owns the signaling client and the transport instance for the local
    identity, and at most one ConnectionRecord per remote peer.

    :param transport_factory: called with the local peer id, returns a fresh Transport
    :param contact_store: receives presence updates for known contacts
    """
    def __init__(self, signaling, transport_factory: Callable[[str], Transport], contact_store,
                 multiplexer: Optional[MessageMultiplexer] = None,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 reinit_cooldown: float = REINIT_COOLDOWN,
                 fatal_reinit_delay: float = FATAL_REINIT_DELAY,
                 clock: Callable[[], float] = time.monotonic):
        self.signaling = signaling
        self.transport_factory = transport_factory
        self.contact_store = contact_store
        self.multiplexer = multiplexer or MessageMultiplexer()
        self.connect_timeout = connect_timeout
        self.reinit_cooldown = reinit_cooldown
        self.fatal_reinit_delay = fatal_reinit_delay
        self.clock = clock

        self.transport: Optional[Transport] = None
        self.local_peer_id: Optional[str] = None
        self.display_name: Optional[str] = None

        self._records: Dict[str, ConnectionRecord] = {}
        self._last_init_at: Optional[float] = None
        self._reinitializing = False
        self._reinit_handle: Optional[asyncio.TimerHandle] = None
        self._presence_listeners: List[Callable[[str, str], None]] = []
        self._channel_open_listeners: List[Callable[[str, bool], None]] = []

        signaling.add_listener(self._on_signal_frame)
        signaling.add_open_listener(self._on_signaling_open)

    # ---------------------------------------------------------------
    # Registration and transport lifecycle
    # ---------------------------------------------------------------

    async def register_peer(self, peer_id: str, display_name: str) -> bool:
        """
        (Re)initializes the transport for this identity and registers with
        the relay. Skipped, returning False, while a re-initialization is in
        flight or when the last one happened within reinit_cooldown.
        """
        if self._reinitializing:
            logger.debug("Transport re-initialization already in flight, skipping register")
            return False
        now = self.clock()
        if self._last_init_at is not None and now - self._last_init_at < self.reinit_cooldown:
            logger.debug(f"Transport initialized {now - self._last_init_at:.1f}s ago, skipping register")
            return False

        self._reinitializing = True
        self._last_init_at = now
        try:
            self.local_peer_id = peer_id
            self.display_name = display_name

            if self.transport is not None:
                await self.transport.destroy()

            transport = self.transport_factory(peer_id)
            transport.on_incoming = self._on_incoming_channel
            transport.on_error = self._on_transport_error
            self.transport = transport

            await self.signaling.start()
            await transport.open()
            await self._send_register()
            logger.info(f"Registered as {peer_id} ({display_name})")
            return True
        finally:
            self._reinitializing = False

    async def _send_register(self) -> bool:
        if self.local_peer_id is None:
            return False
        return await self.signaling.send({
            "type": RELAY_REGISTER,
            "peerId": self.local_peer_id,
            "displayName": self.display_name,
        })

    def _on_signaling_open(self):
        if self.local_peer_id is not None:
            spawn(self._send_register())

    def _on_transport_error(self, err: TransportError):
        if not (err.fatal and (self.transport is None or self.transport.destroyed)):
            logger.warning(f"Transport error ignored ({err.kind}): {err}")
            return
        if self._reinit_handle is not None:
            logger.debug("Re-initialization already scheduled")
            return
        logger.error(f"Fatal transport error, re-initializing in {self.fatal_reinit_delay}s: {err}")
        loop = asyncio.get_running_loop()
        self._reinit_handle = loop.call_later(self.fatal_reinit_delay, self._fire_reinit)

    def _fire_reinit(self):
        self._reinit_handle = None
        if self.local_peer_id is None:
            return
        # a scheduled recovery is not subject to the caller debounce
        self._last_init_at = None
        spawn(self.register_peer(self.local_peer_id, self.display_name))

    @property
    def reinit_pending(self) -> bool:
        return self._reinit_handle is not None

    @property
    def persistently_disconnected(self) -> bool:
        return self.signaling.persistently_disconnected

    # ---------------------------------------------------------------
    # Records and channels
    # ---------------------------------------------------------------

    @property
    def records(self) -> Dict[str, ConnectionRecord]:
        return dict(self._records)

    def connection_state(self, peer_id: str) -> PeerState:
        record = self._records.get(peer_id)
        return record.state if record else PeerState.DISCONNECTED

    def _get_or_create_record(self, peer_id: str) -> ConnectionRecord:
        record = self._records.get(peer_id)
        if record is None:
            record = ConnectionRecord(peer_id)
            record.machine.add_listener(self._on_state_change)
            self._records[peer_id] = record
        return record

    def _settle_stale(self, record: ConnectionRecord):
        """Brings a record whose channel is gone back to a state that may reconnect."""
        record.channel = None
        if record.state == PeerState.CONNECTING:
            record.machine.transition(PeerState.FAILED)
        elif record.state == PeerState.CONNECTED:
            record.machine.transition(PeerState.DISCONNECTED)

    def _attach(self, record: ConnectionRecord, channel: Channel):
        record.channel = channel
        record.open_future = asyncio.get_running_loop().create_future()

        channel.on("open", lambda: self._on_channel_open(record, channel))
        channel.on("message", lambda payload: self._on_channel_message(channel, payload))
        channel.on("error", lambda err: self._on_channel_error(record, channel, err))
        channel.on("close", lambda: self._on_channel_close(record, channel))

    @staticmethod
    def _resolve(record: ConnectionRecord, result: Optional[TransportError]):
        if record.open_future is not None and not record.open_future.done():
            record.open_future.set_result(result)

    def _on_incoming_channel(self, channel: Channel):
        record = self._get_or_create_record(channel.peer_id)
        if record.is_live and record.channel is not channel:
            logger.info(f"Inbound channel from {channel.peer_id} while one is live; delivering data only")
            channel.on("message", lambda payload: self._on_channel_message(channel, payload))
            return

        logger.info(f"Inbound channel from {channel.peer_id}")
        self._settle_stale(record)
        record.machine.transition(PeerState.CONNECTING)
        self._attach(record, channel)

    def _on_channel_open(self, record: ConnectionRecord, channel: Channel):
        if record.channel is not channel:
            return
        try:
            record.machine.transition(PeerState.CONNECTED)
        except InvalidTransition as e:
            logger.warning(f"Open event ignored: {e}")
            return
        self._resolve(record, None)

        for listener in list(self._channel_open_listeners):
            try:
                listener(channel.peer_id, channel.outbound)
            except Exception:
                logger.exception(f"Channel open listener failed for {channel.peer_id}")

    def _on_channel_message(self, channel: Channel, payload):
        self.multiplexer.dispatch(channel.peer_id, payload)

    def _on_channel_error(self, record: ConnectionRecord, channel: Channel, err: TransportError):
        logger.warning(f"Channel error with {channel.peer_id}: {err}")
        if record.channel is not channel:
            return
        if record.state in (PeerState.CONNECTING, PeerState.CONNECTED):
            record.machine.transition(PeerState.FAILED)
        self._resolve(record, err)

    def _on_channel_close(self, record: ConnectionRecord, channel: Channel):
        if record.channel is not channel:
            return
        record.channel = None
        logger.info(f"Channel to {channel.peer_id} closed")
        if record.state == PeerState.CONNECTING:
            record.machine.transition(PeerState.FAILED)
            self._resolve(record, TransportError(f"Channel to {channel.peer_id} closed before open",
                                                 kind="channel-closed"))
        elif record.state == PeerState.CONNECTED:
            record.machine.transition(PeerState.DISCONNECTED)

    def _on_state_change(self, peer_id: str, old: PeerState, new: PeerState):
        logger.info(f"Peer {peer_id}: {old.value} -> {new.value}")
        contact = self.contact_store.get_by_peer_id(peer_id)
        if contact is None:
            return
        presence = STATUS_ONLINE if new == PeerState.CONNECTED else STATUS_OFFLINE
        self.contact_store.upsert(replace(contact, status=presence, last_seen=now_ms()))

    # ---------------------------------------------------------------
    # Connect / send
    # ---------------------------------------------------------------

    async def connect_to_peer(self, contact) -> ConnectionRecord:
        """
        Opens a channel to contact.peer_id, or returns the existing record if
        one is open or still connecting. Raises TransportError when the
        channel errors or does not open within connect_timeout.
        """
        peer_id = contact.peer_id
        record = self._records.get(peer_id)
        if record is not None and record.is_live:
            if not record.is_open:
                await self._wait_open(record)
            return record

        if self.transport is None or self.transport.destroyed:
            raise TransportError("Transport is not initialized", kind="not-initialized")

        record = self._get_or_create_record(peer_id)
        self._settle_stale(record)
        record.machine.transition(PeerState.CONNECTING)
        logger.info(f"Connecting to {peer_id}")

        try:
            channel = self.transport.connect(peer_id)
        except TransportError:
            record.machine.transition(PeerState.FAILED)
            raise

        # another channel may have raced in while the transport was busy
        if record.is_live:
            channel.close()
        else:
            self._attach(record, channel)
        await self._wait_open(record)
        return record

    async def _wait_open(self, record: ConnectionRecord):
        if record.open_future is None:
            raise TransportError(f"No pending channel for {record.remote_peer_id}", kind="channel-closed")
        try:
            err = await asyncio.wait_for(asyncio.shield(record.open_future), self.connect_timeout)
        except asyncio.TimeoutError:
            err = TransportError(f"Channel to {record.remote_peer_id} did not open within "
                                 f"{self.connect_timeout}s", kind="timeout")
            logger.warning(str(err))
            if record.state == PeerState.CONNECTING:
                record.machine.transition(PeerState.FAILED)
            self._resolve(record, err)
            channel = record.channel
            record.channel = None
            if channel is not None:
                channel.close()
        if err is not None:
            raise err

    async def ensure_connection(self, contact) -> bool:
        """
        Returns whether a channel to contact is open and ready for sends,
        connecting first when needed. Never raises for transport failures.
        """
        record = self._records.get(contact.peer_id)
        if record is not None and record.is_open:
            return True
        if record is not None and record.channel is not None and record.channel.closed:
            logger.debug(f"Dropping stale channel to {contact.peer_id}")
            self._settle_stale(record)
        try:
            record = await self.connect_to_peer(contact)
        except TransportError as e:
            logger.warning(f"Could not reach {contact.peer_id}: {e}")
            return False
        return record.is_open

    def send_message(self, peer_id: str, envelope: Envelope) -> bool:
        record = self._records.get(peer_id)
        if record is None or record.channel is None:
            logger.debug(f"No channel to {peer_id}, {envelope.type} not sent")
            return False
        if not record.channel.is_open:
            if record.channel.closed:
                self._settle_stale(record)
            logger.debug(f"Channel to {peer_id} not open, {envelope.type} not sent")
            return False
        try:
            record.channel.send(encode_envelope(envelope))
            return True
        except Exception as e:
            logger.warning(f"Send to {peer_id} failed: {e}")
            return False

    async def disconnect(self, peer_id: str):
        record = self._records.get(peer_id)
        if record is None:
            return
        if record.channel is not None:
            record.channel.close()
        if record.state == PeerState.FAILED:
            record.machine.transition(PeerState.DISCONNECTED)
        self.multiplexer.remove_peer_handler(peer_id)

    async def disconnect_all(self):
        if self.signaling.connected:
            await self.update_status(STATUS_OFFLINE)
        for peer_id in list(self._records):
            await self.disconnect(peer_id)
        if self._reinit_handle is not None:
            self._reinit_handle.cancel()
            self._reinit_handle = None
        if self.transport is not None:
            await self.transport.destroy()
            self.transport = None
        await self.signaling.close()
        logger.info("All connections closed")

    async def update_status(self, status: str) -> bool:
        return await self.signaling.send({"type": RELAY_STATUS_UPDATE, "status": status})

    # ---------------------------------------------------------------
    # Subscriptions
    # ---------------------------------------------------------------

    def on_message(self, peer_id: str, handler: PeerHandler):
        self.multiplexer.set_peer_handler(peer_id, handler)

    def add_global_handler(self, handler: GlobalHandler):
        self.multiplexer.add_global_handler(handler)

    def on_status_change(self, peer_id: str, callback: Callable[[PeerState], None]):
        self._get_or_create_record(peer_id).status_callback = callback

    def on_peer_status_change(self, callback: Callable[[str, str], None]):
        """callback(peer_id, status) for presence reported by the relay."""
        self._presence_listeners.append(callback)

    def on_channel_open(self, callback: Callable[[str, bool], None]):
        """callback(peer_id, outbound) each time a channel finishes opening."""
        self._channel_open_listeners.append(callback)

    def _on_signal_frame(self, frame: dict):
        msg_type = frame["type"]
        if msg_type == RELAY_REGISTERED:
            logger.info(f"Relay confirmed registration as {frame.get('peerId')}")
            spawn(self.update_status(STATUS_ONLINE))
        elif msg_type == RELAY_PEER_STATUS:
            self._on_peer_status(frame)

    def _on_peer_status(self, frame: dict):
        peer_id = frame.get("peerId")
        status = frame.get("status")
        if not isinstance(peer_id, str) or status not in PRESENCE_STATUSES:
            logger.debug(f"Ignoring peer-status frame: {frame}")
            return

        contact = self.contact_store.get_by_peer_id(peer_id)
        if contact is not None:
            timestamp = frame.get("timestamp")
            last_seen = timestamp if isinstance(timestamp, int) else now_ms()
            self.contact_store.upsert(replace(contact, status=status, last_seen=last_seen))

        for listener in list(self._presence_listeners):
            try:
                listener(peer_id, status)
            except Exception:
                logger.exception(f"Presence listener failed for {peer_id}")
