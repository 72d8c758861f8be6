import asyncio
import logging
import time
from typing import Callable, List, Optional

import aiohttp
from aiohttp import WSMsgType

from errors import ProtocolError
from protocol import RELAY_ERROR, RELAY_PING, RELAY_PONG, decode_frame, encode_frame

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 1.0
HEARTBEAT_INTERVAL = 30.0
MAX_MISSED_PONGS = 2

FrameListener = Callable[[dict], None]


class SignalingClient:
    """
    Persistent WebSocket to the coordination relay.

    After an unexpected close (or a failed connect) it retries with a delay of
    attempt * reconnect_delay. Once max_reconnect_attempts retries have failed
    it stops for good and sets persistently_disconnected.

    The heartbeat pings every heartbeat_interval. A socket that leaves
    max_missed_pongs pings in a row unanswered is closed and goes through
    the same reconnect path as any other drop.
    """
    def __init__(self, url: str, max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
                 reconnect_delay: float = RECONNECT_DELAY, heartbeat_interval: float = HEARTBEAT_INTERVAL,
                 max_missed_pongs: int = MAX_MISSED_PONGS):
        self.url = url
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self.max_missed_pongs = max_missed_pongs

        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.session: Optional[aiohttp.ClientSession] = None
        self.running = False
        self.reconnect_attempts = 0
        self.persistently_disconnected = False
        self.last_pong_at: Optional[float] = None
        self.missed_pongs = 0
        self._awaiting_pong = False

        self._task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._opened: Optional[asyncio.Event] = None
        self._listeners: List[FrameListener] = []
        self._open_listeners: List[Callable[[], None]] = []
        self._give_up_listeners: List[Callable[[], None]] = []

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self.ws.closed

    def delay_for(self, attempt: int) -> float:
        return attempt * self.reconnect_delay

    def add_listener(self, listener: FrameListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_open_listener(self, listener: Callable[[], None]):
        self._open_listeners.append(listener)

    def add_give_up_listener(self, listener: Callable[[], None]):
        self._give_up_listeners.append(listener)

    async def start(self):
        """Starts the connect/receive loop in the background."""
        if self.running:
            return
        self.running = True
        self.persistently_disconnected = False
        self.reconnect_attempts = 0
        self._opened = asyncio.Event()
        if self.session is None:
            self.session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._run())
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def wait_connected(self, timeout: float) -> bool:
        if self.connected:
            return True
        if self._opened is None:
            return False
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.connected

    async def send(self, frame: dict) -> bool:
        if not self.connected:
            logger.debug(f"Signaling not connected, dropping {frame.get('type')} frame")
            return False
        try:
            await self.ws.send_str(encode_frame(frame))
            return True
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
            logger.warning(f"Failed to send {frame.get('type')} frame: {e}")
            return False

    async def close(self):
        self.running = False
        pending = [task for task in (self._heartbeat_task, self._task)
                   if task is not None and task is not asyncio.current_task()]
        for task in pending:
            task.cancel()
        # let _run unwind before its socket and session go away
        await asyncio.gather(*pending, return_exceptions=True)
        if self.ws is not None and not self.ws.closed:
            await self.ws.close()
        self.ws = None
        if self.session is not None:
            await self.session.close()
            self.session = None
        logger.info("Signaling client closed")

    async def _run(self):
        while self.running:
            try:
                self.ws = await self.session.ws_connect(self.url)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Relay connection to {self.url} failed: {e}")
            else:
                logger.info(f"Connected to relay at {self.url}")
                self.reconnect_attempts = 0
                self.missed_pongs = 0
                self._awaiting_pong = False
                self._opened.set()
                self._notify(self._open_listeners)
                await self._receive_loop()
                self.ws = None
                self._opened.clear()

            if not self.running:
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.max_reconnect_attempts:
                self.persistently_disconnected = True
                self.running = False
                logger.error(f"Giving up on relay after {self.max_reconnect_attempts} reconnect attempts")
                self._notify(self._give_up_listeners)
                break

            delay = self.delay_for(self.reconnect_attempts)
            logger.info(f"Reconnecting to relay in {delay:.1f}s "
                        f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})")
            await asyncio.sleep(delay)

    async def _receive_loop(self):
        try:
            async for msg in self.ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type in (WSMsgType.ERROR, WSMsgType.CLOSE, WSMsgType.CLOSED):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Relay receive loop error: {e}")
        logger.info("Relay connection closed")

    def _handle_text(self, data: str):
        try:
            frame = decode_frame(data)
        except ProtocolError as e:
            logger.warning(f"Bad frame from relay: {e}")
            return

        if frame["type"] == RELAY_PONG:
            self.last_pong_at = time.monotonic()
            self.missed_pongs = 0
            self._awaiting_pong = False
        elif frame["type"] == RELAY_ERROR:
            logger.warning(f"Relay error: {frame.get('message', 'unknown')}")

        for listener in list(self._listeners):
            try:
                listener(frame)
            except Exception:
                logger.exception(f"Signaling listener failed on {frame['type']} frame")

    async def _heartbeat_loop(self):
        while self.running:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.connected:
                continue
            if self._awaiting_pong:
                self.missed_pongs += 1
                if self.missed_pongs >= self.max_missed_pongs:
                    logger.warning(f"Relay missed {self.missed_pongs} heartbeats, dropping connection")
                    self.missed_pongs = 0
                    self._awaiting_pong = False
                    await self.ws.close()
                    continue
            if await self.send({"type": RELAY_PING}):
                self._awaiting_pong = True

    def _notify(self, listeners: List[Callable[[], None]]):
        for listener in list(listeners):
            try:
                listener()
            except Exception:
                logger.exception("Signaling lifecycle listener failed")
