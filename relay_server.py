import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from aiohttp import WSMsgType, web

from errors import ProtocolError
from protocol import (
    FORWARDED_TYPES, RELAY_ERROR, RELAY_PEER_STATUS, RELAY_PING, RELAY_PONG, RELAY_REGISTER,
    RELAY_REGISTERED, RELAY_STATUS_UPDATE, decode_frame, encode_frame, now_ms,
)

logger = logging.getLogger(__name__)

RELAY_PATH = "/ws"

ERR_INVALID_FORMAT = "Invalid message format"
ERR_UNSUPPORTED = "Unsupported message type"
ERR_TARGET_UNAVAILABLE = "Target peer not available"
ERR_NOT_REGISTERED = "Peer not registered"

# payload key carried by each forwarded frame type
FORWARD_PAYLOAD_KEYS = {
    "signal": "signal",
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "candidate",
}


@dataclass
class RelayPeer:
    peer_id: str
    ws: web.WebSocketResponse
    display_name: str = ""


class CoordinationRelay:
    """
    Maps peer ids to live WebSockets and forwards signaling frames between
    them. Holds no message content.

    A second register for an id silently takes over the binding
    (last-registered-wins); nothing proves ownership of an id.
    """
    def __init__(self):
        self.peers: Dict[str, RelayPeer] = {}
        self.runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(RELAY_PATH, self.handle_ws)
        return app

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        peer_id = None
        logger.info(f"Relay socket opened from {request.remote}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    peer_id = await self.handle_frame(ws, peer_id, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self._send_error(ws, ERR_INVALID_FORMAT)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Relay socket error: {ws.exception()}")
        finally:
            if peer_id is not None:
                await self._unregister(peer_id, ws)
            logger.info(f"Relay socket closed ({peer_id or 'unregistered'})")
        return ws

    async def handle_frame(self, ws: web.WebSocketResponse, peer_id: Optional[str], raw: str) -> Optional[str]:
        """
        Handles one text frame from ws, currently bound to peer_id.
        Returns the binding after the frame.
        """
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            logger.warning(f"Malformed frame from {peer_id or 'unregistered socket'}: {e}")
            await self._send_error(ws, ERR_INVALID_FORMAT)
            return peer_id

        msg_type = frame["type"]
        if msg_type == RELAY_REGISTER:
            return await self._register(ws, peer_id, frame)
        if msg_type in FORWARDED_TYPES:
            await self._forward(ws, peer_id, frame)
        elif msg_type == RELAY_STATUS_UPDATE:
            await self._status_update(ws, peer_id, frame)
        elif msg_type == RELAY_PING:
            await self._send(ws, {"type": RELAY_PONG})
        else:
            logger.debug(f"Unsupported frame type {msg_type!r}")
            await self._send_error(ws, ERR_UNSUPPORTED)
        return peer_id

    async def _register(self, ws, current_id: Optional[str], frame: dict) -> Optional[str]:
        new_id = frame.get("peerId")
        display_name = frame.get("displayName") or ""
        if not isinstance(new_id, str) or not new_id or not isinstance(display_name, str):
            await self._send_error(ws, ERR_INVALID_FORMAT)
            return current_id

        if current_id is not None and current_id != new_id:
            self._release(current_id, ws)

        previous = self.peers.get(new_id)
        if previous is not None and previous.ws is not ws:
            logger.warning(f"Peer {new_id} re-registered from a new socket, replacing old binding")
        self.peers[new_id] = RelayPeer(new_id, ws, display_name)
        logger.info(f"Registered peer {new_id} ({display_name})")

        await self._send(ws, {"type": RELAY_REGISTERED, "peerId": new_id})
        return new_id

    async def _forward(self, ws, peer_id: Optional[str], frame: dict):
        target_id = frame.get("to")
        target = self.peers.get(target_id) if isinstance(target_id, str) else None
        if target is None or target.ws.closed:
            await self._send_error(ws, ERR_TARGET_UNAVAILABLE)
            return

        msg_type = frame["type"]
        key = FORWARD_PAYLOAD_KEYS[msg_type]
        out = {"type": msg_type, "from": frame.get("from", peer_id), key: frame.get(key)}
        if msg_type == "offer":
            out["callType"] = frame.get("callType")

        if not await self._send(target.ws, out):
            await self._send_error(ws, ERR_TARGET_UNAVAILABLE)

    async def _status_update(self, ws, peer_id: Optional[str], frame: dict):
        if peer_id is None:
            await self._send_error(ws, ERR_NOT_REGISTERED)
            return
        status = frame.get("status")
        if not isinstance(status, str):
            await self._send_error(ws, ERR_INVALID_FORMAT)
            return
        await self._broadcast({
            "type": RELAY_PEER_STATUS,
            "peerId": peer_id,
            "status": status,
            "timestamp": now_ms(),
        }, exclude=ws)

    def _release(self, peer_id: str, ws) -> bool:
        """Drops the binding only if peer_id still maps to this socket."""
        entry = self.peers.get(peer_id)
        if entry is None or entry.ws is not ws:
            return False
        del self.peers[peer_id]
        return True

    async def _unregister(self, peer_id: str, ws):
        if not self._release(peer_id, ws):
            logger.debug(f"Stale socket for {peer_id} closed, binding kept")
            return
        logger.info(f"Peer {peer_id} went offline")
        await self._broadcast({
            "type": RELAY_PEER_STATUS,
            "peerId": peer_id,
            "status": "offline",
            "timestamp": now_ms(),
        }, exclude=ws)

    async def _broadcast(self, frame: dict, exclude=None):
        targets = [p.ws for p in self.peers.values() if p.ws is not exclude and not p.ws.closed]
        if targets:
            await asyncio.gather(*(self._send(t, frame) for t in targets))

    async def _send(self, ws, frame: dict) -> bool:
        if ws.closed:
            return False
        try:
            await ws.send_str(encode_frame(frame))
            return True
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"Relay send failed: {e}")
            return False

    async def _send_error(self, ws, message: str):
        await self._send(ws, {"type": RELAY_ERROR, "message": message})

    async def start(self, host: str, port: int) -> web.AppRunner:
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        site = web.TCPSite(self.runner, host, port)
        await site.start()
        logger.info(f"Relay listening on ws://{host}:{port}{RELAY_PATH}")
        return self.runner

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Relay stopped")


async def run_relay(host: str, port: int):
    relay = CoordinationRelay()
    await relay.start(host, port)
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await relay.stop()
