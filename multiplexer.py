import logging
from typing import Callable, Dict, List, Optional, Union

from errors import ProtocolError
from protocol import Envelope, decode_envelope

logger = logging.getLogger(__name__)

PeerHandler = Callable[[Envelope], None]
GlobalHandler = Callable[[str, Envelope], None]


class MessageMultiplexer:
    """
    Fans inbound data channel payloads out to subscribers.

    Global handlers see every envelope from every peer; each peer has at most
    one per-peer handler on top of that (the latest registration wins).
    """
    def __init__(self):
        self.peer_handlers: Dict[str, PeerHandler] = {}
        self.global_handlers: List[GlobalHandler] = []

    def set_peer_handler(self, peer_id: str, handler: PeerHandler):
        if peer_id in self.peer_handlers:
            logger.debug(f"Replacing message handler for {peer_id}")
        self.peer_handlers[peer_id] = handler

    def remove_peer_handler(self, peer_id: str):
        self.peer_handlers.pop(peer_id, None)

    def add_global_handler(self, handler: GlobalHandler):
        self.global_handlers.append(handler)

    def remove_global_handler(self, handler: GlobalHandler):
        if handler in self.global_handlers:
            self.global_handlers.remove(handler)

    def dispatch(self, peer_id: str, raw: Union[str, bytes]) -> Optional[Envelope]:
        """
        Decodes one payload from peer_id and hands it to the subscribers.
        Undecodable payloads are logged and dropped; returns the envelope
        that was dispatched, or None.
        """
        try:
            envelope = decode_envelope(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping frame from {peer_id}: {e}")
            return None

        for handler in list(self.global_handlers):
            try:
                handler(peer_id, envelope)
            except Exception:
                logger.exception(f"Global handler failed on {envelope.type} from {peer_id}")

        handler = self.peer_handlers.get(peer_id)
        if handler:
            try:
                handler(envelope)
            except Exception:
                logger.exception(f"Handler for {peer_id} failed on {envelope.type}")

        return envelope
