import base64
import binascii
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from errors import ProtocolError

# Relay frame types (signaling socket)
RELAY_REGISTER = "register"
RELAY_REGISTERED = "registered"
RELAY_SIGNAL = "signal"
RELAY_OFFER = "offer"
RELAY_ANSWER = "answer"
RELAY_ICE_CANDIDATE = "ice-candidate"
RELAY_STATUS_UPDATE = "status-update"
RELAY_PEER_STATUS = "peer-status"
RELAY_PING = "ping"
RELAY_PONG = "pong"
RELAY_ERROR = "error"

FORWARDED_TYPES = (RELAY_SIGNAL, RELAY_OFFER, RELAY_ANSWER, RELAY_ICE_CANDIDATE)

# Data channel envelope types
TYPE_CHAT = "chat"
TYPE_FILE = "file"
TYPE_TYPING = "typing"
TYPE_READ_RECEIPT = "read-receipt"
TYPE_CALL_OFFER = "call-offer"
TYPE_CALL_ANSWER = "call-answer"
TYPE_CALL_END = "call-end"
TYPE_CONTACT_INFO = "contact-info"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return uuid.uuid4().hex


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Parses one relay frame. Raises ProtocolError unless the frame is a JSON
    object carrying a string ``type``.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        frame = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Undecodable frame: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        raise ProtocolError("Frame is not an object with a string type")
    return frame


@dataclass
class ChatEnvelope:
    content: str
    kind: str = "text"
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_CHAT

    def to_data(self) -> dict:
        return {"content": self.content, "type": self.kind}

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'ChatEnvelope':
        content = data["content"]
        if not isinstance(content, str):
            raise TypeError("content must be a string")
        return cls(content=content, kind=data.get("type", "text"), message_id=message_id, timestamp=timestamp)


@dataclass
class FileMetadataEnvelope:
    """
    Announces a file transfer. The envelope's message_id is the transfer id
    that every following chunk refers to as ``fileId``.
    """
    name: str
    size: int
    mime_type: str
    chunk_count: int
    preview: Optional[str] = None
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_FILE

    def to_data(self) -> dict:
        data = {
            "name": self.name,
            "size": self.size,
            "mimeType": self.mime_type,
            "chunks": self.chunk_count,
        }
        if self.preview is not None:
            data["preview"] = self.preview
        return data

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'FileMetadataEnvelope':
        chunk_count = int(data["chunks"])
        size = int(data["size"])
        if chunk_count < 0 or size < 0:
            raise ValueError("negative size or chunk count")
        return cls(
            name=str(data["name"]),
            size=size,
            mime_type=str(data.get("mimeType") or "application/octet-stream"),
            chunk_count=chunk_count,
            preview=data.get("preview"),
            message_id=message_id,
            timestamp=timestamp,
        )


@dataclass
class FileChunkEnvelope:
    file_id: str
    chunk_index: int
    chunk_data: bytes
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_FILE

    def to_data(self) -> dict:
        return {
            "fileId": self.file_id,
            "chunkIndex": self.chunk_index,
            "chunkData": base64.b64encode(self.chunk_data).decode("ascii"),
        }

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'FileChunkEnvelope':
        raw = data["chunkData"]
        if isinstance(raw, str):
            chunk_data = base64.b64decode(raw, validate=True)
        elif isinstance(raw, list):
            # Plain byte arrays are accepted as well
            chunk_data = bytes(raw)
        else:
            raise TypeError("chunkData must be base64 text or a byte list")
        return cls(
            file_id=str(data["fileId"]),
            chunk_index=int(data["chunkIndex"]),
            chunk_data=chunk_data,
            message_id=message_id,
            timestamp=timestamp,
        )


@dataclass
class TypingEnvelope:
    is_typing: bool = True
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_TYPING

    def to_data(self) -> dict:
        return {"isTyping": self.is_typing}

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'TypingEnvelope':
        return cls(is_typing=bool(data.get("isTyping", True)), message_id=message_id, timestamp=timestamp)


@dataclass
class ReadReceiptEnvelope:
    message_ids: List[str] = field(default_factory=list)
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_READ_RECEIPT

    def to_data(self) -> dict:
        return {"messageIds": list(self.message_ids)}

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'ReadReceiptEnvelope':
        ids = data.get("messageIds", [])
        if not isinstance(ids, list):
            raise TypeError("messageIds must be a list")
        return cls(message_ids=[str(i) for i in ids], message_id=message_id, timestamp=timestamp)


@dataclass
class CallOfferEnvelope:
    call_type: str = "audio"
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_CALL_OFFER

    def to_data(self) -> dict:
        return {"callType": self.call_type}

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'CallOfferEnvelope':
        call_type = data.get("callType", "audio")
        if call_type not in ("audio", "video"):
            raise ValueError(f"unknown call type {call_type!r}")
        return cls(call_type=call_type, message_id=message_id, timestamp=timestamp)


@dataclass
class CallAnswerEnvelope:
    accepted: bool = True
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_CALL_ANSWER

    def to_data(self) -> dict:
        return {"accepted": self.accepted}

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'CallAnswerEnvelope':
        return cls(accepted=bool(data.get("accepted", True)), message_id=message_id, timestamp=timestamp)


@dataclass
class CallEndEnvelope:
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_CALL_END

    def to_data(self) -> dict:
        return {}

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'CallEndEnvelope':
        return cls(message_id=message_id, timestamp=timestamp)


@dataclass
class ContactInfoEnvelope:
    # Left loosely typed: the handshake validates these, not the codec.
    display_name: Any
    peer_id: Optional[Any] = None
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    type = TYPE_CONTACT_INFO

    def to_data(self) -> dict:
        data = {"displayName": self.display_name}
        if self.peer_id is not None:
            data["peerId"] = self.peer_id
        return data

    @classmethod
    def from_data(cls, message_id: str, timestamp: int, data: dict) -> 'ContactInfoEnvelope':
        return cls(
            display_name=data.get("displayName"),
            peer_id=data.get("peerId"),
            message_id=message_id,
            timestamp=timestamp,
        )


Envelope = Union[
    ChatEnvelope,
    FileMetadataEnvelope,
    FileChunkEnvelope,
    TypingEnvelope,
    ReadReceiptEnvelope,
    CallOfferEnvelope,
    CallAnswerEnvelope,
    CallEndEnvelope,
    ContactInfoEnvelope,
]

_DECODERS = {
    TYPE_CHAT: ChatEnvelope,
    TYPE_TYPING: TypingEnvelope,
    TYPE_READ_RECEIPT: ReadReceiptEnvelope,
    TYPE_CALL_OFFER: CallOfferEnvelope,
    TYPE_CALL_ANSWER: CallAnswerEnvelope,
    TYPE_CALL_END: CallEndEnvelope,
    TYPE_CONTACT_INFO: ContactInfoEnvelope,
}


def encode_envelope(envelope: Envelope) -> str:
    """
    Serializes an envelope to the JSON text sent over a data channel.
    """
    return json.dumps({
        "type": envelope.type,
        "messageId": envelope.message_id,
        "timestamp": envelope.timestamp,
        "data": envelope.to_data(),
    }, separators=(",", ":"))


def decode_envelope(raw: Union[str, bytes]) -> Envelope:
    """
    Deserializes data channel payload into one envelope variant.
    A ``file`` envelope is a chunk when its data carries ``fileId`` and
    metadata otherwise.
    Raises ProtocolError for anything that does not decode cleanly.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        obj = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Undecodable envelope: {e}") from e

    if not isinstance(obj, dict):
        raise ProtocolError("Envelope is not a JSON object")

    msg_type = obj.get("type")
    message_id = obj.get("messageId")
    timestamp = obj.get("timestamp")
    data = obj.get("data")

    if not isinstance(message_id, str) or not message_id:
        raise ProtocolError(f"Envelope {msg_type!r} has no messageId")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise ProtocolError(f"Envelope {message_id} has no numeric timestamp")
    if not isinstance(data, dict):
        raise ProtocolError(f"Envelope {message_id} has no data object")

    if msg_type == TYPE_FILE:
        decoder = FileChunkEnvelope if "fileId" in data else FileMetadataEnvelope
    else:
        decoder = _DECODERS.get(msg_type)
        if decoder is None:
            raise ProtocolError(f"Unknown envelope type {msg_type!r}")

    try:
        return decoder.from_data(message_id, int(timestamp), data)
    except (KeyError, TypeError, ValueError, OverflowError, binascii.Error) as e:
        raise ProtocolError(f"Invalid {msg_type} envelope {message_id}: {e}") from e
