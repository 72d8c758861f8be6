import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_CONNECTING = "connecting"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PeerIdentity:
    """The local endpoint's identity. Doubles as the identity provider."""
    peer_id: str
    display_name: str

    @classmethod
    def generate(cls, display_name: str) -> 'PeerIdentity':
        return cls(peer_id=uuid.uuid4().hex, display_name=display_name)


@dataclass
class Contact:
    peer_id: str
    display_name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = STATUS_OFFLINE
    last_seen: int = field(default_factory=now_ms)
    added_at: int = field(default_factory=now_ms)
    unread_count: int = 0


@dataclass
class FileInfo:
    name: str
    size: int
    mime_type: str
    preview: Optional[str] = None


@dataclass
class ChatMessage:
    """
    A chat record handed to the message store.

    direction is "outgoing" or "incoming". Outgoing records move
    sending -> sent|failed; incoming records are stored as delivered.
    """
    id: str
    contact_id: str
    content: str
    kind: str
    direction: str
    timestamp: int
    status: str = "sending"
    file: Optional[FileInfo] = None

    def with_status(self, status: str) -> 'ChatMessage':
        return replace(self, status=status)


class MemoryContactStore:
    """In-process contact store; keyed by contact id with a peer id lookup."""
    def __init__(self):
        self.contacts: Dict[str, Contact] = {}

    def get_all(self) -> List[Contact]:
        return list(self.contacts.values())

    def get_by_peer_id(self, peer_id: str) -> Optional[Contact]:
        for contact in self.contacts.values():
            if contact.peer_id == peer_id:
                return contact
        return None

    def upsert(self, contact: Contact) -> Contact:
        self.contacts[contact.id] = contact
        return contact


class MemoryMessageStore:
    def __init__(self):
        self.messages: Dict[str, ChatMessage] = {}
        # file_id -> (message_id, data)
        self.files: Dict[str, tuple] = {}

    def append(self, message: ChatMessage):
        """Stores message, replacing any earlier record with the same id."""
        self.messages[message.id] = message

    def list_by_contact(self, contact_id: str) -> List[ChatMessage]:
        msgs = [m for m in self.messages.values() if m.contact_id == contact_id]
        return sorted(msgs, key=lambda m: m.timestamp)

    def save_file(self, file_id: str, message_id: str, data: bytes):
        self.files[file_id] = (message_id, data)

    def get_file(self, file_id: str) -> Optional[bytes]:
        entry = self.files.get(file_id)
        return entry[1] if entry else None


class LogNotifier:
    """Notification sink that writes to the log; UIs plug in their own."""
    def __init__(self):
        self.sent: List[tuple] = []

    def notify(self, title: str, body: str):
        self.sent.append((title, body))
        logger.info(f"[notify] {title}: {body}")
