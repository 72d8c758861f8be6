import logging
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from file_transfer import CHUNK_SIZE, MAX_FILE_SIZE, FileReassembler, FileSender, ReceivedFile
from preview import make_image_preview
from protocol import (
    CallAnswerEnvelope, CallEndEnvelope, CallOfferEnvelope, ChatEnvelope, Envelope, FileChunkEnvelope,
    FileMetadataEnvelope, ReadReceiptEnvelope, TypingEnvelope, new_message_id, now_ms,
)
from storage import ChatMessage, Contact, FileInfo

logger = logging.getLogger(__name__)

EVENT_TYPES = (TypingEnvelope, ReadReceiptEnvelope, CallOfferEnvelope, CallAnswerEnvelope, CallEndEnvelope)


def file_kind(mime_type: str) -> str:
    for kind in ("image", "video", "audio"):
        if mime_type.startswith(kind + "/"):
            return kind
    return "file"


class ChatService:
    """
    Chat on top of the transport manager: sends text and files with a
    sending -> sent|failed status lifecycle, and stores what arrives.

    There are no delivery acknowledgements; incoming records are stored as
    delivered and outgoing ones never move past sent.
    """
    def __init__(self, manager, identity, message_store, contact_store, notifier,
                 reassembler: Optional[FileReassembler] = None,
                 chunk_size: int = CHUNK_SIZE, max_file_size: int = MAX_FILE_SIZE):
        self.manager = manager
        self.identity = identity
        self.message_store = message_store
        self.contact_store = contact_store
        self.notifier = notifier
        self.reassembler = reassembler or FileReassembler()
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self._event_listeners: List[Callable[[str, Envelope], None]] = []
        self._message_listeners: List[Callable[[ChatMessage], None]] = []

    def add_event_listener(self, listener: Callable[[str, Envelope], None]):
        """listener(peer_id, envelope) for typing, read-receipt and call envelopes."""
        self._event_listeners.append(listener)

    def add_message_listener(self, listener: Callable[[ChatMessage], None]):
        """listener(message) for every incoming message once it is stored."""
        self._message_listeners.append(listener)

    def open_conversation(self, contact: Contact):
        self.manager.on_message(contact.peer_id, lambda envelope: self.handle_envelope(contact, envelope))
        logger.debug(f"Conversation with {contact.display_name} open")

    def handle_envelope(self, contact: Contact, envelope: Envelope):
        # pick up renames and unread counts from the store
        contact = self.contact_store.get_by_peer_id(contact.peer_id) or contact

        if isinstance(envelope, ChatEnvelope):
            message = ChatMessage(
                id=envelope.message_id,
                contact_id=contact.id,
                content=envelope.content,
                kind=envelope.kind or "text",
                direction="incoming",
                timestamp=envelope.timestamp,
                status="delivered",
            )
            self._store_incoming(contact, message, message.content)
        elif isinstance(envelope, (FileMetadataEnvelope, FileChunkEnvelope)):
            received = self.reassembler.handle(contact.peer_id, envelope)
            if received is not None:
                self._on_file_received(contact, received)
        elif isinstance(envelope, EVENT_TYPES):
            for listener in list(self._event_listeners):
                try:
                    listener(contact.peer_id, envelope)
                except Exception:
                    logger.exception(f"Event listener failed on {envelope.type} from {contact.peer_id}")

    def _on_file_received(self, contact: Contact, received: ReceivedFile):
        self.message_store.save_file(received.transfer_id, received.transfer_id, received.data)
        message = ChatMessage(
            id=received.transfer_id,
            contact_id=contact.id,
            content=received.name,
            kind=file_kind(received.mime_type),
            direction="incoming",
            timestamp=received.timestamp or now_ms(),
            status="delivered",
            file=FileInfo(received.name, received.size, received.mime_type, received.preview),
        )
        self._store_incoming(contact, message, f"Sent a file: {received.name}")

    def _store_incoming(self, contact: Contact, message: ChatMessage, preview_text: str):
        self.message_store.append(message)
        self.contact_store.upsert(replace(contact, unread_count=contact.unread_count + 1))
        self.notifier.notify(f"New message from {contact.display_name}", preview_text)
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception(f"Message listener failed on {message.id}")

    async def send_text(self, contact: Contact, text: str) -> ChatMessage:
        content = text.strip()
        if not content:
            raise ValueError("Cannot send an empty message")

        message = ChatMessage(
            id=new_message_id(),
            contact_id=contact.id,
            content=content,
            kind="text",
            direction="outgoing",
            timestamp=now_ms(),
        )
        self.message_store.append(message)

        sent = False
        if await self.manager.ensure_connection(contact):
            envelope = ChatEnvelope(content=content, message_id=message.id, timestamp=message.timestamp)
            sent = self.manager.send_message(contact.peer_id, envelope)
        return self._finish(message, sent)

    async def send_file(self, contact: Contact, name: str, data: bytes, mime_type: str) -> ChatMessage:
        if len(data) > self.max_file_size:
            raise ValueError(f"{name} is {len(data)} bytes; the limit is {self.max_file_size}")

        preview = make_image_preview(data, mime_type)
        message = ChatMessage(
            id=new_message_id(),
            contact_id=contact.id,
            content=name,
            kind=file_kind(mime_type),
            direction="outgoing",
            timestamp=now_ms(),
            file=FileInfo(name, len(data), mime_type, preview),
        )
        self.message_store.append(message)

        sent = False
        if await self.manager.ensure_connection(contact):
            sender = FileSender(lambda envelope: self.manager.send_message(contact.peer_id, envelope),
                                self.chunk_size)
            sent = sender.send(name, data, mime_type, preview=preview, file_id=message.id)
        if sent:
            self.message_store.save_file(message.id, message.id, data)
        return self._finish(message, sent)

    def _finish(self, message: ChatMessage, sent: bool) -> ChatMessage:
        final = message.with_status("sent" if sent else "failed")
        self.message_store.append(final)
        if not sent:
            logger.warning(f"Message {message.id} to {message.contact_id} failed")
        return final

    def send_typing(self, contact: Contact, is_typing: bool = True) -> bool:
        return self.manager.send_message(contact.peer_id, TypingEnvelope(is_typing=is_typing))

    def mark_read(self, contact: Contact, message_ids: Sequence[str]) -> bool:
        stored = self.contact_store.get_by_peer_id(contact.peer_id)
        if stored is not None and stored.unread_count:
            self.contact_store.upsert(replace(stored, unread_count=0))
        return self.manager.send_message(contact.peer_id, ReadReceiptEnvelope(message_ids=list(message_ids)))

    def send_call_offer(self, contact: Contact, call_type: str = "audio") -> bool:
        return self.manager.send_message(contact.peer_id, CallOfferEnvelope(call_type=call_type))

    def send_call_answer(self, contact: Contact, accepted: bool = True) -> bool:
        return self.manager.send_message(contact.peer_id, CallAnswerEnvelope(accepted=accepted))

    def send_call_end(self, contact: Contact) -> bool:
        return self.manager.send_message(contact.peer_id, CallEndEnvelope())
