import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from errors import ProtocolError, ResourceExhaustion
from protocol import Envelope, FileChunkEnvelope, FileMetadataEnvelope, new_message_id, now_ms

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024
MAX_FILE_SIZE = 10 * 1024 * 1024
SESSION_TTL = 120.0
MAX_CHUNKS = 65536


def split_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> List[bytes]:
    """
    Splits data into chunk_size pieces; the last one may be shorter.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    num_chunks = (len(data) + chunk_size - 1) // chunk_size
    return [data[i * chunk_size:(i + 1) * chunk_size] for i in range(num_chunks)]


class FileSender:
    """
    Sends one file as a metadata envelope followed by its chunk envelopes.

    :param send: callable that transmits one envelope and returns whether it went out
    """
    def __init__(self, send: Callable[[Envelope], bool], chunk_size: int = CHUNK_SIZE):
        self._send = send
        self.chunk_size = chunk_size

    def iter_envelopes(self, name: str, data: bytes, mime_type: str,
                       preview: Optional[str] = None, file_id: Optional[str] = None) -> Iterator[Envelope]:
        file_id = file_id or new_message_id()
        timestamp = now_ms()
        chunks = split_chunks(data, self.chunk_size)

        yield FileMetadataEnvelope(
            name=name,
            size=len(data),
            mime_type=mime_type,
            chunk_count=len(chunks),
            preview=preview,
            message_id=file_id,
            timestamp=timestamp,
        )
        for i, chunk in enumerate(chunks):
            yield FileChunkEnvelope(
                file_id=file_id,
                chunk_index=i,
                chunk_data=chunk,
                message_id=f"{file_id}-chunk-{i}",
                timestamp=timestamp,
            )

    def send(self, name: str, data: bytes, mime_type: str,
             preview: Optional[str] = None, file_id: Optional[str] = None) -> bool:
        """
        Returns False as soon as one envelope fails to go out; the remaining
        chunks are not sent.
        """
        sent = 0
        for envelope in self.iter_envelopes(name, data, mime_type, preview, file_id):
            if not self._send(envelope):
                logger.warning(f"File {name}: transmission failed after {sent} envelope(s), aborting")
                return False
            sent += 1
        logger.info(f"File {name} sent ({len(data)} bytes, {sent - 1} chunks)")
        return True


@dataclass
class ReceivedFile:
    transfer_id: str
    peer_id: str
    name: str
    size: int
    mime_type: str
    data: bytes
    preview: Optional[str] = None
    timestamp: int = 0


class FileTransferSession:
    """Receiver-side accumulator for one file's chunks."""
    def __init__(self, peer_id: str, metadata: FileMetadataEnvelope, created_at: float, expires_at: float):
        self.transfer_id = metadata.message_id
        self.peer_id = peer_id
        self.metadata = metadata
        # fixed length for the lifetime of the session
        self.slots: List[Optional[bytes]] = [None] * metadata.chunk_count
        self.filled_count = 0
        self.created_at = created_at
        self.expires_at = expires_at

    @property
    def declared_chunk_count(self) -> int:
        return len(self.slots)

    def add_chunk(self, index: int, data: bytes) -> bool:
        """
        Stores data at index. Returns False for a duplicate; the filled count
        only moves for empty slots.
        """
        if index < 0 or index >= len(self.slots):
            raise ProtocolError(f"Chunk index {index} outside 0..{len(self.slots) - 1} for {self.transfer_id}")
        if self.slots[index] is not None:
            return False
        self.slots[index] = data
        self.filled_count += 1
        return True

    def is_complete(self) -> bool:
        return self.filled_count == len(self.slots)

    def __repr__(self):
        return f"<FileTransferSession {self.transfer_id} {self.filled_count}/{len(self.slots)}>"


class FileReassembler:
    """
    Rebuilds files from metadata + chunk envelopes, in any arrival order.
    Sessions that stop making progress expire after session_ttl seconds.
    """
    def __init__(self, session_ttl: float = SESSION_TTL, max_chunks: int = MAX_CHUNKS,
                 clock: Callable[[], float] = time.monotonic):
        self.session_ttl = session_ttl
        self.max_chunks = max_chunks
        self.clock = clock
        self.sessions: Dict[str, FileTransferSession] = {}
        self._file_listeners: List[Callable[[ReceivedFile], None]] = []
        self._eviction_listeners: List[Callable[[FileTransferSession, ResourceExhaustion], None]] = []

    def add_file_listener(self, listener: Callable[[ReceivedFile], None]):
        self._file_listeners.append(listener)

    def add_eviction_listener(self, listener: Callable[[FileTransferSession, ResourceExhaustion], None]):
        self._eviction_listeners.append(listener)

    def handle(self, peer_id: str, envelope: Envelope) -> Optional[ReceivedFile]:
        """
        Feeds one file envelope. Returns the finished file when this envelope
        completed a transfer, otherwise None.
        """
        try:
            if isinstance(envelope, FileMetadataEnvelope):
                return self._open_session(peer_id, envelope)
            if isinstance(envelope, FileChunkEnvelope):
                return self._add_chunk(peer_id, envelope)
        except ProtocolError as e:
            logger.warning(f"Dropping file envelope from {peer_id}: {e}")
        return None

    def _open_session(self, peer_id: str, metadata: FileMetadataEnvelope) -> Optional[ReceivedFile]:
        transfer_id = metadata.message_id
        if transfer_id in self.sessions:
            logger.debug(f"Duplicate metadata for {transfer_id} ignored")
            return None
        if metadata.chunk_count > self.max_chunks:
            raise ProtocolError(f"{metadata.name}: {metadata.chunk_count} chunks exceeds limit {self.max_chunks}")

        now = self.clock()
        session = FileTransferSession(peer_id, metadata, now, now + self.session_ttl)
        self.sessions[transfer_id] = session
        logger.info(f"Receiving {metadata.name} from {peer_id} ({metadata.size} bytes, {metadata.chunk_count} chunks)")

        if session.is_complete():
            # zero-byte file: nothing more will arrive
            return self._complete(session)
        return None

    def _add_chunk(self, peer_id: str, chunk: FileChunkEnvelope) -> Optional[ReceivedFile]:
        session = self.sessions.get(chunk.file_id)
        if session is None or session.peer_id != peer_id:
            # metadata not seen yet or transfer already finished
            logger.debug(f"Chunk {chunk.chunk_index} for unknown transfer {chunk.file_id} discarded")
            return None

        if not session.add_chunk(chunk.chunk_index, chunk.chunk_data):
            logger.debug(f"Duplicate chunk {chunk.chunk_index} for {chunk.file_id}")
            return None

        session.expires_at = self.clock() + self.session_ttl
        if session.is_complete():
            return self._complete(session)
        return None

    def _complete(self, session: FileTransferSession) -> Optional[ReceivedFile]:
        del self.sessions[session.transfer_id]

        if any(slot is None for slot in session.slots):
            logger.error(f"Missing chunks for {session.transfer_id}, discarding transfer")
            return None

        data = b"".join(session.slots)
        meta = session.metadata
        if len(data) != meta.size:
            logger.warning(f"{meta.name}: declared {meta.size} bytes, reassembled {len(data)}")

        received = ReceivedFile(
            transfer_id=session.transfer_id,
            peer_id=session.peer_id,
            name=meta.name,
            size=len(data),
            mime_type=meta.mime_type,
            data=data,
            preview=meta.preview,
            timestamp=meta.timestamp,
        )
        logger.info(f"File {meta.name} received from {session.peer_id} ({len(data)} bytes)")

        for listener in list(self._file_listeners):
            try:
                listener(received)
            except Exception:
                logger.exception(f"File listener failed for {session.transfer_id}")
        return received

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        Evicts sessions past their expiry. Returns the evicted transfer ids.
        """
        now = self.clock() if now is None else now
        expired = [s for s in self.sessions.values() if s.expires_at <= now]
        for session in expired:
            del self.sessions[session.transfer_id]
            err = ResourceExhaustion(
                f"Transfer {session.transfer_id} ({session.metadata.name}) from {session.peer_id} "
                f"abandoned at {session.filled_count}/{session.declared_chunk_count} chunks"
            )
            logger.warning(str(err))
            for listener in list(self._eviction_listeners):
                try:
                    listener(session, err)
                except Exception:
                    logger.exception(f"Eviction listener failed for {session.transfer_id}")
        return [s.transfer_id for s in expired]

    async def run_sweeper(self, interval: float = 10.0):
        """
        Periodically evicts stale sessions until cancelled.
        """
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Session sweep error: {e}")
