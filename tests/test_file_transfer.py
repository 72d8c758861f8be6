import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from file_transfer import CHUNK_SIZE, FileReassembler, FileSender, split_chunks
from protocol import FileChunkEnvelope, FileMetadataEnvelope, decode_envelope, encode_envelope

from fakes import ManualClock


def make_transfer(data: bytes, chunk_size: int = CHUNK_SIZE):
    sent = []
    sender = FileSender(lambda env: sent.append(env) or True, chunk_size)
    assert sender.send("photo.bin", data, "application/octet-stream", file_id="f1")
    return sent[0], sent[1:]


def test_split_chunks_last_chunk_is_short():
    chunks = split_chunks(b"x" * 10, 4)
    assert [len(c) for c in chunks] == [4, 4, 2]
    assert split_chunks(b"", 4) == []


def test_forty_kib_file_is_one_metadata_and_three_chunks():
    data = os.urandom(40 * 1024)
    sent = []
    sender = FileSender(lambda env: sent.append(encode_envelope(env)) or True)
    assert sender.send("big.bin", data, "application/octet-stream", file_id="f40")

    envelopes = [decode_envelope(raw) for raw in sent]
    assert len(envelopes) == 4
    meta, chunks = envelopes[0], envelopes[1:]
    assert isinstance(meta, FileMetadataEnvelope)
    assert meta.chunk_count == 3
    assert meta.message_id == "f40"
    assert all(isinstance(c, FileChunkEnvelope) for c in chunks)
    assert [c.message_id for c in chunks] == ["f40-chunk-0", "f40-chunk-1", "f40-chunk-2"]

    reassembler = FileReassembler()
    results = [reassembler.handle("a1", env) for env in envelopes]
    received = results[-1]
    assert received is not None
    assert received.data == data
    assert len(received.data) == 40 * 1024
    assert reassembler.sessions == {}


def test_out_of_order_and_duplicate_chunks():
    data = bytes(range(256)) * 4
    meta, chunks = make_transfer(data, chunk_size=256)
    assert len(chunks) == 4

    reassembler = FileReassembler()
    reassembler.handle("a1", meta)
    session = reassembler.sessions["f1"]

    results = []
    for index in (2, 0, 3):
        results.append(reassembler.handle("a1", chunks[index]))
        assert session.filled_count <= 4
    assert results == [None, None, None]

    received = reassembler.handle("a1", chunks[1])
    assert received is not None
    assert received.data == data

    # late duplicate after completion is discarded
    assert reassembler.handle("a1", chunks[2]) is None
    assert reassembler.sessions == {}


def test_duplicate_chunk_does_not_count_twice():
    meta, chunks = make_transfer(b"abcdefgh", chunk_size=2)
    reassembler = FileReassembler()
    reassembler.handle("a1", meta)
    session = reassembler.sessions["f1"]

    reassembler.handle("a1", chunks[2])
    reassembler.handle("a1", chunks[2])
    assert session.filled_count == 1
    assert session.declared_chunk_count == 4


def test_chunk_before_metadata_is_discarded():
    meta, chunks = make_transfer(b"abcd", chunk_size=2)
    reassembler = FileReassembler()
    assert reassembler.handle("a1", chunks[0]) is None
    assert reassembler.sessions == {}


def test_chunk_from_another_peer_is_ignored():
    meta, chunks = make_transfer(b"abcd", chunk_size=2)
    reassembler = FileReassembler()
    reassembler.handle("a1", meta)
    reassembler.handle("mallory", chunks[0])
    assert reassembler.sessions["f1"].filled_count == 0


def test_out_of_range_index_is_dropped():
    meta, _ = make_transfer(b"abcd", chunk_size=2)
    reassembler = FileReassembler()
    reassembler.handle("a1", meta)
    bogus = FileChunkEnvelope(file_id="f1", chunk_index=7, chunk_data=b"zz")
    assert reassembler.handle("a1", bogus) is None
    assert reassembler.sessions["f1"].filled_count == 0


def test_empty_file_completes_on_metadata():
    received = []
    meta, chunks = make_transfer(b"")
    assert chunks == []

    reassembler = FileReassembler()
    reassembler.add_file_listener(received.append)
    result = reassembler.handle("a1", meta)
    assert result is not None and result.data == b""
    assert received == [result]


def test_sender_stops_at_first_failure():
    attempts = []

    def flaky(env):
        attempts.append(env)
        return len(attempts) < 3

    sender = FileSender(flaky, chunk_size=1)
    assert sender.send("x", b"abcdef", "text/plain") is False
    assert len(attempts) == 3


def test_stale_sessions_are_swept():
    clock = ManualClock()
    evicted = []
    reassembler = FileReassembler(session_ttl=120, clock=clock)
    reassembler.add_eviction_listener(lambda session, err: evicted.append((session.transfer_id, str(err))))

    meta, chunks = make_transfer(b"abcdef", chunk_size=2)
    reassembler.handle("a1", meta)
    clock.advance(100)
    reassembler.handle("a1", chunks[0])

    # activity pushed the deadline out
    clock.advance(100)
    assert reassembler.sweep() == []

    clock.advance(30)
    assert reassembler.sweep() == ["f1"]
    assert reassembler.sessions == {}
    assert evicted[0][0] == "f1"
    assert "1/3" in evicted[0][1]


def test_run_sweeper_evicts_in_background():
    async def run():
        clock = ManualClock()
        reassembler = FileReassembler(session_ttl=1, clock=clock)
        meta, _ = make_transfer(b"abcd", chunk_size=2)
        reassembler.handle("a1", meta)
        clock.advance(5)

        task = asyncio.create_task(reassembler.run_sweeper(interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        return reassembler.sessions

    assert asyncio.run(run()) == {}


def test_oversized_chunk_count_is_rejected():
    reassembler = FileReassembler(max_chunks=10)
    meta = FileMetadataEnvelope(name="huge", size=1 << 30, mime_type="x/y", chunk_count=11, message_id="h")
    assert reassembler.handle("a1", meta) is None
    assert reassembler.sessions == {}
