import json
import sys
import os

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from errors import ProtocolError
from protocol import (
    CallOfferEnvelope, ChatEnvelope, ContactInfoEnvelope, FileChunkEnvelope, FileMetadataEnvelope,
    ReadReceiptEnvelope, TypingEnvelope, decode_envelope, decode_frame, encode_envelope,
)


def test_chat_envelope_wire_shape():
    env = ChatEnvelope(content="hi", message_id="m1", timestamp=1700000000000)
    obj = json.loads(encode_envelope(env))
    assert obj == {"type": "chat", "messageId": "m1", "timestamp": 1700000000000,
                   "data": {"content": "hi", "type": "text"}}

    decoded = decode_envelope(encode_envelope(env))
    assert decoded == env


def test_file_subtype_is_decided_by_file_id():
    meta = json.dumps({"type": "file", "messageId": "f1", "timestamp": 1,
                       "data": {"name": "a.txt", "size": 3, "mimeType": "text/plain", "chunks": 1}})
    chunk = json.dumps({"type": "file", "messageId": "f1-chunk-0", "timestamp": 1,
                        "data": {"fileId": "f1", "chunkIndex": 0, "chunkData": "YWJj"}})

    decoded_meta = decode_envelope(meta)
    assert isinstance(decoded_meta, FileMetadataEnvelope)
    assert decoded_meta.chunk_count == 1
    assert decoded_meta.preview is None

    decoded_chunk = decode_envelope(chunk)
    assert isinstance(decoded_chunk, FileChunkEnvelope)
    assert decoded_chunk.file_id == "f1"
    assert decoded_chunk.chunk_data == b"abc"


def test_chunk_data_accepts_byte_lists():
    raw = json.dumps({"type": "file", "messageId": "x", "timestamp": 1,
                      "data": {"fileId": "f", "chunkIndex": 2, "chunkData": [104, 105]}})
    assert decode_envelope(raw).chunk_data == b"hi"


def test_chunk_bytes_travel_as_base64():
    env = FileChunkEnvelope(file_id="f", chunk_index=0, chunk_data=b"\x00\xff", message_id="f-chunk-0")
    obj = json.loads(encode_envelope(env))
    assert obj["data"] == {"fileId": "f", "chunkIndex": 0, "chunkData": "AP8="}


def test_other_variants_decode():
    for env in (TypingEnvelope(is_typing=True),
                ReadReceiptEnvelope(message_ids=["a", "b"]),
                CallOfferEnvelope(call_type="video"),
                ContactInfoEnvelope(display_name="Bob", peer_id="b1")):
        assert decode_envelope(encode_envelope(env)) == env


@pytest.mark.parametrize("raw", [
    "not json",
    b"\xff\xfe",
    "[1, 2]",
    json.dumps({"type": "chat", "timestamp": 1, "data": {"content": "x"}}),
    json.dumps({"type": "chat", "messageId": "m", "timestamp": "soon", "data": {"content": "x"}}),
    json.dumps({"type": "chat", "messageId": "m", "timestamp": 1, "data": "x"}),
    json.dumps({"type": "shout", "messageId": "m", "timestamp": 1, "data": {}}),
    json.dumps({"type": "chat", "messageId": "m", "timestamp": 1, "data": {"content": 5}}),
    json.dumps({"type": "file", "messageId": "m", "timestamp": 1, "data": {"fileId": "f"}}),
    '{"type": "chat", "messageId": "m", "timestamp": 1e999, "data": {"content": "x"}}',
    '{"type": "file", "messageId": "m", "timestamp": 1, "data": {"name": "a", "size": 1, "mimeType": "x", "chunks": 1e999}}',
])
def test_malformed_envelopes_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        decode_envelope(raw)


def test_decode_frame_requires_typed_object():
    assert decode_frame('{"type": "ping"}') == {"type": "ping"}
    with pytest.raises(ProtocolError):
        decode_frame('{"kind": "ping"}')
    with pytest.raises(ProtocolError):
        decode_frame("{oops")
