"""Tests for jsonl_io module

Tests for frame encoding/decoding and the hello handshake.
"""

import asyncio
import json

import pytest

from sidecar_host.cancel import CancelToken, Deadline, LineInbox
from sidecar_host.errors import (
    Cancelled,
    DecodeError,
    EncodeError,
    HandshakeTimeout,
    ProtocolViolation,
    UnexpectedExit,
    VersionMismatch,
)
from sidecar_host.jsonl_frame import BackendIdentity, Frame, FrameType
from sidecar_host.jsonl_io import AsyncFrameWriter, decode_frame, encode_frame, negotiate


HELLO = b'{"t":"hello","contract_version":"abp/v0.1","backend":{"id":"mock"},"capabilities":{"streaming":"native"}}'


def scripted_reader(lines, hang=False):
    """read_line stand-in that returns lines then end of stream (or blocks forever)"""
    pending = list(lines)

    async def read_line():
        if pending:
            return pending.pop(0)
        if hang:
            await asyncio.Event().wait()
        return None

    return read_line


def inbox_of(lines, hang=False):
    inbox = LineInbox(scripted_reader(lines, hang=hang))
    inbox.start()
    return inbox


# TEST020: Test encoded frame is a single compact JSON line ending in one newline
def test_encode_single_line():
    data = encode_frame(Frame.run("r1", {"task": "line one\nline two"}))

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert json.loads(data) == {"t": "run", "id": "r1", "work_order": {"task": "line one\nline two"}}


# TEST021: Test non-ASCII text is written as UTF-8 rather than escaped
def test_encode_utf8():
    data = encode_frame(Frame.run("r1", {"task": "héllo ✓"}))
    assert "héllo ✓".encode("utf-8") in data


# TEST022: Test encoding rejects payloads JSON cannot represent
def test_encode_unserializable():
    with pytest.raises(EncodeError):
        encode_frame(Frame.run("r1", {"when": object()}))
    with pytest.raises(EncodeError):
        encode_frame(Frame.run("r1", {"x": float("nan")}))


# TEST023: Test encoding rejects frames that break their schema
def test_encode_invalid_shape():
    with pytest.raises(EncodeError):
        encode_frame(Frame.run("", {}))


# TEST024: Test decode of every frame kind reproduces the encoded frame
@pytest.mark.parametrize("frame", [
    Frame.hello(BackendIdentity("mock", "1.0", "0.1"), {"streaming": "native"}),
    Frame.run("r1", {"task": "x"}),
    Frame.event_for("r1", {"ts": "2025-01-01T00:00:00Z", "type": "assistant_delta", "text": "hi"}),
    Frame.final("r1", {"outcome": "complete"}),
    Frame.fatal("r1", "boom"),
    Frame.fatal(None, "down"),
])
def test_decode_encoded(frame):
    assert decode_frame(encode_frame(frame)) == frame


# TEST025: Test decode accepts str input and surrounding whitespace
def test_decode_str_and_whitespace():
    frame = decode_frame('  {"t":"fatal","ref_id":null,"error":"x"}\r\n')
    assert frame.frame_type == FrameType.FATAL
    assert frame.is_session_fatal()


# TEST026: Test each malformed input is a DecodeError carrying the raw line
@pytest.mark.parametrize("line,fragment", [
    (b"\xff\xfe", "UTF-8"),
    (b"   ", "empty"),
    (b"{not json", "invalid JSON"),
    (b"[1,2,3]", "expected JSON object"),
    (b'{"ref_id":"r1"}', "missing discriminator"),
    (b'{"t":"goodbye"}', "unknown frame type"),
    (b'{"t":7}', "unknown frame type"),
    (b'{"t":"event","ref_id":"r1"}', "event"),
    (b'{"t":"final","ref_id":5,"receipt":{}}', "ref_id"),
])
def test_decode_errors(line, fragment):
    with pytest.raises(DecodeError) as exc_info:
        decode_frame(line)
    assert fragment in exc_info.value.cause
    assert exc_info.value.raw_line == line


# TEST027: Test AsyncFrameWriter writes the encoded frame bytes
@pytest.mark.asyncio
async def test_async_frame_writer():
    class Sink:
        def __init__(self):
            self.lines = []

        async def write_line(self, data):
            self.lines.append(data)

    sink = Sink()
    await AsyncFrameWriter(sink).write(Frame.run("r1", {}))

    assert sink.lines == [b'{"t":"run","id":"r1","work_order":{}}\n']


# TEST028: Test negotiate returns backend info for a matching hello
@pytest.mark.asyncio
async def test_negotiate_success():
    inbox = inbox_of([HELLO])
    info = await negotiate(inbox, "abp/v0.1", Deadline(1.0, phase="handshake"))

    assert info.backend.id == "mock"
    assert info.supports("streaming")
    assert info.mode == "mapped"
    await inbox.close()


# TEST029: Test negotiate rejects any contract version that is not an exact match
@pytest.mark.asyncio
@pytest.mark.parametrize("version", ["abp/v0.2", "abp/v0.1.1", "ABP/v0.1", ""])
async def test_negotiate_version_mismatch(version):
    line = json.dumps({"t": "hello", "contract_version": version, "backend": {"id": "m"}}).encode()
    inbox = inbox_of([line])

    with pytest.raises(VersionMismatch) as exc_info:
        await negotiate(inbox, "abp/v0.1")
    assert exc_info.value.expected == "abp/v0.1"
    assert exc_info.value.actual == version
    await inbox.close()


# TEST030: Test a first frame that is not hello is a protocol violation
@pytest.mark.asyncio
async def test_negotiate_not_hello():
    line = b'{"t":"event","ref_id":"r1","event":{"ts":"t","type":"x"}}'
    inbox = inbox_of([line])

    with pytest.raises(ProtocolViolation) as exc_info:
        await negotiate(inbox, "abp/v0.1")
    assert exc_info.value.raw_line == line
    await inbox.close()


# TEST031: Test a malformed first line is a protocol violation
@pytest.mark.asyncio
async def test_negotiate_malformed():
    inbox = inbox_of([b"hello there"])

    with pytest.raises(ProtocolViolation) as exc_info:
        await negotiate(inbox, "abp/v0.1")
    assert "no hello" in str(exc_info.value)
    await inbox.close()


# TEST032: Test blank lines before the hello are skipped
@pytest.mark.asyncio
async def test_negotiate_skips_blank_lines():
    inbox = inbox_of([b"", b"   ", HELLO])
    info = await negotiate(inbox, "abp/v0.1")
    assert info.backend.id == "mock"
    await inbox.close()


# TEST033: Test end of stream before hello is an unexpected exit
@pytest.mark.asyncio
async def test_negotiate_eof():
    inbox = inbox_of([])
    with pytest.raises(UnexpectedExit):
        await negotiate(inbox, "abp/v0.1")
    await inbox.close()


# TEST034: Test a silent sidecar hits the handshake timeout
@pytest.mark.asyncio
async def test_negotiate_timeout():
    inbox = inbox_of([], hang=True)
    with pytest.raises(HandshakeTimeout) as exc_info:
        await negotiate(inbox, "abp/v0.1", Deadline(0.05, phase="handshake"))
    assert exc_info.value.phase == "handshake"
    await inbox.close()


# TEST035: Test a fired token cancels the handshake
@pytest.mark.asyncio
async def test_negotiate_cancelled():
    inbox = inbox_of([], hang=True)
    token = CancelToken()
    token.cancel("stop")

    with pytest.raises(Cancelled) as exc_info:
        await negotiate(inbox, "abp/v0.1", Deadline(5.0, phase="handshake"), [token])
    assert exc_info.value.reason == "stop"
    await inbox.close()


# TEST225: Test write_encoded sends the given bytes without encoding again
@pytest.mark.asyncio
async def test_async_frame_writer_write_encoded(monkeypatch):
    class Sink:
        def __init__(self):
            self.lines = []

        async def write_line(self, data):
            self.lines.append(data)

    frame = Frame.run("r1", {"task": "x"})
    data = encode_frame(frame)

    def fail_encode(*args, **kwargs):
        raise AssertionError("frame encoded twice")

    monkeypatch.setattr("sidecar_host.jsonl_io.encode_frame", fail_encode)
    sink = Sink()
    await AsyncFrameWriter(sink).write_encoded(data, frame)

    assert sink.lines == [data]
