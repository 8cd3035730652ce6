"""JSONL I/O - Encoding, Decoding and the Hello Handshake

## Wire Format

```
{"t":"event","ref_id":"r1","event":{...}}\n
```

UTF-8, exactly one JSON object per line, newline-terminated. JSON string
escaping guarantees an encoded frame never contains a raw newline.

Decoding never lets an unexpected exception escape: every way a line can be
wrong (bad UTF-8, bad JSON, not an object, unknown or missing `t`, missing or
mistyped fields) is reported as a DecodeError carrying the raw line. The
caller decides how severe that is.
"""

import json
import logging
from typing import Optional, Sequence, Union

from sidecar_host.cancel import CancelToken, Deadline, LineInbox
from sidecar_host.errors import (
    DecodeError,
    EncodeError,
    ProtocolViolation,
    UnexpectedExit,
    VersionMismatch,
)
from sidecar_host.jsonl_frame import BackendInfo, Frame, FrameType, Keys
from sidecar_host.schema_validation import FrameShapeError, FrameValidator, default_validator

logger = logging.getLogger(__name__)


def encode_frame(frame: Frame, validator: FrameValidator = default_validator) -> bytes:
    """Encode a frame to a single newline-terminated JSON line

    Args:
        frame: Frame to encode
        validator: Schema validator for the outgoing shape

    Returns:
        UTF-8 bytes ending in exactly one newline

    Raises:
        EncodeError: If the frame is malformed or its payload is not JSON-serializable
    """
    data = frame.to_dict()
    try:
        validator.validate(frame.frame_type, data)
    except FrameShapeError as e:
        raise EncodeError(str(e)) from e

    try:
        text = json.dumps(data, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EncodeError(f"JSON encoding failed: {e}") from e

    return text.encode("utf-8") + b"\n"


def decode_frame(line: Union[bytes, str], validator: FrameValidator = default_validator) -> Frame:
    """Decode one line into a frame

    Args:
        line: Raw line, with or without its trailing newline

    Returns:
        Decoded Frame

    Raises:
        DecodeError: For any malformed input
    """
    raw = line.encode("utf-8", errors="surrogateescape") if isinstance(line, str) else bytes(line)

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(raw, f"invalid UTF-8: {e}")

    text = text.strip()
    if not text:
        raise DecodeError(raw, "empty line")

    try:
        data = json.loads(text)
    except ValueError as e:
        raise DecodeError(raw, f"invalid JSON: {e}")

    if not isinstance(data, dict):
        raise DecodeError(raw, f"expected JSON object, got {type(data).__name__}")

    if Keys.TAG not in data:
        raise DecodeError(raw, "missing discriminator field 't'")

    frame_type = FrameType.from_tag(data[Keys.TAG])
    if frame_type is None:
        raise DecodeError(raw, f"unknown frame type: {data[Keys.TAG]!r}")

    try:
        validator.validate(frame_type, data)
    except FrameShapeError as e:
        raise DecodeError(raw, str(e))

    return Frame.from_dict(data)


class AsyncFrameWriter:
    """Async frame writer for a sidecar's stdin"""

    def __init__(self, process, validator: FrameValidator = default_validator):
        """Create async frame writer

        Args:
            process: Anything with an async write_line(bytes) method (SidecarProcess)
        """
        self.process = process
        self.validator = validator

    async def write(self, frame: Frame) -> None:
        """Encode and write one frame

        Raises:
            EncodeError: If the frame cannot be encoded
            OSError: If the pipe is closed
        """
        await self.write_encoded(encode_frame(frame, self.validator), frame)

    async def write_encoded(self, data: bytes, frame: Frame) -> None:
        """Write a line already produced by encode_frame for frame

        Raises:
            OSError: If the pipe is closed
        """
        logger.debug("-> %s", frame.describe())
        await self.process.write_line(data)


async def negotiate(
    inbox: LineInbox,
    expected_contract_version: str,
    deadline: Optional[Deadline] = None,
    tokens: Sequence[CancelToken] = (),
    validator: FrameValidator = default_validator,
) -> BackendInfo:
    """Read and check the sidecar's hello

    The sidecar speaks first: its first line must be a hello whose
    contract_version equals expected_contract_version exactly. No tolerance
    is applied, so "abp/v0.1" and "abp/v0.1.1" do not match.

    Args:
        inbox: Line source for the sidecar's stdout
        expected_contract_version: Version this host speaks
        deadline: Handshake deadline
        tokens: Cancellation tokens

    Returns:
        BackendInfo from the hello

    Raises:
        HandshakeTimeout: If no line arrived before the deadline
        Cancelled: If a token fired first
        UnexpectedExit: If stdout closed before any line
        ProtocolViolation: If the first line is malformed or not a hello
        VersionMismatch: If contract versions differ
    """
    line = await inbox.next_line(deadline, tokens)
    if line is None:
        raise UnexpectedExit(None)

    try:
        frame = decode_frame(line, validator)
    except DecodeError as e:
        raise ProtocolViolation(f"no hello: {e.cause}", raw_line=line) from e

    if frame.frame_type != FrameType.HELLO:
        raise ProtocolViolation(f"no hello: expected hello, got {frame.describe()}", raw_line=line)

    if frame.contract_version != expected_contract_version:
        raise VersionMismatch(expected_contract_version, frame.contract_version or "")

    info = frame.backend_info()
    logger.debug(
        "sidecar hello: backend=%s contract_version=%s mode=%s",
        info.backend.id, info.contract_version, info.mode,
    )
    return info
