"""Sidecar Host - Drive sidecar processes over a JSONL stdio protocol

A sidecar is a child process that wraps some backend and speaks a line
protocol on stdin/stdout: it says hello, the host sends a run, and the sidecar
answers with events and exactly one final or fatal. This library spawns and
supervises sidecars, checks the handshake, routes frames to the open run, and
turns every way a sidecar can misbehave into a typed error.
"""

from sidecar_host.errors import (
    SidecarError,
    SpawnError,
    HandshakeError,
    HandshakeTimeout,
    VersionMismatch,
    ProtocolViolation,
    MalformedFrame,
    NotIdleError,
    SessionClosed,
    RunError,
    Timeout,
    UnexpectedExit,
    Cancelled,
    RunFailed,
    CodecError,
    DecodeError,
    EncodeError,
    ConfigError,
    RegistryError,
)

from sidecar_host.jsonl_frame import (
    CONTRACT_VERSION,
    DEFAULT_MODE,
    FrameType,
    Keys,
    Frame,
    BackendIdentity,
    BackendInfo,
)

from sidecar_host.jsonl_io import (
    encode_frame,
    decode_frame,
    negotiate,
    AsyncFrameWriter,
)

from sidecar_host.schema_validation import (
    FRAME_SCHEMAS,
    FrameShapeError,
    FrameValidator,
)

from sidecar_host.cancel import (
    CancelToken,
    Deadline,
    LineInbox,
)

from sidecar_host.process import (
    MAX_LINE_HARD_LIMIT,
    DEFAULT_KILL_GRACE,
    SidecarSpec,
    SidecarProcess,
)

from sidecar_host.lifecycle import (
    SessionState,
    LifecycleTransition,
    LifecycleError,
    LifecycleManager,
)

from sidecar_host.config import (
    DEFAULT_HANDSHAKE_TIMEOUT,
    SessionConfig,
)

from sidecar_host.registry import (
    KNOWN_HOSTS,
    SidecarConfig,
    SidecarRegistry,
)

from sidecar_host.async_sidecar_host import (
    Receipt,
    RunHandle,
    SidecarSession,
    open_session,
    session_scope,
)

__all__ = [
    # Errors
    "SidecarError",
    "SpawnError",
    "HandshakeError",
    "HandshakeTimeout",
    "VersionMismatch",
    "ProtocolViolation",
    "MalformedFrame",
    "NotIdleError",
    "SessionClosed",
    "RunError",
    "Timeout",
    "UnexpectedExit",
    "Cancelled",
    "RunFailed",
    "CodecError",
    "DecodeError",
    "EncodeError",
    "ConfigError",
    "RegistryError",
    # Frames
    "CONTRACT_VERSION",
    "DEFAULT_MODE",
    "FrameType",
    "Keys",
    "Frame",
    "BackendIdentity",
    "BackendInfo",
    # JSONL I/O
    "encode_frame",
    "decode_frame",
    "negotiate",
    "AsyncFrameWriter",
    # Schemas
    "FRAME_SCHEMAS",
    "FrameShapeError",
    "FrameValidator",
    # Timeouts and cancellation
    "CancelToken",
    "Deadline",
    "LineInbox",
    # Process
    "MAX_LINE_HARD_LIMIT",
    "DEFAULT_KILL_GRACE",
    "SidecarSpec",
    "SidecarProcess",
    # Lifecycle
    "SessionState",
    "LifecycleTransition",
    "LifecycleError",
    "LifecycleManager",
    # Config
    "DEFAULT_HANDSHAKE_TIMEOUT",
    "SessionConfig",
    # Registry
    "KNOWN_HOSTS",
    "SidecarConfig",
    "SidecarRegistry",
    # Session
    "Receipt",
    "RunHandle",
    "SidecarSession",
    "open_session",
    "session_scope",
]
