"""JSONL Frame Types for Sidecar Communication

This module defines the line-delimited JSON frame format spoken between the
host and a sidecar process. One frame is one JSON object on one line.

## Frame Format

Every frame is a JSON object tagged by the discriminator field `t`:

```
hello: {t:"hello", contract_version, backend:{id, backend_version, adapter_version}, capabilities:{...}, mode}
run:   {t:"run", id, work_order:{...}}                  host -> sidecar
event: {t:"event", ref_id, event:{ts, type, ...}}
final: {t:"final", ref_id, receipt:{...}}
fatal: {t:"fatal", ref_id|null, error}
```

## Frame Types

- HELLO: First line a sidecar emits, announcing contract version and identity
- RUN: Host request to execute a work order
- EVENT: Streaming progress for the open run
- FINAL: Terminal success carrying the receipt
- FATAL: Terminal failure, run-scoped (ref_id) or session-scoped (no ref_id)

Work orders, event payloads and receipts are opaque to the engine: they are
passed through as plain dicts and only the routing fields are interpreted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


# Contract version this host speaks. Compared by exact string equality.
CONTRACT_VERSION = "abp/v0.1"

# Execution mode a hello frame reports when it omits the field
DEFAULT_MODE = "mapped"


class FrameType(str, Enum):
    """Frame type discriminator (value of the `t` field)"""
    HELLO = "hello"
    RUN = "run"
    EVENT = "event"
    FINAL = "final"
    FATAL = "fatal"

    @classmethod
    def from_tag(cls, tag: Any) -> Optional["FrameType"]:
        """Convert a discriminator value to FrameType, returns None if unknown"""
        if not isinstance(tag, str):
            return None
        try:
            return cls(tag)
        except ValueError:
            return None


class Keys:
    """Field names used on the wire"""
    TAG = "t"
    CONTRACT_VERSION = "contract_version"
    BACKEND = "backend"
    CAPABILITIES = "capabilities"
    MODE = "mode"
    ID = "id"
    WORK_ORDER = "work_order"
    REF_ID = "ref_id"
    EVENT = "event"
    RECEIPT = "receipt"
    ERROR = "error"


@dataclass
class BackendIdentity:
    """Identity a sidecar reports for the backend behind it"""
    id: str
    backend_version: Optional[str] = None
    adapter_version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackendIdentity":
        return cls(
            id=data["id"],
            backend_version=data.get("backend_version"),
            adapter_version=data.get("adapter_version"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "backend_version": self.backend_version,
            "adapter_version": self.adapter_version,
        }


@dataclass
class BackendInfo:
    """What the host learned from a sidecar's hello"""
    contract_version: str
    backend: BackendIdentity
    capabilities: Dict[str, Any] = field(default_factory=dict)
    mode: str = DEFAULT_MODE

    def capability(self, name: str) -> Optional[Any]:
        """Get the advertised level for a capability, None if not advertised"""
        return self.capabilities.get(name)

    def supports(self, name: str) -> bool:
        """Check whether a capability is advertised with a truthy level"""
        level = self.capabilities.get(name)
        if level is None or level is False:
            return False
        if isinstance(level, str) and level.lower() in ("unsupported", "none", ""):
            return False
        return True


class Frame:
    """A JSONL protocol frame"""

    def __init__(
        self,
        frame_type: FrameType,
        contract_version: Optional[str] = None,
        backend: Optional[BackendIdentity] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        mode: Optional[str] = None,
        id: Optional[str] = None,
        work_order: Optional[Dict[str, Any]] = None,
        ref_id: Optional[str] = None,
        event: Optional[Dict[str, Any]] = None,
        receipt: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        """Create a new frame

        Args:
            frame_type: Type of frame
            contract_version: Contract version (hello)
            backend: Backend identity (hello)
            capabilities: Capability name -> level map (hello)
            mode: Execution mode label (hello)
            id: Run id (run)
            work_order: Opaque work order (run)
            ref_id: Run the frame belongs to (event/final/fatal)
            event: Opaque event payload (event)
            receipt: Opaque receipt payload (final)
            error: Error message (fatal)
        """
        self.frame_type = frame_type
        self.contract_version = contract_version
        self.backend = backend
        self.capabilities = capabilities
        self.mode = mode
        self.id = id
        self.work_order = work_order
        self.ref_id = ref_id
        self.event = event
        self.receipt = receipt
        self.error = error

    @classmethod
    def hello(
        cls,
        backend: BackendIdentity,
        capabilities: Optional[Dict[str, Any]] = None,
        mode: str = DEFAULT_MODE,
        contract_version: str = CONTRACT_VERSION,
    ) -> "Frame":
        """Create a HELLO frame"""
        return cls(
            FrameType.HELLO,
            contract_version=contract_version,
            backend=backend,
            capabilities=dict(capabilities or {}),
            mode=mode,
        )

    @classmethod
    def run(cls, id: str, work_order: Dict[str, Any]) -> "Frame":
        """Create a RUN frame for dispatching a work order"""
        return cls(FrameType.RUN, id=id, work_order=work_order)

    @classmethod
    def event_for(cls, ref_id: str, event: Dict[str, Any]) -> "Frame":
        """Create an EVENT frame"""
        return cls(FrameType.EVENT, ref_id=ref_id, event=event)

    @classmethod
    def final(cls, ref_id: str, receipt: Dict[str, Any]) -> "Frame":
        """Create a FINAL frame"""
        return cls(FrameType.FINAL, ref_id=ref_id, receipt=receipt)

    @classmethod
    def fatal(cls, ref_id: Optional[str], error: str) -> "Frame":
        """Create a FATAL frame, session-scoped when ref_id is None"""
        return cls(FrameType.FATAL, ref_id=ref_id, error=error)

    def is_terminal(self) -> bool:
        """Check if this frame resolves a run"""
        return self.frame_type in (FrameType.FINAL, FrameType.FATAL)

    def is_session_fatal(self) -> bool:
        """Check if this is a FATAL frame without a ref_id"""
        return self.frame_type == FrameType.FATAL and self.ref_id is None

    def backend_info(self) -> Optional[BackendInfo]:
        """Extract backend info if this is a HELLO frame"""
        if self.frame_type != FrameType.HELLO or self.backend is None:
            return None
        return BackendInfo(
            contract_version=self.contract_version or "",
            backend=self.backend,
            capabilities=dict(self.capabilities or {}),
            mode=self.mode or DEFAULT_MODE,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire-level JSON object"""
        data: Dict[str, Any] = {Keys.TAG: self.frame_type.value}

        if self.frame_type == FrameType.HELLO:
            data[Keys.CONTRACT_VERSION] = self.contract_version
            data[Keys.BACKEND] = self.backend.to_dict() if self.backend is not None else None
            data[Keys.CAPABILITIES] = self.capabilities if self.capabilities is not None else {}
            data[Keys.MODE] = self.mode or DEFAULT_MODE
        elif self.frame_type == FrameType.RUN:
            data[Keys.ID] = self.id
            data[Keys.WORK_ORDER] = self.work_order
        elif self.frame_type == FrameType.EVENT:
            data[Keys.REF_ID] = self.ref_id
            data[Keys.EVENT] = self.event
        elif self.frame_type == FrameType.FINAL:
            data[Keys.REF_ID] = self.ref_id
            data[Keys.RECEIPT] = self.receipt
        elif self.frame_type == FrameType.FATAL:
            data[Keys.REF_ID] = self.ref_id
            data[Keys.ERROR] = self.error

        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Frame":
        """Build a frame from an already-validated JSON object"""
        frame_type = FrameType(data[Keys.TAG])

        if frame_type == FrameType.HELLO:
            return cls(
                frame_type,
                contract_version=data[Keys.CONTRACT_VERSION],
                backend=BackendIdentity.from_dict(data[Keys.BACKEND]),
                capabilities=dict(data.get(Keys.CAPABILITIES) or {}),
                mode=data.get(Keys.MODE) or DEFAULT_MODE,
            )
        if frame_type == FrameType.RUN:
            return cls(frame_type, id=data[Keys.ID], work_order=data[Keys.WORK_ORDER])
        if frame_type == FrameType.EVENT:
            return cls(frame_type, ref_id=data[Keys.REF_ID], event=data[Keys.EVENT])
        if frame_type == FrameType.FINAL:
            return cls(frame_type, ref_id=data[Keys.REF_ID], receipt=data[Keys.RECEIPT])
        return cls(frame_type, ref_id=data.get(Keys.REF_ID), error=data[Keys.ERROR])

    def describe(self) -> str:
        """Short description for logs and error messages"""
        if self.frame_type == FrameType.HELLO:
            return f"hello(contract_version={self.contract_version!r})"
        if self.frame_type == FrameType.RUN:
            return f"run(id={self.id!r})"
        return f"{self.frame_type.value}(ref_id={self.ref_id!r})"

    def __eq__(self, other):
        if not isinstance(other, Frame):
            return False
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"Frame::{self.describe()}"
