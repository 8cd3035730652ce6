"""Error taxonomy for the sidecar protocol engine

Every failure the engine can report is a subclass of SidecarError. Errors
carry the context a caller needs to decide whether to retry with a fresh
session: the raw offending line for protocol violations, both version strings
for version mismatches, and the exit status for unexpected exits.

The engine never retries. Each of these is terminal for the current run or
session.
"""

from typing import Optional


class SidecarError(Exception):
    """Base error for the sidecar host"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SpawnError(SidecarError):
    """The sidecar process could not be started"""

    def __init__(self, command: str, cause: str):
        super().__init__(f"failed to spawn sidecar '{command}': {cause}")
        self.command = command
        self.cause = cause


class HandshakeError(SidecarError):
    """Handshake failed"""
    pass


class RunError(SidecarError):
    """A run (or the wait for one) did not complete usefully"""
    pass


class Timeout(RunError):
    """A deadline expired before the sidecar produced the awaited frame"""

    def __init__(self, timeout: Optional[float], phase: str = "run"):
        if timeout is None:
            super().__init__(f"{phase} deadline expired")
        else:
            super().__init__(f"{phase} timed out after {timeout:g}s")
        self.timeout = timeout
        self.phase = phase


class HandshakeTimeout(HandshakeError, Timeout):
    """No hello arrived within the handshake deadline"""

    def __init__(self, timeout: Optional[float]):
        Timeout.__init__(self, timeout, phase="handshake")


class VersionMismatch(HandshakeError):
    """The sidecar speaks a different contract version"""

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"contract version mismatch: expected '{expected}', sidecar sent '{actual}'"
        )
        self.expected = expected
        self.actual = actual


class ProtocolViolation(SidecarError):
    """The sidecar broke the wire protocol"""

    def __init__(self, cause: str, raw_line: Optional[bytes] = None):
        super().__init__(f"protocol violation: {cause}")
        self.cause = cause
        self.raw_line = raw_line


class MalformedFrame(ProtocolViolation):
    """A line could not be decoded into a frame"""
    pass


class NotIdleError(SidecarError):
    """A run was submitted while the session could not accept one"""
    pass


class SessionClosed(SidecarError):
    """The session has terminated and cannot be used again"""

    def __init__(self, reason: Optional[str] = None):
        if reason:
            super().__init__(f"session is closed: {reason}")
        else:
            super().__init__("session is closed")
        self.reason = reason


class UnexpectedExit(RunError):
    """The sidecar ended its output without a terminal frame"""

    def __init__(self, exit_code: Optional[int]):
        super().__init__(f"sidecar exited unexpectedly (code={exit_code})")
        self.exit_code = exit_code


class Cancelled(RunError):
    """The caller cancelled the operation"""

    def __init__(self, reason: str = "cancelled by caller"):
        super().__init__(reason)
        self.reason = reason


class RunFailed(RunError):
    """The sidecar reported an explicit fatal error"""

    def __init__(self, error: str, ref_id: Optional[str] = None):
        super().__init__(f"sidecar fatal error: {error}")
        self.error = error
        self.ref_id = ref_id

    @property
    def session_scoped(self) -> bool:
        """True when the fatal frame carried no ref_id and ended the session"""
        return self.ref_id is None


class CodecError(SidecarError):
    """Base JSONL codec error"""
    pass


class DecodeError(CodecError):
    """A line is not a well-formed frame"""

    def __init__(self, raw_line: bytes, cause: str):
        super().__init__(f"cannot decode frame: {cause}")
        self.raw_line = raw_line
        self.cause = cause


class EncodeError(CodecError):
    """A frame could not be serialized"""
    pass


class ConfigError(SidecarError):
    """Invalid session configuration"""
    pass


class RegistryError(SidecarError):
    """Invalid or conflicting sidecar registration"""
    pass
