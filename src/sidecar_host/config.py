"""Session configuration

Supports configuration via:
1. Builder methods (highest priority)
2. Environment variables (SIDECAR_HOST_*)
3. Default values
"""

import os
from typing import Optional

from sidecar_host.errors import ConfigError
from sidecar_host.jsonl_frame import CONTRACT_VERSION
from sidecar_host.process import DEFAULT_KILL_GRACE, MAX_LINE_HARD_LIMIT


DEFAULT_HANDSHAKE_TIMEOUT = 10.0

ENV_CONTRACT_VERSION = "SIDECAR_HOST_CONTRACT_VERSION"
ENV_HANDSHAKE_TIMEOUT = "SIDECAR_HOST_HANDSHAKE_TIMEOUT"
ENV_RUN_TIMEOUT = "SIDECAR_HOST_RUN_TIMEOUT"
ENV_KILL_GRACE = "SIDECAR_HOST_KILL_GRACE"
ENV_MAX_LINE_BYTES = "SIDECAR_HOST_MAX_LINE_BYTES"

_UNBOUNDED = ("", "0", "none", "off")


def _env_seconds(name: str, default: Optional[float], allow_unbounded: bool = False) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if allow_unbounded and value in _UNBOUNDED:
        return None
    try:
        seconds = float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}")
    if seconds <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return seconds


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _check_seconds(name: str, value: Optional[float], allow_none: bool) -> None:
    if value is None:
        if not allow_none:
            raise ConfigError(f"{name} is required")
        return
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")


class SessionConfig:
    """Configuration for a sidecar session

    Attributes:
        contract_version: Version expected in the sidecar's hello (exact match)
        handshake_timeout: Seconds allowed between spawn and a valid hello
        run_timeout: Seconds allowed for one run, from submission to its
            terminal frame; None means no deadline
        kill_grace: Seconds between SIGTERM and SIGKILL when terminating
        max_line_bytes: Longest accepted stdout line
    """

    def __init__(
        self,
        contract_version: Optional[str] = None,
        handshake_timeout: Optional[float] = None,
        run_timeout: Optional[float] = None,
        kill_grace: Optional[float] = None,
        max_line_bytes: Optional[int] = None,
    ):
        """Create session configuration, falling back to environment then defaults"""
        if contract_version is None:
            contract_version = os.getenv(ENV_CONTRACT_VERSION, CONTRACT_VERSION)
        if handshake_timeout is None:
            handshake_timeout = _env_seconds(ENV_HANDSHAKE_TIMEOUT, DEFAULT_HANDSHAKE_TIMEOUT)
        if run_timeout is None:
            run_timeout = _env_seconds(ENV_RUN_TIMEOUT, None, allow_unbounded=True)
        if kill_grace is None:
            kill_grace = _env_seconds(ENV_KILL_GRACE, DEFAULT_KILL_GRACE)
        if max_line_bytes is None:
            max_line_bytes = _env_int(ENV_MAX_LINE_BYTES, MAX_LINE_HARD_LIMIT)

        if not contract_version:
            raise ConfigError("contract_version must not be empty")
        _check_seconds("handshake_timeout", handshake_timeout, allow_none=False)
        _check_seconds("run_timeout", run_timeout, allow_none=True)
        _check_seconds("kill_grace", kill_grace, allow_none=False)
        if max_line_bytes <= 0:
            raise ConfigError(f"max_line_bytes must be positive, got {max_line_bytes!r}")

        self.contract_version = contract_version
        self.handshake_timeout = handshake_timeout
        self.run_timeout = run_timeout
        self.kill_grace = kill_grace
        self.max_line_bytes = min(max_line_bytes, MAX_LINE_HARD_LIMIT)

    def with_contract_version(self, version: str) -> "SessionConfig":
        if not version:
            raise ConfigError("contract_version must not be empty")
        self.contract_version = version
        return self

    def with_handshake_timeout(self, seconds: float) -> "SessionConfig":
        _check_seconds("handshake_timeout", seconds, allow_none=False)
        self.handshake_timeout = seconds
        return self

    def with_run_timeout(self, seconds: Optional[float]) -> "SessionConfig":
        """Set the per-run deadline; None removes it"""
        _check_seconds("run_timeout", seconds, allow_none=True)
        self.run_timeout = seconds
        return self

    def with_kill_grace(self, seconds: float) -> "SessionConfig":
        _check_seconds("kill_grace", seconds, allow_none=False)
        self.kill_grace = seconds
        return self

    def with_max_line_bytes(self, limit: int) -> "SessionConfig":
        if limit <= 0:
            raise ConfigError(f"max_line_bytes must be positive, got {limit!r}")
        self.max_line_bytes = min(limit, MAX_LINE_HARD_LIMIT)
        return self

    def __repr__(self):
        return (
            f"SessionConfig(contract_version={self.contract_version!r}, "
            f"handshake_timeout={self.handshake_timeout!r}, run_timeout={self.run_timeout!r}, "
            f"kill_grace={self.kill_grace!r}, max_line_bytes={self.max_line_bytes!r})"
        )
