"""Process supervision for sidecars

SidecarProcess owns one spawned sidecar and its three pipes. It offers the
byte-level primitives the protocol layers build on (read a line, write a
line, poll exit status) and the termination ladder: SIGTERM, a grace period,
then SIGKILL, always followed by reaping the child.

Stderr is not part of the protocol. It is drained in the background and
forwarded line by line to the `sidecar_host.stderr` logger.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sidecar_host.errors import ProtocolViolation, SpawnError

logger = logging.getLogger(__name__)
stderr_logger = logging.getLogger("sidecar_host.stderr")

# Hard limit for a single protocol line (16 MB)
MAX_LINE_HARD_LIMIT = 16 * 1024 * 1024

DEFAULT_KILL_GRACE = 5.0


@dataclass
class SidecarSpec:
    """How to launch a sidecar process"""
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    @classmethod
    def from_argv(cls, argv: List[str]) -> "SidecarSpec":
        """Create a spec from a full argv list (command first)"""
        if not argv:
            raise ValueError("argv must not be empty")
        return cls(command=argv[0], args=list(argv[1:]))

    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def process_env(self) -> Optional[Dict[str, str]]:
        """Environment for the child: parent environment overlaid with env, None if no overrides"""
        if not self.env:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


class SidecarProcess:
    """A running sidecar subprocess"""

    def __init__(self, spec: SidecarSpec, process: asyncio.subprocess.Process):
        """Internal constructor - use spawn() instead"""
        self.spec = spec
        self._process = process
        self._stdin_closed = False
        self._stderr_task: Optional[asyncio.Task] = None
        if process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(process.stderr))

    @classmethod
    async def spawn(
        cls,
        spec: SidecarSpec,
        max_line_bytes: int = MAX_LINE_HARD_LIMIT,
    ) -> "SidecarProcess":
        """Start the sidecar with piped stdin, stdout and stderr

        Args:
            spec: Launch description
            max_line_bytes: Longest stdout line accepted before it is a protocol violation

        Returns:
            SidecarProcess instance

        Raises:
            SpawnError: If the process cannot be started. Never retried here.
        """
        limit = min(max_line_bytes, MAX_LINE_HARD_LIMIT)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.process_env(),
                limit=limit,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(spec.command, str(e)) from e

        logger.info("spawned sidecar %s (pid=%s)", spec.command, process.pid)
        return cls(spec, process)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except (OSError, ValueError):
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                stderr_logger.warning("[%s] %s", self.spec.command, text)

    async def read_line(self) -> Optional[bytes]:
        """Read the next raw line from stdout

        Returns:
            The line without its trailing newline, or None at end of stream

        Raises:
            ProtocolViolation: If a line exceeds the configured length limit
        """
        stdout = self._process.stdout
        if stdout is None:
            return None
        try:
            line = await stdout.readline()
        except (asyncio.LimitOverrunError, ValueError) as e:
            raise ProtocolViolation(f"line exceeds maximum length: {e}") from e
        if not line:
            return None
        return line.rstrip(b"\r\n")

    async def write_line(self, data: bytes) -> None:
        """Write one newline-terminated line to stdin

        Raises:
            BrokenPipeError / ConnectionResetError: If the sidecar closed its stdin
        """
        stdin = self._process.stdin
        if stdin is None or self._stdin_closed:
            raise BrokenPipeError("sidecar stdin is closed")
        stdin.write(data)
        await stdin.drain()

    def close_stdin(self) -> None:
        """Close stdin so a well-behaved sidecar sees end of input and exits"""
        if self._stdin_closed:
            return
        self._stdin_closed = True
        stdin = self._process.stdin
        if stdin is not None:
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError, RuntimeError):
                pass

    def exit_status(self) -> Optional[int]:
        """Exit code if the process has been reaped, None while it runs"""
        return self._process.returncode

    def is_running(self) -> bool:
        return self._process.returncode is None

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit; returns the exit code, or None if timeout elapsed first"""
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def terminate(self, grace: float = DEFAULT_KILL_GRACE) -> Optional[int]:
        """Stop the process: SIGTERM, wait up to grace seconds, then SIGKILL

        Safe to call on an already exited process. Always reaps the child and
        releases the pipes.

        Returns:
            The exit code
        """
        self.close_stdin()
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            code = await self.wait(grace)
            if code is None:
                logger.warning(
                    "sidecar %s (pid=%s) ignored SIGTERM for %.1fs, killing",
                    self.spec.command, self.pid, grace,
                )
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
                await self._process.wait()
        await self._finish_stderr()
        logger.debug("sidecar %s (pid=%s) exited with %s", self.spec.command, self.pid, self._process.returncode)
        return self._process.returncode

    async def _finish_stderr(self) -> None:
        if self._stderr_task is None:
            return
        try:
            await asyncio.wait_for(self._stderr_task, timeout=1.0)
        except asyncio.TimeoutError:
            self._stderr_task.cancel()
        self._stderr_task = None

    def kill_now(self) -> None:
        """Best-effort synchronous SIGKILL for finalizers; does not reap"""
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except (ProcessLookupError, RuntimeError):
            pass
