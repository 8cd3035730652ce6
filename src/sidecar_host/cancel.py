"""Timeout and cancellation primitives

A sidecar can stall, die, or be abandoned by the caller at any moment. The
engine therefore never blocks on a bare read: every wait for the next line goes
through LineInbox.next_line, which races the next line (end of stream
included) against every cancellation token and a deadline. Whichever happens
first decides the outcome.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence, Union

from sidecar_host.errors import Cancelled, HandshakeTimeout, SidecarError, Timeout

logger = logging.getLogger(__name__)

# Queue item: a raw line, None for end of stream, or an error raised by the reader
InboxItem = Union[bytes, None, SidecarError]

DEFAULT_INBOX_SIZE = 256


class CancelToken:
    """One-shot cancellation signal shared between a caller and the engine"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Fire the token. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Wait until the token fires"""
        await self._event.wait()

    def error(self) -> Cancelled:
        return Cancelled(self.reason or "cancelled by caller")


class Deadline:
    """Absolute expiry point for one phase (handshake or run)

    A deadline is fixed when the phase starts and is not extended by traffic,
    so a sidecar that trickles events still has to finish within the budget.
    """

    def __init__(self, timeout: Optional[float], phase: str = "run"):
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be non-negative")
        self.timeout = timeout
        self.phase = phase
        self.expires_at = None if timeout is None else time.monotonic() + timeout

    @classmethod
    def never(cls, phase: str = "run") -> "Deadline":
        return cls(None, phase)

    def remaining(self) -> Optional[float]:
        """Seconds left, None for an unbounded deadline"""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def error(self) -> Timeout:
        if self.phase == "handshake":
            return HandshakeTimeout(self.timeout)
        return Timeout(self.timeout, phase=self.phase)


class LineInbox:
    """Bounded queue of raw lines fed by a background pump

    The pump drains the sidecar's stdout continuously, so the sidecar never
    blocks on a full pipe while the host is busy writing. Whitespace-only
    lines are dropped. End of stream is delivered once as None; after that
    every call returns None.
    """

    def __init__(
        self,
        read_line: Callable[[], Awaitable[Optional[bytes]]],
        maxsize: int = DEFAULT_INBOX_SIZE,
    ):
        self._read_line = read_line
        self._queue: "asyncio.Queue[InboxItem]" = asyncio.Queue(maxsize=maxsize)
        self._pending_get: Optional[asyncio.Future] = None
        self._pump_task: Optional[asyncio.Task] = None
        self.at_eof = False

    def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        """Reader loop - moves lines from the sidecar into the queue"""
        while True:
            try:
                line = await self._read_line()
            except SidecarError as e:
                await self._queue.put(e)
                return
            except (OSError, ValueError) as e:
                logger.debug("sidecar stdout read failed, treating as end of stream: %s", e)
                await self._queue.put(None)
                return

            if line is None:
                await self._queue.put(None)
                return
            if not line.strip():
                continue
            await self._queue.put(line)

    async def next_line(
        self,
        deadline: Optional[Deadline] = None,
        tokens: Sequence[CancelToken] = (),
    ) -> Optional[bytes]:
        """Wait for the next line, end of stream, cancellation, or the deadline

        Returns:
            The raw line (without trailing newline handling), or None at end of stream

        Raises:
            Cancelled: If any token fired first
            Timeout: If the deadline expired first (HandshakeTimeout for the handshake phase)
            SidecarError: If the reader failed (e.g. an over-long line)
        """
        if self.at_eof:
            return None
        for token in tokens:
            if token.is_cancelled():
                raise token.error()

        # A get that outlived a previous call still owns its item; reuse it
        if self._pending_get is None:
            self._pending_get = asyncio.ensure_future(self._queue.get())

        waiters = [asyncio.ensure_future(token.wait()) for token in tokens]
        timeout = deadline.remaining() if deadline is not None else None
        try:
            done, _ = await asyncio.wait(
                [self._pending_get, *waiters],
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        for token in tokens:
            if token.is_cancelled():
                raise token.error()

        if self._pending_get in done:
            item = self._pending_get.result()
            self._pending_get = None
            if isinstance(item, SidecarError):
                raise item
            if item is None:
                self.at_eof = True
            return item

        raise deadline.error() if deadline is not None else Timeout(None)

    async def close(self) -> None:
        """Stop the pump and drop anything still queued"""
        if self._pending_get is not None:
            self._pending_get.cancel()
            self._pending_get = None
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
