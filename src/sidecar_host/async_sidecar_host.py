"""Async Sidecar Host - Native async runtime for driving sidecar processes

The SidecarSession is the host-side runtime that owns one sidecar process and
everything said over its stdio. It handles:

- Hello handshake and exact contract-version check
- Dispatching runs, one at a time
- Routing event/final/fatal frames to the open run
- Detecting protocol violations, crashes and hangs
- Deadlines and caller cancellation (both terminate the process)
- Clean shutdown

A session never recovers from a failure: every error is terminal for the run
or the session, and the sidecar is killed whenever the session cannot be
trusted any more. Restarting is the caller's decision.

Usage:
```python
import asyncio
from sidecar_host import open_session

async def main():
    async with await open_session(["python3", "hosts/python/host.py"]) as session:
        info = await session.handshake()
        run = await session.run({"task": "say hello"})
        async for event in run.events():
            print(event["type"])
        receipt = await run.result()
```
"""

import asyncio
import logging
import shlex
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from sidecar_host.cancel import CancelToken, Deadline, LineInbox
from sidecar_host.config import SessionConfig
from sidecar_host.errors import (
    Cancelled,
    DecodeError,
    MalformedFrame,
    NotIdleError,
    ProtocolViolation,
    RunFailed,
    SessionClosed,
    SidecarError,
    Timeout,
    UnexpectedExit,
)
from sidecar_host.jsonl_frame import BackendInfo, Frame, FrameType
from sidecar_host.jsonl_io import AsyncFrameWriter, decode_frame, encode_frame, negotiate
from sidecar_host.lifecycle import LifecycleManager, SessionState
from sidecar_host.process import SidecarProcess, SidecarSpec

logger = logging.getLogger(__name__)


@dataclass
class Receipt:
    """Successful outcome of a run"""
    ref_id: str
    payload: Dict[str, Any]
    event_count: int

    def get(self, key: str, default: Any = None) -> Any:
        """Read a top-level field of the receipt payload"""
        return self.payload.get(key, default)


class WriterCommand:
    """Commands sent to the writer task"""
    pass


@dataclass
class WriteFrame(WriterCommand):
    """Write a frame, already encoded by the caller"""
    frame: Frame
    data: bytes


@dataclass
class Shutdown(WriterCommand):
    """Shutdown the writer"""
    pass


_END_OF_EVENTS = object()


class RunHandle:
    """One dispatched run: its event stream and its eventual outcome"""

    def __init__(
        self,
        ref_id: str,
        work_order: Dict[str, Any],
        deadline: Deadline,
        cancel_token: CancelToken,
    ):
        self.ref_id = ref_id
        self.work_order = work_order
        self.deadline = deadline
        self.cancel_token = cancel_token
        self.received_events: List[Dict[str, Any]] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._outcome: asyncio.Future = asyncio.get_running_loop().create_future()
        self._events_taken = False

    @property
    def done(self) -> bool:
        """True once the run resolved, successfully or not"""
        return self._outcome.done()

    def _deliver(self, event: Dict[str, Any]) -> None:
        self.received_events.append(event)
        self._queue.put_nowait(event)

    def _succeed(self, payload: Dict[str, Any]) -> None:
        if self._outcome.done():
            return
        self._outcome.set_result(Receipt(self.ref_id, payload, len(self.received_events)))
        self._queue.put_nowait(_END_OF_EVENTS)

    def _fail(self, error: SidecarError) -> None:
        if self._outcome.done():
            return
        self._outcome.set_exception(error)
        # Retrieved here so an unobserved failure does not log "never retrieved"
        self._outcome.exception()
        self._queue.put_nowait(_END_OF_EVENTS)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Iterate the run's events in wire order until the run resolves

        The stream is not restartable: only the first call yields events.
        Events already delivered stay available in received_events.
        """
        if self._events_taken:
            return
        self._events_taken = True
        while True:
            item = await self._queue.get()
            if item is _END_OF_EVENTS:
                return
            yield item

    def __aiter__(self):
        return self.events()

    async def result(self) -> Receipt:
        """Wait for the run to resolve

        Returns:
            Receipt on success

        Raises:
            RunFailed, UnexpectedExit, Timeout, Cancelled, ProtocolViolation
        """
        return await asyncio.shield(self._outcome)

    def error(self) -> Optional[SidecarError]:
        """The failure the run resolved with, None while pending or on success"""
        if not self._outcome.done():
            return None
        return self._outcome.exception()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the run; the sidecar process is terminated"""
        self.cancel_token.cancel(reason)

    def __repr__(self):
        state = "pending"
        if self.done:
            state = "failed" if self.error() is not None else "succeeded"
        return f"RunHandle(ref_id={self.ref_id!r}, events={len(self.received_events)}, {state})"


class SidecarSession:
    """Async host-side runtime for one sidecar process

    Uses native asyncio I/O: a pump task drains stdout, a writer task feeds
    stdin, and one router task per run classifies inbound frames.
    """

    def __init__(self, process: SidecarProcess, config: SessionConfig):
        """Internal constructor - use open_session() instead"""
        self._process = process
        self.config = config
        self.lifecycle = LifecycleManager()
        self.lifecycle.transition(SessionState.STARTING, "spawned")
        self.backend_info: Optional[BackendInfo] = None
        self.exit_code: Optional[int] = None
        self.close_reason: Optional[str] = None

        self._cancel = CancelToken()
        self._write_failed = CancelToken()
        self._inbox = LineInbox(process.read_line)
        self._inbox.start()
        self._writer_queue: asyncio.Queue = asyncio.Queue(maxsize=64)
        self._writer_task = asyncio.create_task(
            self._writer_loop(AsyncFrameWriter(process), self._writer_queue, self._write_failed)
        )
        self._submit_lock = asyncio.Lock()
        self._handshaking = False
        self._current: Optional[RunHandle] = None
        self._router_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._stopping_idle = False
        self._termination: Optional[asyncio.Future] = None
        self._shut_down = False
        # Abandoned without shutdown(): do not leak the child
        self._finalizer = weakref.finalize(self, process.kill_now)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.lifecycle.state

    @property
    def is_idle(self) -> bool:
        return self.lifecycle.state == SessionState.READY

    @property
    def is_terminated(self) -> bool:
        return self.lifecycle.state.is_terminal()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def current_run(self) -> Optional[RunHandle]:
        return self._current

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def handshake(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BackendInfo:
        """Wait for the sidecar's hello and check its contract version

        Args:
            timeout: Seconds to wait; defaults to config.handshake_timeout
            cancel: Optional caller cancellation token

        Returns:
            BackendInfo (identity, capabilities, mode). Repeated calls return
            the same info.

        Raises:
            HandshakeTimeout, VersionMismatch, ProtocolViolation,
            UnexpectedExit, Cancelled, SessionClosed, NotIdleError
        """
        if self.is_terminated or self.state == SessionState.STOPPING:
            raise SessionClosed(self.close_reason)
        if self.backend_info is not None:
            return self.backend_info
        if self._handshaking:
            raise NotIdleError("handshake already in progress")

        if timeout is None:
            timeout = self.config.handshake_timeout
        tokens = [self._cancel]
        if cancel is not None:
            tokens.append(cancel)

        self._handshaking = True
        try:
            info = await negotiate(
                self._inbox,
                self.config.contract_version,
                Deadline(timeout, phase="handshake"),
                tokens,
            )
        except UnexpectedExit:
            code = await self._reap_after_eof()
            self._enter(SessionState.FAILED, "sidecar exited before hello")
            logger.warning("sidecar %s exited before hello (code=%s)", self._process.spec.command, code)
            raise UnexpectedExit(code) from None
        except SidecarError as e:
            logger.warning("handshake with %s failed: %s", self._process.spec.command, e)
            await self._terminate(SessionState.FAILED, f"handshake failed: {e}")
            raise
        finally:
            self._handshaking = False

        self.backend_info = info
        self.lifecycle.transition(SessionState.READY, "handshake complete")
        logger.info(
            "sidecar %s ready: backend=%s contract_version=%s",
            self._process.spec.command, info.backend.id, info.contract_version,
        )
        self._start_idle_watch()
        return info

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run(
        self,
        work_order: Dict[str, Any],
        ref_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RunHandle:
        """Dispatch a work order to the sidecar

        Args:
            work_order: Opaque work order, sent as-is
            ref_id: Run id; a UUID is generated if omitted
            timeout: Seconds for the whole run; defaults to config.run_timeout
            cancel: Optional caller cancellation token for this run

        Returns:
            RunHandle for the events and the outcome

        Raises:
            NotIdleError: If a run is open or the handshake has not completed
            SessionClosed: If the session has terminated
            EncodeError: If the work order cannot be serialized
        """
        if self.is_terminated or self.state == SessionState.STOPPING:
            raise SessionClosed(self.close_reason)
        if self._submit_lock.locked() or self.state != SessionState.READY:
            if self.state == SessionState.STARTING:
                raise NotIdleError("handshake has not completed")
            raise NotIdleError(f"run {self._current.ref_id if self._current else '?'} is still open")

        async with self._submit_lock:
            if ref_id is None:
                ref_id = str(uuid.uuid4())
            frame = Frame.run(ref_id, work_order)
            data = encode_frame(frame)

            await self._stop_idle_watch()
            # The idle watcher may have seen the sidecar go away
            if self.state != SessionState.READY:
                raise SessionClosed(self.close_reason)

            if timeout is None:
                timeout = self.config.run_timeout
            handle = RunHandle(ref_id, work_order, Deadline(timeout, phase="run"), cancel or CancelToken())
            self._current = handle
            self.lifecycle.transition(SessionState.RUNNING, f"run {ref_id}")
            logger.debug("dispatching run %s", ref_id)

            await self._writer_queue.put(WriteFrame(frame, data))
            self._router_task = asyncio.create_task(self._route_run(
                weakref.ref(self),
                self._inbox,
                self._process,
                handle,
                (self._cancel, handle.cancel_token, self._write_failed),
            ))
            return handle

    @staticmethod
    async def _route_run(
        session_ref: "weakref.ref[SidecarSession]",
        inbox: LineInbox,
        process: SidecarProcess,
        handle: RunHandle,
        tokens: Sequence[CancelToken],
    ) -> None:
        """Router loop - classifies every inbound line until the run resolves

        The session is only held while a line is being applied, so an
        abandoned session can still be collected and its finalizer run.
        """
        try:
            while True:
                error: Optional[SidecarError] = None
                try:
                    line = await inbox.next_line(handle.deadline, tokens)
                except SidecarError as e:
                    line, error = None, e

                session = session_ref()
                if session is None:
                    process.kill_now()
                    handle._fail(SessionClosed("session was abandoned"))
                    return
                if not await session._on_run_line(handle, line, error):
                    return
                del session
        except asyncio.CancelledError:
            # Only an event loop teardown cancels the router; never leave the sidecar behind
            process.kill_now()
            raise

    async def _on_run_line(
        self,
        handle: RunHandle,
        line: Optional[bytes],
        error: Optional[SidecarError],
    ) -> bool:
        """Apply one read outcome to the open run

        Returns:
            True to keep reading, False once the run is resolved
        """
        if isinstance(error, Cancelled):
            if self._write_failed.is_cancelled() and not (
                self._cancel.is_cancelled() or handle.cancel_token.is_cancelled()
            ):
                code = await self._terminate(SessionState.FAILED, error.reason)
                self._resolve_failed(handle, UnexpectedExit(code))
            else:
                logger.info("run %s cancelled: %s", handle.ref_id, error.reason)
                await self._terminate(SessionState.FAILED, error.reason)
                self._resolve_failed(handle, error)
            return False
        if isinstance(error, Timeout):
            logger.warning("run %s: %s", handle.ref_id, error)
            await self._terminate(SessionState.FAILED, str(error))
            self._resolve_failed(handle, error)
            return False
        if error is not None:
            logger.warning("run %s: %s", handle.ref_id, error)
            await self._fail_run(handle, error)
            return False

        if line is None:
            code = await self._reap_after_eof()
            self._enter(SessionState.FAILED, "sidecar exited during run")
            logger.warning(
                "sidecar %s exited during run %s (code=%s)",
                self._process.spec.command, handle.ref_id, code,
            )
            self._resolve_failed(handle, UnexpectedExit(code))
            return False

        try:
            frame = decode_frame(line)
        except DecodeError as e:
            failure = MalformedFrame(e.cause, raw_line=line)
            logger.warning("run %s: %s", handle.ref_id, failure)
            await self._fail_run(handle, failure)
            return False

        failure = self._route_frame(handle, frame, line)
        if failure is not None:
            await self._fail_run(handle, failure)
            return False
        return not handle.done

    def _route_frame(self, handle: RunHandle, frame: Frame, line: bytes) -> Optional[SidecarError]:
        """Apply one decoded frame to the open run

        Events, finals and run-scoped fatals are applied here. Anything that
        ends the session is returned instead, so the caller can stop the
        sidecar before the run resolves.
        """
        frame_type = frame.frame_type

        if frame_type not in (FrameType.EVENT, FrameType.FINAL, FrameType.FATAL):
            error = ProtocolViolation(
                f"unexpected {frame.describe()} while run {handle.ref_id} is open", raw_line=line,
            )
            logger.warning("run %s: %s", handle.ref_id, error)
            return error

        if not frame.is_session_fatal() and frame.ref_id != handle.ref_id:
            error = ProtocolViolation(
                f"{frame.describe()} does not match open run {handle.ref_id!r}", raw_line=line,
            )
            logger.warning("run %s: %s", handle.ref_id, error)
            return error

        if frame_type == FrameType.EVENT:
            handle._deliver(frame.event)
            return None

        if frame_type == FrameType.FINAL:
            self._current = None
            self.lifecycle.transition(SessionState.READY, f"run {handle.ref_id} completed")
            logger.debug("run %s completed with %d events", handle.ref_id, len(handle.received_events))
            self._start_idle_watch()
            handle._succeed(frame.receipt)
            return None

        if frame.is_session_fatal():
            logger.warning("sidecar %s reported session fatal: %s", self._process.spec.command, frame.error)
            return RunFailed(frame.error, None)

        self._current = None
        self.lifecycle.transition(SessionState.READY, f"run {handle.ref_id} failed")
        logger.info("run %s failed: %s", handle.ref_id, frame.error)
        self._start_idle_watch()
        handle._fail(RunFailed(frame.error, frame.ref_id))
        return None

    async def _fail_run(self, handle: RunHandle, error: SidecarError) -> None:
        """Stop the sidecar, then resolve the run with error"""
        if isinstance(error, RunFailed):
            reason = f"session fatal: {error.error}"
        else:
            reason = str(error)
        await self._terminate(SessionState.FAILED, reason)
        self._resolve_failed(handle, error)

    def _resolve_failed(self, handle: RunHandle, error: SidecarError) -> None:
        if self._current is handle:
            self._current = None
        handle._fail(error)

    # ------------------------------------------------------------------
    # Idle watch
    # ------------------------------------------------------------------

    def _start_idle_watch(self) -> None:
        self._stopping_idle = False
        self._idle_task = asyncio.create_task(self._watch_idle(
            weakref.ref(self),
            self._inbox,
            self._process,
            (self._cancel, self._write_failed),
        ))

    async def _stop_idle_watch(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task is None or task.done():
            return
        self._stopping_idle = True
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._stopping_idle = False

    @staticmethod
    async def _watch_idle(
        session_ref: "weakref.ref[SidecarSession]",
        inbox: LineInbox,
        process: SidecarProcess,
        tokens: Sequence[CancelToken],
    ) -> None:
        """Drain stdout between runs

        Holds the session weakly while waiting, like the router.
        """
        try:
            error: Optional[SidecarError] = None
            try:
                line = await inbox.next_line(None, tokens)
            except SidecarError as e:
                line, error = None, e

            session = session_ref()
            if session is None:
                process.kill_now()
                return
            await session._on_idle_line(line, error)
        except asyncio.CancelledError:
            session = session_ref()
            if session is None or not session._stopping_idle:
                process.kill_now()
            raise

    async def _on_idle_line(self, line: Optional[bytes], error: Optional[SidecarError]) -> None:
        """End of stream stops the session quietly

        Anything else the sidecar says while no run is open ends the session.
        """
        if isinstance(error, Cancelled):
            await self._terminate(SessionState.FAILED, error.reason)
            return
        if error is not None:
            logger.warning("sidecar %s idle: %s", self._process.spec.command, error)
            await self._terminate(SessionState.FAILED, str(error))
            return

        if line is None:
            code = await self._reap_after_eof()
            logger.info("sidecar %s exited while idle (code=%s)", self._process.spec.command, code)
            self._enter(SessionState.STOPPED, "sidecar exited")
            return

        try:
            frame = decode_frame(line)
        except DecodeError as e:
            logger.warning("sidecar %s idle: malformed frame: %s", self._process.spec.command, e.cause)
            await self._terminate(SessionState.FAILED, f"malformed frame while idle: {e.cause}")
            return

        if frame.is_session_fatal():
            logger.warning("sidecar %s reported session fatal: %s", self._process.spec.command, frame.error)
            await self._terminate(SessionState.FAILED, f"session fatal: {frame.error}")
            return

        logger.warning(
            "sidecar %s sent %s while idle, terminating",
            self._process.spec.command, frame.describe(),
        )
        await self._terminate(SessionState.FAILED, f"unexpected {frame.describe()} while idle")

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    @staticmethod
    async def _writer_loop(writer: AsyncFrameWriter, queue: asyncio.Queue, failed: CancelToken):
        """Writer loop - sends frames from the queue"""
        while True:
            cmd = await queue.get()
            if isinstance(cmd, Shutdown):
                break
            elif isinstance(cmd, WriteFrame):
                try:
                    await writer.write_encoded(cmd.data, cmd.frame)
                except OSError as e:
                    logger.warning("writing %s to sidecar failed: %s", cmd.frame.describe(), e)
                    failed.cancel(f"write to sidecar failed: {e}")
                    break

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _enter(self, state: SessionState, reason: str) -> None:
        """Move into a terminal state once; later calls are ignored"""
        if self.lifecycle.state.is_terminal():
            return
        if state == SessionState.STOPPED and self.lifecycle.state != SessionState.STOPPING:
            self.lifecycle.transition(SessionState.STOPPING, reason)
        self.lifecycle.transition(state, reason)
        self.close_reason = reason

    async def _stop_process(self) -> Optional[int]:
        """Terminate the sidecar once, however many paths ask for it"""
        if self._termination is None:
            self._termination = asyncio.ensure_future(self._process.terminate(self.config.kill_grace))
        self.exit_code = await asyncio.shield(self._termination)
        return self.exit_code

    async def _terminate(self, state: SessionState, reason: str) -> Optional[int]:
        self._enter(state, reason)
        return await self._stop_process()

    async def _reap_after_eof(self) -> Optional[int]:
        """Stdout closed: give the process a grace period to exit on its own, then stop it"""
        code = await self._process.wait(self.config.kill_grace)
        if code is None:
            logger.warning(
                "sidecar %s closed stdout but is still running, terminating",
                self._process.spec.command,
            )
        return await self._stop_process()

    async def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel whatever the session is doing and terminate the sidecar

        An open run resolves with Cancelled. The session cannot be reused.
        """
        self._cancel.cancel(reason)
        router = self._router_task
        if router is not None and not router.done():
            await asyncio.gather(router, return_exceptions=True)
        idle = self._idle_task
        if idle is not None and not idle.done():
            await asyncio.gather(idle, return_exceptions=True)
        await self._terminate(SessionState.FAILED, reason)

    async def shutdown(self) -> None:
        """Shut down the session and release the process

        An open run is cancelled. Otherwise stdin is closed so the sidecar can
        exit on its own within kill_grace before it is terminated. Safe to
        call more than once.
        """
        if self._shut_down:
            return
        self._shut_down = True

        if self._current is not None:
            self._cancel.cancel("session shut down")
            router = self._router_task
            if router is not None and not router.done():
                await asyncio.gather(router, return_exceptions=True)

        await self._stop_idle_watch()

        if not self.is_terminated:
            self.lifecycle.transition(SessionState.STOPPING, "shutdown requested")
            self._process.close_stdin()
            if await self._process.wait(self.config.kill_grace) is None:
                logger.warning(
                    "sidecar %s did not exit after stdin closed, terminating",
                    self._process.spec.command,
                )
        await self._stop_process()
        self._enter(SessionState.STOPPED, "shutdown")

        if not self._writer_task.done():
            await self._writer_queue.put(Shutdown())
        await asyncio.gather(self._writer_task, return_exceptions=True)
        await self._inbox.close()
        self._finalizer.detach()
        logger.info("sidecar %s shut down (code=%s)", self._process.spec.command, self.exit_code)

    async def __aenter__(self) -> "SidecarSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


def _as_spec(target: Union[SidecarSpec, str, Sequence[str]]) -> SidecarSpec:
    if isinstance(target, SidecarSpec):
        return target
    if isinstance(target, str):
        argv = shlex.split(target)
        if not argv:
            raise ValueError("sidecar command must not be empty")
        return SidecarSpec.from_argv(argv)
    return SidecarSpec.from_argv(list(target))


async def open_session(
    target: Union[SidecarSpec, str, Sequence[str]],
    config: Optional[SessionConfig] = None,
) -> SidecarSession:
    """Spawn a sidecar and wrap it in a session (handshake not yet performed)

    Args:
        target: SidecarSpec, a shell-style command string, or an argv list
        config: Session configuration; defaults to SessionConfig()

    Raises:
        SpawnError: If the process cannot be started
    """
    spec = _as_spec(target)
    if config is None:
        config = SessionConfig()
    process = await SidecarProcess.spawn(spec, config.max_line_bytes)
    return SidecarSession(process, config)


@asynccontextmanager
async def session_scope(
    target: Union[SidecarSpec, str, Sequence[str]],
    config: Optional[SessionConfig] = None,
    handshake_timeout: Optional[float] = None,
) -> AsyncIterator[SidecarSession]:
    """Open a session, complete the handshake, and always shut it down"""
    session = await open_session(target, config)
    try:
        await session.handshake(handshake_timeout)
        yield session
    finally:
        await session.shutdown()
