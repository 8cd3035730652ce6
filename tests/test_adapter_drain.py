"""Tests for adapter.drain module"""

import asyncio
import threading

import pytest

from sidecar_host.adapter.drain import drain_messages
from sidecar_host.cancel import CancelToken
from sidecar_host.errors import Cancelled


MESSAGES = [
    {"type": "stream_event", "delta": "Hel"},
    {"type": "stream_event", "delta": "lo"},
    {"type": "system", "subtype": "init"},
    {"type": "tool_use", "name": "read", "id": "t1", "input": {"path": "a"}},
    {"type": "result", "usage": {"input_tokens": 1}},
]


async def agen(items, delay=0.0):
    for item in items:
        if delay:
            await asyncio.sleep(delay)
        yield item


# TEST216: Test a sync source is drained into classified events in order
@pytest.mark.asyncio
async def test_drain_sync_source():
    emitted = []

    count = await drain_messages(MESSAGES, emitted.append)

    assert count == 4
    assert [e["type"] for e in emitted] == ["assistant_delta", "assistant_delta", "tool_call", "usage"]
    assert emitted[2]["input"] == {"path": "a"}


# TEST217: Test an async source and an async emit
@pytest.mark.asyncio
async def test_drain_async_source_async_emit():
    emitted = []

    async def emit(event):
        await asyncio.sleep(0)
        emitted.append(event)

    count = await drain_messages(agen(MESSAGES), emit)

    assert count == 4
    assert emitted[0] == {"type": "assistant_delta", "text": "Hel"}


# TEST218: Test unclassified messages can be forwarded on request
@pytest.mark.asyncio
async def test_drain_include_unclassified():
    emitted = []

    count = await drain_messages(MESSAGES, emitted.append, include_unclassified=True)

    assert count == 5
    assert emitted[2] == {"type": "unclassified", "raw": {"type": "system", "subtype": "init"}}


# TEST219: Test a pre-fired token stops the drain before the first pull
@pytest.mark.asyncio
async def test_drain_cancelled_before_start():
    emitted = []
    token = CancelToken()
    token.cancel("stop")

    with pytest.raises(Cancelled):
        await drain_messages(MESSAGES, emitted.append, token)
    assert emitted == []


# TEST220: Test cancellation interrupts a slow pull
@pytest.mark.asyncio
async def test_drain_cancel_during_pull():
    emitted = []
    token = CancelToken()

    async def slow_source():
        yield {"text": "first"}
        await asyncio.sleep(60)
        yield {"text": "never"}

    async def fire():
        await asyncio.sleep(0.05)
        token.cancel("caller gave up")

    asyncio.ensure_future(fire())
    with pytest.raises(Cancelled) as exc_info:
        await asyncio.wait_for(drain_messages(slow_source(), emitted.append, token), timeout=5)

    assert exc_info.value.reason == "caller gave up"
    assert emitted == [{"type": "assistant_message", "text": "first"}]


# TEST221: Test cancellation interrupts a slow emit
@pytest.mark.asyncio
async def test_drain_cancel_during_emit():
    token = CancelToken()

    async def blocked_emit(event):
        token.cancel("emit stalled")
        await asyncio.sleep(60)

    with pytest.raises(Cancelled):
        await asyncio.wait_for(drain_messages(MESSAGES, blocked_emit, token), timeout=5)


# TEST222: Test an empty source emits nothing
@pytest.mark.asyncio
async def test_drain_empty():
    assert await drain_messages([], lambda e: None) == 0
    assert await drain_messages(agen([]), lambda e: None) == 0


# TEST223: Test cancellation interrupts a sync source blocked inside next()
@pytest.mark.asyncio
async def test_drain_cancel_blocking_sync_source():
    token = CancelToken()
    release = threading.Event()

    def blocking_source():
        yield {"text": "first"}
        release.wait(10)
        yield {"text": "late"}

    async def fire():
        await asyncio.sleep(0.05)
        token.cancel("backend stalled")

    emitted = []
    asyncio.ensure_future(fire())
    try:
        with pytest.raises(Cancelled) as exc_info:
            await asyncio.wait_for(drain_messages(blocking_source(), emitted.append, token), timeout=5)
    finally:
        release.set()

    assert exc_info.value.reason == "backend stalled"
    assert emitted == [{"type": "assistant_message", "text": "first"}]
