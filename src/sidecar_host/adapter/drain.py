"""Drain a backend's message stream into protocol events

One run, one logical task: pull the next backend message, classify it, push
the mapped event. Both the pull and the push are raced against a CancelToken,
so a cancelled run stops at the next suspension point instead of waiting for
a slow backend.
"""

import asyncio
import inspect
import logging
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, Iterable, Optional, Sequence, Union

from sidecar_host.adapter.classify import DEFAULT_RULES, ClassificationRule, Unclassified, classify
from sidecar_host.cancel import CancelToken

logger = logging.getLogger(__name__)

MessageSource = Union[AsyncIterable[Any], Iterable[Any]]
EmitFn = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

_EXHAUSTED = object()


async def _race(awaitable: Awaitable[Any], cancel: Optional[CancelToken]) -> Any:
    if cancel is None:
        return await awaitable
    if cancel.is_cancelled():
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise cancel.error()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if cancel.is_cancelled():
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
        raise cancel.error()
    return work.result()


async def _next_async(iterator) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def _next_sync(iterator) -> Any:
    # A sync source may block; keep it off the event loop
    return await asyncio.to_thread(next, iterator, _EXHAUSTED)


async def _emit(emit: EmitFn, event: Dict[str, Any]) -> None:
    result = emit(event)
    if inspect.isawaitable(result):
        await result


async def drain_messages(
    source: MessageSource,
    emit: EmitFn,
    cancel: Optional[CancelToken] = None,
    rules: Sequence[ClassificationRule] = DEFAULT_RULES,
    include_unclassified: bool = False,
) -> int:
    """Forward every message from source through emit as an event payload

    Args:
        source: Finite message stream, async or sync; consumed once. A sync
            source is pulled in a worker thread. On cancellation a pull that
            is already blocked is abandoned to finish in that thread.
        emit: Receives each event payload; may be sync or async
        cancel: Token checked at every pull and push
        rules: Classification rules, in priority order
        include_unclassified: Also emit messages no rule matched

    Returns:
        Number of events emitted

    Raises:
        Cancelled: If the token fired before the stream ended
    """
    if hasattr(source, "__aiter__"):
        iterator = source.__aiter__()
        pull = _next_async
    else:
        iterator = iter(source)
        pull = _next_sync

    emitted = 0
    while True:
        message = await _race(pull(iterator), cancel)
        if message is _EXHAUSTED:
            break

        classified = classify(message, rules)
        if isinstance(classified, Unclassified) and not include_unclassified:
            logger.debug("dropping unclassified backend message")
            continue

        await _race(_emit(emit, classified.to_event_payload()), cancel)
        emitted += 1

    return emitted
