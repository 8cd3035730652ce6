"""Client registry - backend SDK clients kept alive across runs

Creating a backend client can be expensive (a login, a warm subprocess), so a
sidecar may reuse one client for every run that maps to the same key. The
registry is an explicit object owned by the adapter:

- insertion happens on first use of a key (get_or_create)
- a client that failed in use is discarded and torn down
- every remaining client is torn down on shutdown (close_all)

Teardown calls the client's `disconnect()` or, failing that, `close()`, and
awaits the result when it is awaitable.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Union[Any, Awaitable[Any]]]


async def close_client(client: Any) -> None:
    """Tear down one client via disconnect() or close(), sync or async"""
    closer = getattr(client, "disconnect", None) or getattr(client, "close", None)
    if not callable(closer):
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


class ClientRegistry:
    """Backend clients by string key"""

    def __init__(self):
        self._clients: Dict[str, Any] = {}
        self._creating: Dict[str, asyncio.Lock] = {}

    async def get_or_create(self, key: str, factory: ClientFactory) -> Any:
        """Return the client for key, creating it with factory on first use

        The factory may be sync or async. A factory error propagates and
        nothing is stored. Concurrent callers for the same key share one
        factory call.
        """
        if key in self._clients:
            return self._clients[key]
        async with self._creating.setdefault(key, asyncio.Lock()):
            if key in self._clients:
                return self._clients[key]
            client = factory()
            if inspect.isawaitable(client):
                client = await client
            self._clients[key] = client
        logger.debug("created backend client for %s", key)
        return client

    def lookup(self, key: str) -> Optional[Any]:
        return self._clients.get(key)

    def keys(self) -> List[str]:
        return list(self._clients)

    def __contains__(self, key: str) -> bool:
        return key in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    async def discard(self, key: str) -> bool:
        """Remove and tear down the client for key; True if one was registered"""
        client = self._clients.pop(key, None)
        if client is None:
            return False
        await close_client(client)
        logger.debug("discarded backend client for %s", key)
        return True

    async def close_all(self) -> None:
        """Tear down every client

        All clients are attempted; the first teardown error is re-raised once
        the registry is empty.
        """
        first_error: Optional[BaseException] = None
        for key in list(self._clients):
            client = self._clients.pop(key)
            try:
                await close_client(client)
            except Exception as e:
                logger.warning("closing backend client %s failed: %s", key, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    async def __aenter__(self) -> "ClientRegistry":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_all()
