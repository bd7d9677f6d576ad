"""Per-key de-duplication of in-flight async work."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any


class SingleFlight:
    """Ensures at most one in-flight call per key; concurrent callers share it.

    Entries are removed as soon as their call finishes, so the map only ever
    holds work that is still running.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def begin(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Return the running call for ``key``, starting ``factory()`` if there is none."""
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            self._inflight[key] = future
            future.add_done_callback(lambda done: self.complete(key, done))
        return future

    async def wait(self, key: str) -> Any:
        future = self._inflight.get(key)
        if future is None:
            return None
        # shield: one waiter being cancelled must not cancel the shared call
        return await asyncio.shield(future)

    def complete(self, key: str, future: asyncio.Future | None = None) -> None:
        """Forget ``key``. With ``future``, only if it is still the registered one."""
        if future is None or self._inflight.get(key) is future:
            self._inflight.pop(key, None)

    async def do(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        future = self.begin(key, factory)
        return await asyncio.shield(future)
