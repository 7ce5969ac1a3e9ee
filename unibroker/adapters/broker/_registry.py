"""Per-adapter topic registry.

Maps each topic to its lazily created backend handle and to the one callback
currently receiving its messages.
"""

from collections import Counter
from contextlib import asynccontextmanager

import asyncio
import typing as t

from ._base import ListenerFunc

__all__ = ["TopicRegistry"]

H = t.TypeVar("H")


class TopicRegistry(t.Generic[H]):
    """Topic -> handle and topic -> callback maps for one adapter instance.

    Handle creation is single-winner: the first caller for a topic runs the
    factory, concurrent callers for the same topic await that same creation
    and receive the same handle. A failed creation is not cached, so the next
    caller starts a fresh attempt.
    """

    def __init__(self) -> None:
        self._handles: dict[str, H] = {}
        self._pending: dict[str, asyncio.Future[H]] = {}
        self._callbacks: dict[str, ListenerFunc] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    def __contains__(self, topic: object) -> bool:
        return topic in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def topics(self) -> list[str]:
        return list(self._handles)

    def handles(self) -> list[H]:
        return list(self._handles.values())

    def get(self, topic: str) -> H | None:
        return self._handles.get(topic)

    @asynccontextmanager
    async def lock(self, topic: str) -> t.AsyncIterator[None]:
        """Serialize subscribe/unsubscribe calls on one topic.

        The lock only lives while some caller holds or awaits it.
        """
        lock = self._locks.setdefault(topic, asyncio.Lock())
        self._lock_users[topic] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[topic] -= 1
            if self._lock_users[topic] <= 0:
                del self._lock_users[topic]
                self._locks.pop(topic, None)

    async def acquire(
        self,
        topic: str,
        factory: t.Callable[[], t.Awaitable[H]],
    ) -> H:
        handle = self._handles.get(topic)
        if handle is not None:
            return handle

        creation = self._pending.get(topic)
        if creation is None:
            creation = asyncio.ensure_future(factory())
            self._pending[topic] = creation
            creation.add_done_callback(lambda fut: self._settle(topic, fut))

        return await asyncio.shield(creation)

    def _settle(self, topic: str, creation: asyncio.Future[H]) -> None:
        if self._pending.get(topic) is not creation:
            return
        del self._pending[topic]
        if not creation.cancelled() and creation.exception() is None:
            self._handles[topic] = creation.result()

    def add(self, topic: str, handle: H) -> None:
        self._handles[topic] = handle

    def pop(self, topic: str) -> H | None:
        self._callbacks.pop(topic, None)
        return self._handles.pop(topic, None)

    def set_callback(self, topic: str, callback: ListenerFunc) -> ListenerFunc | None:
        """Register ``callback`` for ``topic``, returning the one it replaced."""
        previous = self._callbacks.get(topic)
        self._callbacks[topic] = callback
        return previous

    def remove_callback(self, topic: str) -> ListenerFunc | None:
        return self._callbacks.pop(topic, None)

    def callback(self, topic: str) -> ListenerFunc | None:
        return self._callbacks.get(topic)

    def callbacks(self) -> dict[str, ListenerFunc]:
        return dict(self._callbacks)

    def drop_handles(self) -> list[H]:
        """Forget every cached handle, keeping the registered callbacks."""
        handles = list(self._handles.values())
        self._pending.clear()
        self._handles.clear()
        return handles

    def clear(self) -> list[H]:
        """Drop every entry and return the handles that were cached."""
        self._callbacks.clear()
        return self.drop_handles()
