"""Live remote subscriptions, at most one per (entity type, scope)."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SubscriptionKey = tuple[str, str]


class SubscriptionRegistry:
    """Owns the sync tasks of one session.

    Starting a subscription whose scope is already live is a no-op; a
    finished one is replaced. Observers hold a subscription through
    ``held()`` and the last one to leave stops it. ``close()`` cancels
    everything.
    """

    def __init__(self):
        self._tasks: dict[SubscriptionKey, asyncio.Task] = {}
        self._observers: dict[SubscriptionKey, int] = {}

    def is_active(self, key: SubscriptionKey) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def start(self, key: SubscriptionKey, factory: Callable[[], Coroutine]) -> asyncio.Task:
        """Start the subscription for key unless one is already running."""
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(factory(), name=f"sync:{key[0]}:{key[1]}")
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._finished(key, t))
        logger.info(f"Subscription {key[0]}/{key[1]} started")
        return task

    @asynccontextmanager
    async def held(
        self, key: SubscriptionKey, factory: Callable[[], Coroutine]
    ) -> AsyncIterator[asyncio.Task]:
        """Start (or join) the subscription for key for as long as the block runs."""
        self._observers[key] = self._observers.get(key, 0) + 1
        try:
            yield self.start(key, factory)
        finally:
            remaining = self._observers.pop(key, 1) - 1
            if remaining > 0:
                self._observers[key] = remaining
            else:
                logger.debug(f"Last observer of {key[0]}/{key[1]} left")
                await self.stop(key)

    def _finished(self, key: SubscriptionKey, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            logger.info(f"Subscription {key[0]}/{key[1]} cancelled")
        elif task.exception() is not None:
            logger.error(f"Subscription {key[0]}/{key[1]} failed: {task.exception()!r}")
        else:
            logger.info(f"Subscription {key[0]}/{key[1]} ended")

    async def stop(self, key: SubscriptionKey) -> None:
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._observers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())


async def follow(stream: AsyncIterator[T], subscription: asyncio.Task) -> AsyncIterator[T]:
    """Relay a local stream for as long as its remote subscription lives.

    Ends quietly when the subscription ends or is cancelled; re-raises the
    subscription's error when it fails. The local stream is closed on every
    exit path.
    """
    next_item: asyncio.Future | None = None
    try:
        while True:
            next_item = asyncio.ensure_future(stream.__anext__())
            await asyncio.wait({next_item, subscription}, return_when=asyncio.FIRST_COMPLETED)
            if next_item.done():
                try:
                    item = next_item.result()
                except StopAsyncIteration:
                    return
                yield item
                continue

            if subscription.cancelled():
                return
            error = subscription.exception()
            if error is not None:
                raise error
            return
    finally:
        if next_item is not None and not next_item.done():
            next_item.cancel()
            await asyncio.gather(next_item, return_exceptions=True)
        await stream.aclose()
