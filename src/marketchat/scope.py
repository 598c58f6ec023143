from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Iterable, List, Set, Type

from .backend import CHANGE_KINDS, Backend, SubscriptionHandle
from .feed import ChangeFeed, Handler
from .filters import Where

logger = logging.getLogger(__name__)


class ScopeClosed(RuntimeError):
    pass


class Scope:
    """Lifetime of one keyed component: its subscriptions and in-flight tasks.

    Every subscription taken through the scope is released by :meth:`close`,
    and every continuation checks :attr:`closed` before touching state.
    """

    def __init__(self, backend: Backend, name: str) -> None:
        self.name = name
        self._backend = backend
        self._feed = ChangeFeed(backend)
        self._handles: List[SubscriptionHandle] = []
        self._tasks: Set[asyncio.Task] = set()
        self.closed = False

    async def subscribe(
        self,
        row_type: Type[Any],
        where: Where,
        handler: Handler,
        kinds: Iterable[str] = CHANGE_KINDS,
    ) -> SubscriptionHandle:
        if self.closed:
            raise ScopeClosed(f"{self.name} is closed")

        def guarded(event) -> None:
            if not self.closed:
                handler(event)

        handle = await self._feed.subscribe(row_type, where, guarded, kinds)
        if self.closed:
            await self._feed.unsubscribe(handle)
            raise ScopeClosed(f"{self.name} closed during subscribe")
        self._handles.append(handle)
        return handle

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task | None:
        if self.closed:
            coro.close()
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ScopeClosed):
            logger.error("%s: task %s failed", self.name, task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until no spawned task is left, including ones spawned meanwhile."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        handles, self._handles = self._handles, []
        for handle in handles:
            try:
                await self._feed.unsubscribe(handle)
            except Exception:
                logger.exception("%s: failed to release subscription %s", self.name, handle.sub_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
