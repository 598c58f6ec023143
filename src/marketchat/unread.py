from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List

from .backend import Backend
from .config import DEFAULT_RECONCILE_INTERVAL_SECONDS
from .errors import BackendError
from .rows import MESSAGES, Message
from .scope import Scope, ScopeClosed

logger = logging.getLogger(__name__)

CountsListener = Callable[[Dict[str, int], int], None]


def count_by_sender(rows: List[dict]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for row in rows:
        sender_id = row.get("sender_id")
        if sender_id:
            counts[sender_id] = counts.get(sender_id, 0) + 1
    return counts


class UnreadAggregator:
    """Per-counterpart unread counts for the signed-in user.

    Every change-feed event on messages addressed to the user triggers a full
    recount; triggers that arrive while a recount is in flight collapse into a
    single follow-up recount. A periodic recount acts as a safety net for
    missed events.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        reconcile_interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS,
    ) -> None:
        self._backend = backend
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self._self_id: str | None = None
        self._scope: Scope | None = None
        self._counts: Dict[str, int] = {}
        self._listeners: List[CountsListener] = []
        self._recount_task: asyncio.Task | None = None
        self._dirty = False
        self._started_generation = 0
        self._applied_generation = 0
        self._sweeper_task: asyncio.Task | None = None

    @property
    def self_id(self) -> str | None:
        return self._self_id

    @property
    def unread_counts(self) -> Dict[str, int]:
        return dict(self._counts)

    @property
    def total_unread_count(self) -> int:
        return sum(self._counts.values())

    def add_listener(self, listener: CountsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self, self_id: str) -> None:
        if self._scope is not None and self._self_id == self_id:
            return
        await self.stop()
        scope = Scope(self._backend, f"unread:{self_id}")
        self._scope = scope
        self._self_id = self_id
        try:
            await scope.subscribe(Message, {"recipient_id": self_id}, lambda _event: self.invalidate())
        except ScopeClosed:
            return
        if self.reconcile_interval_seconds > 0:
            self._sweeper_task = asyncio.create_task(self._sweep(scope))
        await self._recount_once(scope, self_id)

    async def stop(self) -> None:
        scope, self._scope = self._scope, None
        self._self_id = None
        self._counts = {}
        self._recount_task = None
        self._dirty = False
        sweeper, self._sweeper_task = self._sweeper_task, None
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        if scope is not None:
            await scope.close()

    async def _sweep(self, scope: Scope) -> None:
        try:
            while not scope.closed:
                await asyncio.sleep(self.reconcile_interval_seconds)
                self.invalidate()
        except asyncio.CancelledError:
            return

    def invalidate(self) -> None:
        """Schedule a recount; a no-op while no user is resolved."""

        scope, self_id = self._scope, self._self_id
        if scope is None or scope.closed or self_id is None:
            return
        if self._recount_task is not None and not self._recount_task.done():
            self._dirty = True
            return
        self._recount_task = scope.spawn(self._recount_until_clean(scope, self_id), name=f"recount:{self_id}")

    async def _recount_until_clean(self, scope: Scope, self_id: str) -> None:
        while not scope.closed:
            self._dirty = False
            try:
                await self._recount_once(scope, self_id)
            except BackendError as exc:
                logger.error("unread recount failed for %s: %s", self_id, exc)
            if not self._dirty:
                return

    async def recount(self) -> Dict[str, int]:
        """Run a recount now and return the resulting counts; errors propagate."""

        scope, self_id = self._scope, self._self_id
        if scope is None or self_id is None:
            return {}
        await self._recount_once(scope, self_id)
        return self.unread_counts

    async def _recount_once(self, scope: Scope, self_id: str) -> None:
        self._started_generation += 1
        generation = self._started_generation
        rows = await self._backend.query(MESSAGES, {"recipient_id": self_id, "is_read": False})
        if scope.closed or generation <= self._applied_generation:
            return
        self._applied_generation = generation
        self._counts = count_by_sender(rows)
        counts, total = self.unread_counts, self.total_unread_count
        logger.debug("unread counts for %s: %s", self_id, counts)
        for listener in list(self._listeners):
            listener(counts, total)

    async def settle(self) -> None:
        """Wait for scheduled recounts to finish."""

        if self._scope is not None:
            await self._scope.join()
