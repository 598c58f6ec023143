"""Typed change-feed events parsed at the subscription boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Optional, Type, TypeVar

from .backend import CHANGE_KINDS, DELETE, INSERT, UPDATE, Backend, RowChange, SubscriptionHandle
from .errors import RowError
from .filters import Where

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ChangeEvent(Generic[T]):
    kind: str
    table: str
    row: Optional[T]
    old: Optional[T] = None

    @property
    def is_insert(self) -> bool:
        return self.kind == INSERT

    @property
    def is_update(self) -> bool:
        return self.kind == UPDATE

    @property
    def is_delete(self) -> bool:
        return self.kind == DELETE

    @property
    def current(self) -> T:
        """The row after the change, or the removed row for deletes."""

        value = self.old if self.kind == DELETE else self.row
        assert value is not None
        return value


def parse_change(change: RowChange, row_type: Type[Any]) -> ChangeEvent[Any]:
    if change.kind not in CHANGE_KINDS:
        raise RowError(f"unknown change kind: {change.kind!r}")
    if change.kind == DELETE:
        if change.old_record is None:
            raise RowError("delete event without old record")
        return ChangeEvent(kind=change.kind, table=change.table, row=None, old=row_type.from_row(change.old_record))
    if change.record is None:
        raise RowError(f"{change.kind.lower()} event without record")
    row = row_type.from_row(change.record)
    old = None
    if change.old_record:
        # Old images may carry only the primary key.
        try:
            old = row_type.from_row(change.old_record)
        except RowError:
            old = None
    return ChangeEvent(kind=change.kind, table=change.table, row=row, old=old)


Handler = Callable[[ChangeEvent[Any]], None]


class ChangeFeed:
    """Subscribes typed handlers to the backend's row-change stream."""

    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    async def subscribe(
        self,
        row_type: Type[Any],
        where: Where,
        handler: Handler,
        kinds: Iterable[str] = CHANGE_KINDS,
    ) -> SubscriptionHandle:
        wanted = frozenset(kinds)
        table = row_type.table

        def on_change(change: RowChange) -> None:
            if change.kind not in wanted or change.table != table:
                return
            try:
                event = parse_change(change, row_type)
            except RowError as exc:
                logger.warning("dropping malformed %s event on %s: %s", change.kind, table, exc)
                return
            handler(event)

        return await self._backend.subscribe(table, where, on_change)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self._backend.unsubscribe(handle)
