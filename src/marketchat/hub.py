from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from .backend import DELETE, RowChange

Callback = Callable[[RowChange], None]


@dataclass
class Subscription:
    sub_id: str
    table: str
    filter: Dict[str, Any]
    callback: Callback

    def accepts(self, change: RowChange) -> bool:
        row = change.old_record if change.kind == DELETE else change.record
        if row is None:
            return False
        return all(row.get(column) == value for column, value in self.filter.items())

    def deliver(self, change: RowChange) -> None:
        self.callback(change)


class SubscriptionHub:
    """Registers row-change subscriptions and fans events out to matching listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, table: str, filter: Dict[str, Any], callback: Callback) -> Subscription:
        subscription = Subscription(
            sub_id=f"sub_{next(self._ids)}", table=table, filter=dict(filter), callback=callback
        )
        self._subscriptions.setdefault(table, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.table)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.table, None)

    def broadcast(self, change: RowChange) -> None:
        for subscription in list(self._subscriptions.get(change.table, [])):
            if subscription.accepts(change):
                subscription.deliver(change)

    def count(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(subs) for subs in self._subscriptions.values())
