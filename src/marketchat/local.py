"""In-process backend over a shared datastore (in-memory or SQLite)."""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Callable, Dict, List, Optional, Sequence

from .backend import (
    DELETE,
    INSERT,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    UPDATE,
    AuthSession,
    AuthUser,
    Backend,
    ChangeHandler,
    Row,
    RowChange,
    SessionHandler,
    SessionListeners,
    SubscriptionHandle,
)
from .errors import InvalidRequest
from .filters import Where, equality_filter, normalize_where
from .hub import Subscription, SubscriptionHub
from .schema import schema_for
from .sqlite_tables import SQLiteTables
from .tables import InMemoryTables

logger = logging.getLogger(__name__)

DEFAULT_PUBLIC_URL_BASE = "memory://storage"


class Datastore:
    """Tables, change hub, blob storage and row policy shared by every client."""

    def __init__(self, tables, *, policy=None, public_url_base: str = DEFAULT_PUBLIC_URL_BASE) -> None:
        self.tables = tables
        self.hub = SubscriptionHub()
        self.policy = policy
        self.public_url_base = public_url_base

    @classmethod
    def in_memory(cls, *, policy=None, public_url_base: str = DEFAULT_PUBLIC_URL_BASE) -> "Datastore":
        return cls(InMemoryTables(), policy=policy, public_url_base=public_url_base)

    @classmethod
    def sqlite(cls, db_path: str, *, policy=None, public_url_base: str = DEFAULT_PUBLIC_URL_BASE) -> "Datastore":
        return cls(SQLiteTables(db_path), policy=policy, public_url_base=public_url_base)

    def close(self) -> None:
        self.tables.close()

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_url_base.rstrip('/')}/{bucket}/{path}"

    def query(
        self,
        table: str,
        where: Where = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[Row]:
        return self.tables.select(table, normalize_where(where), order_by, descending, limit)

    def insert(self, actor_id: Optional[str], table: str, row: Row) -> Row:
        self._check("insert", table, actor_id, None, schema_for(table).prepare_insert(row))
        stored = self.tables.insert(table, row)
        self.hub.broadcast(RowChange(INSERT, table, stored))
        return stored

    def upsert(self, actor_id: Optional[str], table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        self._check("insert", table, actor_id, None, schema_for(table).prepare_insert(row))
        stored, created = self.tables.upsert(table, row, on_conflict)
        if created:
            self.hub.broadcast(RowChange(INSERT, table, stored))
        return stored

    def update(self, actor_id: Optional[str], table: str, where: Where, patch: Row) -> List[Row]:
        conditions = normalize_where(where)
        if self.policy is not None:
            prepared = schema_for(table).prepare_patch(patch)
            for old in self.tables.select(table, conditions):
                self._check("update", table, actor_id, old, {**old, **prepared})
        changes = self.tables.update(table, conditions, patch)
        for old, new in changes:
            self.hub.broadcast(RowChange(UPDATE, table, new, old))
        return [new for _, new in changes]

    def delete(self, actor_id: Optional[str], table: str, where: Where) -> List[Row]:
        conditions = normalize_where(where)
        if self.policy is not None:
            for old in self.tables.select(table, conditions):
                self._check("delete", table, actor_id, old, None)
        removed = self.tables.delete(table, conditions)
        for old in removed:
            self.hub.broadcast(RowChange(DELETE, table, None, old))
        return removed

    def put_blob(
        self, actor_id: Optional[str], bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str:
        if not bucket or not path or path.startswith("/") or ".." in path.split("/"):
            raise InvalidRequest("invalid storage path")
        if self.policy is not None and actor_id is None:
            self._check("upload", bucket, actor_id, None, None)
        self.tables.put_blob(bucket, path, data, content_type)
        return self.public_url(bucket, path)

    def get_blob(self, bucket: str, path: str):
        return self.tables.get_blob(bucket, path)

    def _check(self, action: str, table: str, actor_id: Optional[str], old: Optional[Row], new: Optional[Row]) -> None:
        if self.policy is None:
            return
        self.policy.check(action, table, actor_id, old, new, self.tables)


class LocalBackend(Backend):
    """One client's view of a :class:`Datastore`.

    Change events are delivered on a later loop iteration, in emission order,
    the way a network push would arrive. Several ``LocalBackend`` instances
    over the same datastore behave like several signed-in browsers.
    """

    def __init__(self, datastore: Datastore) -> None:
        self.datastore = datastore
        self._session: AuthSession | None = None
        self._listeners = SessionListeners()
        self._subscriptions: Dict[str, tuple[SubscriptionHandle, Subscription]] = {}

    @property
    def actor_id(self) -> str | None:
        return self._session.user.id if self._session is not None else None

    async def query(
        self,
        table: str,
        where: Where = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[Row]:
        return self.datastore.query(table, where, order_by=order_by, descending=descending, limit=limit)

    async def insert(self, table: str, row: Row) -> Row:
        return self.datastore.insert(self.actor_id, table, row)

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        return self.datastore.upsert(self.actor_id, table, row, on_conflict)

    async def update(self, table: str, where: Where, patch: Row) -> List[Row]:
        return self.datastore.update(self.actor_id, table, where, patch)

    async def delete(self, table: str, where: Where) -> List[Row]:
        return self.datastore.delete(self.actor_id, table, where)

    async def subscribe(self, table: str, where: Where, handler: ChangeHandler) -> SubscriptionHandle:
        schema_for(table)
        filter = equality_filter(where)
        loop = asyncio.get_running_loop()
        handle: SubscriptionHandle | None = None

        def deliver(change: RowChange) -> None:
            if handle is not None and handle.active:
                handler(change)

        def enqueue(change: RowChange) -> None:
            loop.call_soon(deliver, change)

        subscription = self.datastore.hub.subscribe(table, filter, enqueue)
        handle = SubscriptionHandle(sub_id=subscription.sub_id, table=table, filter=filter)
        self._subscriptions[handle.sub_id] = (handle, subscription)
        logger.debug("subscribed %s to %s %s", handle.sub_id, table, filter)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.active = False
        entry = self._subscriptions.pop(handle.sub_id, None)
        if entry is not None:
            self.datastore.hub.unsubscribe(entry[1])
            logger.debug("unsubscribed %s", handle.sub_id)

    async def current_session(self) -> AuthSession | None:
        return self._session

    def on_session_change(self, handler: SessionHandler) -> Callable[[], None]:
        return self._listeners.add(handler)

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str | None = None) -> str:
        return self.datastore.put_blob(self.actor_id, bucket, path, data, content_type)

    def sign_in(self, user: AuthUser) -> AuthSession:
        self._session = AuthSession(user=user, access_token=f"at_{secrets.token_urlsafe(16)}")
        self._listeners.emit(SIGNED_IN, self._session)
        return self._session

    def sign_out(self) -> None:
        self._session = None
        self._listeners.emit(SIGNED_OUT, None)

    def emit_session_event(self, event: str = TOKEN_REFRESHED) -> None:
        self._listeners.emit(event, self._session)

    async def close(self) -> None:
        for handle, _ in list(self._subscriptions.values()):
            await self.unsubscribe(handle)

    def subscription_count(self) -> int:
        return len(self._subscriptions)

