"""Interface of the hosted backend collaborator the messaging core consumes."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .filters import Where

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
CHANGE_KINDS = (INSERT, UPDATE, DELETE)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
PASSWORD_RECOVERY = "PASSWORD_RECOVERY"
USER_UPDATED = "USER_UPDATED"

Row = Dict[str, Any]


@dataclass(frozen=True)
class RowChange:
    """A raw row-change event as pushed by the backend change feed."""

    kind: str
    table: str
    record: Optional[Row]
    old_record: Optional[Row] = None


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthSession:
    user: AuthUser
    access_token: str


ChangeHandler = Callable[[RowChange], None]
SessionHandler = Callable[[str, Optional[AuthSession]], None]


@dataclass
class SubscriptionHandle:
    sub_id: str
    table: str
    filter: Dict[str, Any]
    active: bool = True


class Backend(abc.ABC):
    """Row CRUD, change feed, blob storage and identity, all asynchronous."""

    @abc.abstractmethod
    async def query(
        self,
        table: str,
        where: Where = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[Row]: ...

    @abc.abstractmethod
    async def insert(self, table: str, row: Row) -> Row: ...

    @abc.abstractmethod
    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row: ...

    @abc.abstractmethod
    async def update(self, table: str, where: Where, patch: Row) -> List[Row]: ...

    @abc.abstractmethod
    async def delete(self, table: str, where: Where) -> List[Row]: ...

    @abc.abstractmethod
    async def subscribe(self, table: str, where: Where, handler: ChangeHandler) -> SubscriptionHandle: ...

    @abc.abstractmethod
    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...

    @abc.abstractmethod
    async def current_session(self) -> AuthSession | None: ...

    @abc.abstractmethod
    def on_session_change(self, handler: SessionHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable removes it."""

    @abc.abstractmethod
    async def upload_blob(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str: ...


class SessionListeners:
    """Small registry shared by backends for session-change handlers."""

    def __init__(self) -> None:
        self._handlers: List[SessionHandler] = []

    def add(self, handler: SessionHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def remove() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                return

        return remove

    def emit(self, event: str, session: AuthSession | None) -> None:
        for handler in list(self._handlers):
            handler(event, session)
