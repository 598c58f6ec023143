from __future__ import annotations

import logging
from typing import Callable, List, Set

from .backend import INSERT, Backend
from .errors import BackendError
from .feed import ChangeEvent
from .notices import NoticeBoard
from .rows import ARCHIVED_CONVERSATIONS, ArchivedConversation, Message
from .scope import Scope, ScopeClosed

logger = logging.getLogger(__name__)

ARCHIVE_CONFLICT_KEY = ("user_id", "archived_user_id")
RELEASED_TITLE = "Message from archived chat"
RELEASED_DESCRIPTION = "The conversation has been moved to your inbox."


class NotStarted(RuntimeError):
    pass


class ArchiveCoordinator:
    """Tracks archived counterparts and releases them when they write again."""

    def __init__(
        self,
        backend: Backend,
        notices: NoticeBoard,
        *,
        on_released: Callable[[str], None] | None = None,
    ) -> None:
        self._backend = backend
        self._notices = notices
        self._on_released = on_released
        self._self_id: str | None = None
        self._scope: Scope | None = None
        self._archived: Set[str] = set()
        self._releasing: Set[str] = set()

    @property
    def archived_ids(self) -> List[str]:
        return sorted(self._archived)

    def is_archived(self, counterpart_id: str) -> bool:
        return counterpart_id in self._archived

    async def start(self, self_id: str) -> None:
        if self._scope is not None and self._self_id == self_id:
            return
        await self.stop()
        scope = Scope(self._backend, f"archive:{self_id}")
        self._scope = scope
        self._self_id = self_id
        try:
            await scope.subscribe(Message, {"recipient_id": self_id}, self._on_inbound, kinds=(INSERT,))
            await scope.subscribe(
                ArchivedConversation,
                {"user_id": self_id},
                lambda _event: scope.spawn(self._reload(scope, self_id), name=f"archive-reload:{self_id}"),
            )
        except ScopeClosed:
            return
        await self._reload(scope, self_id)

    async def stop(self) -> None:
        scope, self._scope = self._scope, None
        self._self_id = None
        self._archived = set()
        self._releasing = set()
        if scope is not None:
            await scope.close()

    async def settle(self) -> None:
        if self._scope is not None:
            await self._scope.join()

    def _require_started(self) -> tuple[Scope, str]:
        if self._scope is None or self._self_id is None:
            raise NotStarted("archive coordinator has no signed-in user")
        return self._scope, self._self_id

    async def reload(self) -> List[str]:
        scope, self_id = self._require_started()
        await self._reload(scope, self_id)
        return self.archived_ids

    async def _reload(self, scope: Scope, self_id: str) -> None:
        rows = await self._backend.query(ARCHIVED_CONVERSATIONS, {"user_id": self_id})
        if scope.closed:
            return
        self._archived = {row["archived_user_id"] for row in rows} - self._releasing

    async def archive(self, counterpart_id: str) -> None:
        scope, self_id = self._require_started()
        if counterpart_id in self._archived:
            return
        try:
            await self._backend.upsert(
                ARCHIVED_CONVERSATIONS,
                {"user_id": self_id, "archived_user_id": counterpart_id},
                ARCHIVE_CONFLICT_KEY,
            )
        except BackendError as exc:
            logger.error("archive %s -> %s failed: %s", self_id, counterpart_id, exc)
            if not scope.closed:
                self._notices.error("Could not archive conversation", exc)
            raise
        if not scope.closed:
            self._archived.add(counterpart_id)

    async def unarchive(self, counterpart_id: str) -> None:
        scope, self_id = self._require_started()
        try:
            await self._backend.delete(
                ARCHIVED_CONVERSATIONS, {"user_id": self_id, "archived_user_id": counterpart_id}
            )
        except BackendError as exc:
            logger.error("unarchive %s -> %s failed: %s", self_id, counterpart_id, exc)
            if not scope.closed:
                self._notices.error("Could not unarchive conversation", exc)
            raise
        if not scope.closed:
            self._archived.discard(counterpart_id)

    def _on_inbound(self, event: ChangeEvent[Message]) -> None:
        scope, self_id = self._scope, self._self_id
        message = event.row
        if scope is None or self_id is None or message is None or message.recipient_id != self_id:
            return
        sender_id = message.sender_id
        if sender_id not in self._archived or sender_id in self._releasing:
            return
        # Membership flips before the delete is issued so a burst of messages releases once.
        self._archived.discard(sender_id)
        self._releasing.add(sender_id)
        scope.spawn(self._release(scope, self_id, sender_id), name=f"archive-release:{sender_id}")

    async def _release(self, scope: Scope, self_id: str, sender_id: str) -> None:
        try:
            removed = await self._backend.delete(
                ARCHIVED_CONVERSATIONS, {"user_id": self_id, "archived_user_id": sender_id}
            )
        except BackendError as exc:
            self._releasing.discard(sender_id)
            logger.error("auto-unarchive %s -> %s failed: %s", self_id, sender_id, exc)
            if not scope.closed:
                self._archived.add(sender_id)
                self._notices.error("Could not move conversation to inbox", exc)
            return
        self._releasing.discard(sender_id)
        if scope.closed:
            return
        if not removed:
            logger.debug("archive row %s -> %s already gone", self_id, sender_id)
            return
        self._notices.show(RELEASED_TITLE, RELEASED_DESCRIPTION)
        if self._on_released is not None:
            self._on_released(sender_id)
