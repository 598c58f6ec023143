from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Set

from .archive import ArchiveCoordinator
from .backend import Backend
from .config import SyncConfig
from .conversation import ConversationStore
from .errors import PermissionDenied
from .market import CatalogService, RatingService
from .notices import NoticeBoard
from .notifications import NotificationBridge, NotificationPlatform
from .profiles import ProfileService
from .rows import MESSAGES, Message, utcnow
from .session import SessionContext
from .storage import Attachment
from .unread import UnreadAggregator

logger = logging.getLogger(__name__)

SETTLE_ROUNDS = 10


@dataclass
class Inbox:
    inbox: List[str] = field(default_factory=list)
    archived: List[str] = field(default_factory=list)


class MessagingClient:
    """Wires session, unread counts, archive state and notifications to one backend.

    Messaging components run only while a user with a loaded, unrestricted
    profile is signed in. When the user changes, every component is torn
    down before it is started for the new user.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        config: SyncConfig | None = None,
        platform: NotificationPlatform | None = None,
        notices: NoticeBoard | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.config = config or SyncConfig()
        self.notices = notices or NoticeBoard()
        self.session = SessionContext(backend, clock=clock)
        self.unread = UnreadAggregator(backend, reconcile_interval_seconds=self.config.reconcile_interval_seconds)
        self.notifications = NotificationBridge(platform)
        self.unread.add_listener(self.notifications.on_counts)
        self.archive = ArchiveCoordinator(backend, self.notices, on_released=self._on_released)
        self.profiles = ProfileService(backend, self.session, self.config)
        self.catalog = CatalogService(backend, self.session)
        self.ratings = RatingService(backend, self.session, self.config)
        self.conversation: ConversationStore | None = None
        self._active_user: str | None = None
        self._sync_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._remove_session_listener: Callable[[], None] | None = None
        self._closed = False

    @property
    def active_user(self) -> str | None:
        return self._active_user

    async def start(self) -> None:
        if self._remove_session_listener is None:
            self._remove_session_listener = self.session.add_listener(self._on_session)
        await self.session.start()
        await self._sync()

    def _on_session(self, _session: SessionContext) -> None:
        if self._closed:
            return
        task = asyncio.create_task(self._sync(), name="client-sync")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("client sync failed", exc_info=task.exception())

    def _on_released(self, _sender_id: str) -> None:
        self.unread.invalidate()

    def _target_user(self) -> str | None:
        if self._closed or self.session.user is None or self.session.profile is None:
            return None
        if self.session.restriction is not None:
            return None
        return self.session.user.id

    async def _sync(self) -> None:
        async with self._sync_lock:
            target = self._target_user()
            if target == self._active_user:
                return
            await self._teardown()
            if target is None:
                return
            logger.info("starting messaging for %s", target)
            try:
                await self.unread.start(target)
                await self.archive.start(target)
            except Exception:
                # Left stopped so the next session event or refresh starts over.
                await self._teardown()
                raise
            self._active_user = target

    async def _teardown(self) -> None:
        if self._active_user is not None:
            logger.info("stopping messaging for %s", self._active_user)
        await self.close_conversation()
        await self.archive.stop()
        await self.unread.stop()
        self.notifications.reset()
        self._active_user = None

    def _require_active(self) -> str:
        self.session.require_access()
        if self._active_user is None:
            raise PermissionDenied("sign in required")
        return self._active_user

    async def open_conversation(self, counterpart_id: str) -> ConversationStore:
        self_id = self._require_active()
        await self.close_conversation()
        store = ConversationStore(
            self.backend,
            self_id,
            counterpart_id,
            notices=self.notices,
            on_read=self.unread.invalidate,
            config=self.config,
        )
        self.conversation = store
        await store.open()
        return store

    async def close_conversation(self) -> None:
        store, self.conversation = self.conversation, None
        if store is not None:
            await store.close()

    async def send_message(
        self, counterpart_id: str, content: str | None = None, image: Attachment | None = None
    ) -> Message:
        """Send through the open conversation when it is with ``counterpart_id``."""

        self_id = self._require_active()
        store = self.conversation
        if store is not None and store.counterpart_id == counterpart_id:
            return await store.send(content, image)
        store = ConversationStore(
            self.backend, self_id, counterpart_id, notices=self.notices, config=self.config, active=False
        )
        try:
            return await store.send(content, image)
        finally:
            await store.close()

    async def inbox(self) -> Inbox:
        """Counterparts the user has exchanged messages with, newest first."""

        self_id = self._require_active()
        rows = await self.backend.query(MESSAGES, {"recipient_id": self_id})
        rows += await self.backend.query(MESSAGES, {"sender_id": self_id})
        latest: Dict[str, Message] = {}
        for row in rows:
            message = Message.from_row(row)
            counterpart = message.sender_id if message.recipient_id == self_id else message.recipient_id
            current = latest.get(counterpart)
            if current is None or message.sort_key > current.sort_key:
                latest[counterpart] = message
        ordered = sorted(latest, key=lambda counterpart: latest[counterpart].sort_key, reverse=True)
        result = Inbox()
        for counterpart in ordered:
            if self.archive.is_archived(counterpart):
                result.archived.append(counterpart)
            else:
                result.inbox.append(counterpart)
        return result

    async def settle(self) -> None:
        """Let pending change events and background work run to completion."""

        for _ in range(SETTLE_ROUNDS):
            await asyncio.sleep(0)
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.session.settle()
            await self.unread.settle()
            await self.archive.settle()
            if self.conversation is not None:
                await self.conversation.settle()

    async def close(self) -> None:
        self._closed = True
        if self._remove_session_listener is not None:
            self._remove_session_listener()
            self._remove_session_listener = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        async with self._sync_lock:
            await self._teardown()
        await self.session.close()
