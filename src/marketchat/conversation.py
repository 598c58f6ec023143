from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from .backend import INSERT, UPDATE, Backend
from .config import SyncConfig
from .errors import BackendError, RowError
from .feed import ChangeEvent
from .notices import NoticeBoard
from .rows import MESSAGES, Message
from .scope import Scope, ScopeClosed
from .storage import Attachment, upload_attachment

logger = logging.getLogger(__name__)


class ConversationStore:
    """Ordered message history between the signed-in user and one counterpart.

    The store subscribes to both directions of the pair before fetching, so
    rows written while the fetch is in flight arrive as live events; merging
    by message id keeps each message exactly once. ``is_read`` only ever moves
    from false to true, so a stale copy never overwrites a read one.
    """

    def __init__(
        self,
        backend: Backend,
        self_id: str,
        counterpart_id: str,
        *,
        notices: NoticeBoard | None = None,
        on_read: Callable[[], None] | None = None,
        config: SyncConfig | None = None,
        active: bool = True,
    ) -> None:
        self.self_id = self_id
        self.counterpart_id = counterpart_id
        self._backend = backend
        self._notices = notices or NoticeBoard()
        self._on_read = on_read
        self._config = config or SyncConfig()
        self._scope = Scope(backend, f"conversation:{self_id}:{counterpart_id}")
        self._messages: Dict[str, Message] = {}
        self._read_lock = asyncio.Lock()
        self._active = active
        self.is_loading = False
        self.loaded = False

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(sorted(self._messages.values(), key=lambda message: message.sort_key))

    @property
    def closed(self) -> bool:
        return self._scope.closed

    @property
    def active(self) -> bool:
        return self._active

    def unread_inbound(self) -> List[Message]:
        return [
            message
            for message in self.messages
            if message.recipient_id == self.self_id
            and message.sender_id == self.counterpart_id
            and not message.is_read
        ]

    async def open(self) -> None:
        scope = self._scope
        self.is_loading = True
        try:
            await scope.subscribe(
                Message,
                {"sender_id": self.counterpart_id, "recipient_id": self.self_id},
                self._on_change,
                kinds=(INSERT, UPDATE),
            )
            await scope.subscribe(
                Message,
                {"sender_id": self.self_id, "recipient_id": self.counterpart_id},
                self._on_change,
                kinds=(INSERT, UPDATE),
            )
            rows = await self._fetch()
        except ScopeClosed:
            return
        except BackendError as exc:
            logger.error("loading messages %s <-> %s failed: %s", self.self_id, self.counterpart_id, exc)
            if not scope.closed:
                self._notices.error("Could not load messages", exc)
            raise
        finally:
            if not scope.closed:
                self.is_loading = False
        if scope.closed:
            return
        self._merge(rows)
        self.loaded = True
        if self._active:
            try:
                await self.mark_as_read()
            except BackendError:
                # Already logged and surfaced by mark_as_read.
                return

    async def _fetch(self) -> List[dict]:
        inbound = await self._backend.query(
            MESSAGES,
            {"sender_id": self.counterpart_id, "recipient_id": self.self_id},
            order_by="created_at",
        )
        outbound = await self._backend.query(
            MESSAGES,
            {"sender_id": self.self_id, "recipient_id": self.counterpart_id},
            order_by="created_at",
        )
        return inbound + outbound

    def _merge(self, rows: List[dict]) -> None:
        for row in rows:
            try:
                message = Message.from_row(row)
            except RowError as exc:
                logger.warning("skipping malformed message row %r: %s", row.get("id"), exc)
                continue
            if message.involves(self.self_id, self.counterpart_id):
                self._upsert(message)

    def _upsert(self, message: Message) -> bool:
        existing = self._messages.get(message.id)
        if existing is None:
            self._messages[message.id] = message
            return True
        if message.is_read and not existing.is_read:
            self._messages[message.id] = message
            return True
        return False

    def _on_change(self, event: ChangeEvent[Message]) -> None:
        message = event.row
        if message is None or not message.involves(self.self_id, self.counterpart_id):
            return
        self._upsert(message)
        if (
            event.is_insert
            and self._active
            and self.loaded
            and message.recipient_id == self.self_id
            and not message.is_read
        ):
            self._scope.spawn(self._mark_read_in_background(), name=f"mark-read:{self.counterpart_id}")

    async def _mark_read_in_background(self) -> None:
        try:
            await self.mark_as_read()
        except BackendError:
            return

    async def set_active(self, active: bool) -> None:
        self._active = active
        if active and self.loaded:
            await self.mark_as_read()

    async def mark_as_read(self) -> int:
        """Flip every unread inbound message of the pair to read in one update.

        Returns the number of rows the backend changed. Issues no mutation
        when nothing local is unread.
        """

        scope = self._scope
        async with self._read_lock:
            if scope.closed:
                return 0
            pending = self.unread_inbound()
            if not pending:
                return 0
            try:
                rows = await self._backend.update(
                    MESSAGES,
                    {"recipient_id": self.self_id, "sender_id": self.counterpart_id, "is_read": False},
                    {"is_read": True},
                )
            except BackendError as exc:
                logger.error(
                    "marking messages from %s to %s as read failed: %s", self.counterpart_id, self.self_id, exc
                )
                if not scope.closed:
                    self._notices.error("Could not mark messages as read", exc)
                raise
            if scope.closed:
                return len(rows)
            self._merge(rows)
            for message in pending:
                current = self._messages.get(message.id)
                if current is not None and not current.is_read:
                    self._messages[message.id] = Message(**{**current.__dict__, "is_read": True})
            if self._on_read is not None:
                self._on_read()
            return len(rows)

    async def send(self, content: Optional[str] = None, image: Attachment | None = None) -> Message:
        text = content.strip() if content else ""
        if not text and image is None:
            raise ValueError("message must have content or an image")
        scope = self._scope
        try:
            image_url = None
            if image is not None:
                image_url = await upload_attachment(
                    self._backend, self._config.message_image_bucket, self.self_id, image
                )
            row = await self._backend.insert(
                MESSAGES,
                {
                    "sender_id": self.self_id,
                    "recipient_id": self.counterpart_id,
                    "content": text or None,
                    "image_url": image_url,
                },
            )
        except BackendError as exc:
            logger.error("sending message %s -> %s failed: %s", self.self_id, self.counterpart_id, exc)
            if not scope.closed:
                self._notices.error("Could not send message", exc)
            raise
        message = Message.from_row(row)
        if not scope.closed:
            self._upsert(message)
        return message

    async def settle(self) -> None:
        await self._scope.join()

    async def close(self) -> None:
        await self._scope.close()
        self.is_loading = False
