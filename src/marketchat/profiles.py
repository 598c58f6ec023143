from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from .backend import Backend
from .config import SyncConfig
from .errors import InvalidRequest, NotFound, PermissionDenied
from .rows import PROFILES, Profile, format_timestamp
from .session import SessionContext
from .storage import Attachment, upload_attachment

logger = logging.getLogger(__name__)

HEAD_ADMIN_BADGE = "head_admin"
SEARCH_LIMIT = 20


class ProfileService:
    """Profile editing for the signed-in user and admin moderation."""

    def __init__(self, backend: Backend, session: SessionContext, config: SyncConfig | None = None) -> None:
        self._backend = backend
        self._session = session
        self._config = config or SyncConfig()

    def _require_user(self) -> str:
        if self._session.user is None:
            raise PermissionDenied("sign in required")
        return self._session.user.id

    def _require_admin(self) -> str:
        user_id = self._require_user()
        profile = self._session.profile
        if profile is None or not profile.is_admin:
            raise PermissionDenied("admin privileges required")
        return user_id

    async def get(self, user_id: str) -> Profile:
        rows = await self._backend.query(PROFILES, {"id": user_id})
        if not rows:
            raise NotFound(f"no profile for {user_id}")
        return Profile.from_row(rows[0])

    async def update_username(self, username: str) -> Profile | None:
        user_id = self._require_user()
        username = username.strip()
        if not username:
            raise InvalidRequest("username must not be empty")
        await self._backend.update(PROFILES, {"id": user_id}, {"username": username})
        await self._session.refresh()
        return self._session.profile

    async def upload_avatar(self, attachment: Attachment) -> str:
        user_id = self._require_user()
        url = await upload_attachment(self._backend, self._config.avatar_bucket, user_id, attachment)
        await self._backend.update(PROFILES, {"id": user_id}, {"avatar_url": url})
        await self._session.refresh()
        return url

    async def _moderate(self, user_id: str, patch: Dict[str, Any]) -> Profile:
        admin_id = self._require_admin()
        rows = await self._backend.update(PROFILES, {"id": user_id}, patch)
        if not rows:
            raise NotFound(f"no profile for {user_id}")
        logger.info("admin %s updated %s: %s", admin_id, user_id, sorted(patch))
        if user_id == admin_id:
            await self._session.refresh()
        return Profile.from_row(rows[0])

    async def ban(self, user_id: str, until: datetime | None = None) -> Profile:
        """Ban ``user_id`` permanently, or until ``until`` when given."""

        banned_until = None if until is None else format_timestamp(until)
        return await self._moderate(user_id, {"is_banned": True, "banned_until": banned_until})

    async def unban(self, user_id: str) -> Profile:
        return await self._moderate(user_id, {"is_banned": False, "banned_until": None})

    async def set_badge(self, user_id: str, badge: str | None) -> Profile:
        return await self._moderate(user_id, {"badge": badge or None})

    async def set_admin(self, user_id: str, is_admin: bool) -> Profile:
        return await self._moderate(user_id, {"is_admin": bool(is_admin)})

    async def head_admin(self) -> Profile | None:
        rows = await self._backend.query(PROFILES, {"badge": HEAD_ADMIN_BADGE}, limit=1)
        return Profile.from_row(rows[0]) if rows else None

    async def search(self, term: str) -> List[Profile]:
        """Other users whose username contains ``term``, case-insensitively."""

        user_id = self._require_user()
        needle = term.strip().lower()
        if not needle:
            return []
        rows = await self._backend.query(PROFILES, order_by="username")
        matches = [
            Profile.from_row(row)
            for row in rows
            if row.get("id") != user_id and needle in (row.get("username") or "").lower()
        ]
        return matches[:SEARCH_LIMIT]
