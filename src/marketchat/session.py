from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .backend import (
    PASSWORD_RECOVERY,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    USER_UPDATED,
    AuthSession,
    AuthUser,
    Backend,
)
from .errors import AccountRestricted, BackendError, Conflict
from .rows import PROFILES, Profile, utcnow
from .scope import Scope

logger = logging.getLogger(__name__)

UNRESOLVED = "unresolved"
ANONYMOUS = "anonymous"
AUTHENTICATED = "authenticated"

RESOLVE_EVENTS = frozenset({SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED, PASSWORD_RECOVERY, USER_UPDATED})
# Longest single wait before a temporary ban is checked again.
MAX_BAN_WAIT_SECONDS = 24 * 60 * 60.0


@dataclass(frozen=True)
class Restriction:
    until: datetime | None = None

    @property
    def permanent(self) -> bool:
        return self.until is None

    def describe(self) -> str:
        if self.until is None:
            return "Your account has been permanently suspended."
        return f"Your account is suspended until {self.until.strftime('%Y-%m-%d %H:%M UTC')}."


def default_username(user: AuthUser) -> str:
    username = user.metadata.get("username")
    if isinstance(username, str) and username.strip():
        return username.strip()
    if user.email and "@" in user.email:
        return user.email.split("@", 1)[0]
    return f"user-{user.id[:8]}"


class SessionContext:
    """Who is signed in, their profile, and whether they may use messaging.

    Resolution runs on :meth:`start`, on every auth event and on
    :meth:`refresh`. A resolution that was superseded by a newer one never
    writes its result.
    """

    def __init__(self, backend: Backend, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._backend = backend
        self._clock = clock
        self._scope = Scope(backend, "session")
        self._listeners: List[Callable[["SessionContext"], None]] = []
        self._remove_handler: Callable[[], None] | None = None
        self._generation = 0
        self._profile_lock = asyncio.Lock()
        self._ban_timer: asyncio.Task | None = None
        self.state = UNRESOLVED
        self.user: AuthUser | None = None
        self.profile: Profile | None = None

    @property
    def restriction(self) -> Restriction | None:
        profile = self.profile
        if profile is None or not profile.ban_active(self._clock()):
            return None
        return Restriction(until=profile.banned_until)

    def require_access(self) -> None:
        restriction = self.restriction
        if restriction is not None:
            raise AccountRestricted(banned_until=restriction.until)

    def add_listener(self, listener: Callable[["SessionContext"], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    async def start(self) -> None:
        if self._remove_handler is None:
            self._remove_handler = self._backend.on_session_change(self._on_auth_event)
        await self.refresh()

    def _on_auth_event(self, event: str, session: Optional[AuthSession]) -> None:
        if event not in RESOLVE_EVENTS:
            return
        logger.debug("auth event %s", event)
        self._scope.spawn(self._resolve_logged(session), name=f"session:{event}")

    async def _resolve_logged(self, session: Optional[AuthSession]) -> None:
        try:
            await self._resolve(session)
        except BackendError as exc:
            user_id = session.user.id if session is not None else None
            logger.error("resolving profile for %s failed: %s", user_id, exc)

    async def refresh(self) -> None:
        """Re-read the current session and profile; errors propagate."""

        await self._resolve(await self._backend.current_session())

    async def _resolve(self, session: Optional[AuthSession]) -> None:
        self._generation += 1
        generation = self._generation
        self._cancel_ban_timer()
        if session is None:
            self.state, self.user, self.profile = ANONYMOUS, None, None
            self._notify()
            return
        user = session.user
        if self.user is None or self.user.id != user.id:
            self.state, self.user, self.profile = AUTHENTICATED, user, None
            self._notify()
        profile = await self._load_profile(user)
        if self._scope.closed or generation != self._generation:
            return
        self.state, self.user, self.profile = AUTHENTICATED, user, profile
        self._schedule_ban_timer()
        self._notify()

    def _schedule_ban_timer(self) -> None:
        restriction = self.restriction
        if restriction is None or restriction.until is None or self._scope.closed:
            return
        delay = (restriction.until - self._clock()).total_seconds()
        self._ban_timer = asyncio.create_task(
            self._refresh_after(min(max(delay, 0.0), MAX_BAN_WAIT_SECONDS)), name="session:ban-expiry"
        )

    def _cancel_ban_timer(self) -> None:
        timer, self._ban_timer = self._ban_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _refresh_after(self, delay: float) -> None:
        """Re-resolve once a temporary ban runs out so the expired ban gets cleared."""

        await asyncio.sleep(delay)
        user_id = self.user.id if self.user is not None else None
        logger.info("ban for %s may have run out, re-resolving", user_id)
        try:
            await self.refresh()
        except BackendError as exc:
            logger.error("re-resolving %s after ban expiry failed: %s", user_id, exc)

    async def _load_profile(self, user: AuthUser) -> Profile:
        async with self._profile_lock:
            rows = await self._backend.query(PROFILES, {"id": user.id})
            if rows:
                row = rows[0]
            else:
                try:
                    row = await self._backend.insert(PROFILES, {"id": user.id, "username": default_username(user)})
                    logger.info("created profile for %s", user.id)
                except Conflict:
                    row = (await self._backend.query(PROFILES, {"id": user.id}))[0]
            profile = Profile.from_row(row)
            if profile.ban_expired(self._clock()):
                logger.info("lifting expired ban for %s", user.id)
                await self._backend.update(PROFILES, {"id": user.id}, {"is_banned": False, "banned_until": None})
                rows = await self._backend.query(PROFILES, {"id": user.id})
                profile = Profile.from_row(rows[0])
            return profile

    async def settle(self) -> None:
        await self._scope.join()

    async def close(self) -> None:
        if self._remove_handler is not None:
            self._remove_handler()
            self._remove_handler = None
        timer, self._ban_timer = self._ban_timer, None
        await self._scope.close()
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
