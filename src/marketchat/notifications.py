from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT = "default"
GRANTED = "granted"
DENIED = "denied"
UNSUPPORTED = "unsupported"


class NotificationPlatform:
    """Host integration for desktop notifications.

    The base class is a platform without notification support.
    """

    supported = False

    def permission(self) -> str:
        return UNSUPPORTED

    async def request_permission(self) -> str:
        return UNSUPPORTED

    def is_visible(self) -> bool:
        return True

    def show(self, title: str, body: str) -> None:
        raise NotImplementedError("notifications are not supported on this platform")


class HeadlessPlatform(NotificationPlatform):
    """Logs notifications instead of displaying them; used by the CLI."""

    supported = True

    def __init__(self, permission: str = GRANTED, visible: bool = False) -> None:
        self._permission = permission
        self.visible = visible

    def permission(self) -> str:
        return self._permission

    async def request_permission(self) -> str:
        if self._permission == DEFAULT:
            self._permission = GRANTED
        return self._permission

    def is_visible(self) -> bool:
        return self.visible

    def show(self, title: str, body: str) -> None:
        logger.info("desktop notification: %s - %s", title, body)


class NotificationBridge:
    def __init__(self, platform: NotificationPlatform | None = None) -> None:
        self._platform = platform or NotificationPlatform()
        self._permission = self._platform.permission() if self._platform.supported else UNSUPPORTED
        self._previous_total: Optional[int] = None

    @property
    def permission(self) -> str:
        return self._permission

    @property
    def previous_total(self) -> Optional[int]:
        return self._previous_total

    async def request(self) -> str:
        if not self._platform.supported:
            logger.info("desktop notifications are not supported")
            return self._permission
        self._permission = await self._platform.request_permission()
        return self._permission

    def reset(self) -> None:
        """Forget the baseline, e.g. when a different user signs in."""

        self._previous_total = None

    def notify_if_increased(self, new_total: int) -> bool:
        previous, self._previous_total = self._previous_total, new_total
        if previous is None or new_total <= previous:
            return False
        if self._platform.supported:
            self._permission = self._platform.permission()
        if self._permission != GRANTED or self._platform.is_visible():
            return False
        delta = new_total - previous
        plural = "s" if delta != 1 else ""
        self._platform.show("New message" + plural, f"You have {delta} new unread message{plural}.")
        return True

    def on_counts(self, _counts: dict, total: int) -> None:
        self.notify_if_increased(total)
