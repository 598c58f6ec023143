"""User-visible, non-blocking notices (toasts)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List

from .errors import BackendError, PermissionDenied

logger = logging.getLogger(__name__)

DEFAULT = "default"
DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Notice:
    title: str
    description: str = ""
    variant: str = DEFAULT


class NoticeBoard:
    """Records notices and forwards them to registered listeners."""

    def __init__(self, max_history: int = 200) -> None:
        self.max_history = max_history
        self._history: List[Notice] = []
        self._listeners: List[Callable[[Notice], None]] = []

    @property
    def history(self) -> List[Notice]:
        return list(self._history)

    def add_listener(self, listener: Callable[[Notice], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def show(self, title: str, description: str = "", *, variant: str = DEFAULT) -> Notice:
        notice = Notice(title=title, description=description, variant=variant)
        self._history.append(notice)
        if len(self._history) > self.max_history:
            del self._history[: len(self._history) - self.max_history]
        logger.info("notice: %s %s", title, description)
        for listener in list(self._listeners):
            listener(notice)
        return notice

    def error(self, title: str, exc: BaseException) -> Notice:
        if isinstance(exc, PermissionDenied):
            description = f"Not allowed: {exc}"
        elif isinstance(exc, BackendError):
            description = str(exc)
        else:
            description = f"Unexpected error: {exc}"
        return self.show(title, description, variant=DESTRUCTIVE)
