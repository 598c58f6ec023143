"""Typed views of the rows exchanged with the backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping

from .errors import RowError

MESSAGES = "messages"
PROFILES = "profiles"
ARCHIVED_CONVERSATIONS = "archived_conversations"
PRODUCTS = "products"
RATINGS = "ratings"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as a fixed-width UTC ISO string so rows sort lexically."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return format_timestamp(utcnow())


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise RowError(f"invalid timestamp: {value!r}") from exc
    else:
        raise RowError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_str(row: Mapping[str, Any], key: str) -> str:
    value = row.get(key)
    if not isinstance(value, str) or not value:
        raise RowError(f"{key} must be a non-empty string")
    return value


def _require_id(row: Mapping[str, Any]) -> str:
    value = row.get("id")
    if value is None or value == "":
        raise RowError("id is required")
    return str(value)


def _optional_str(row: Mapping[str, Any], key: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RowError(f"{key} must be a string or null")
    return value


def _int(row: Mapping[str, Any], key: str) -> int:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise RowError(f"{key} must be an integer")
    return value


def _number(row: Mapping[str, Any], key: str) -> float:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RowError(f"{key} must be a number")
    return float(value)


def _bool(row: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = row.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise RowError(f"{key} must be a boolean")


@dataclass(frozen=True)
class Message:
    table: ClassVar[str] = MESSAGES

    id: str
    created_at: datetime
    sender_id: str
    recipient_id: str
    content: str | None
    image_url: str | None
    is_read: bool

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        return cls(
            id=_require_id(row),
            created_at=parse_timestamp(row.get("created_at")),
            sender_id=_require_str(row, "sender_id"),
            recipient_id=_require_str(row, "recipient_id"),
            content=_optional_str(row, "content"),
            image_url=_optional_str(row, "image_url"),
            is_read=_bool(row, "is_read"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": format_timestamp(self.created_at),
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "content": self.content,
            "image_url": self.image_url,
            "is_read": self.is_read,
        }

    def involves(self, user_a: str, user_b: str) -> bool:
        return (self.sender_id, self.recipient_id) in ((user_a, user_b), (user_b, user_a))

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)


@dataclass(frozen=True)
class Profile:
    table: ClassVar[str] = PROFILES

    id: str
    username: str | None
    avatar_url: str | None = None
    badge: str | None = None
    is_admin: bool = False
    is_banned: bool = False
    banned_until: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        banned_until = row.get("banned_until")
        return cls(
            id=_require_str(row, "id"),
            username=_optional_str(row, "username"),
            avatar_url=_optional_str(row, "avatar_url"),
            badge=_optional_str(row, "badge"),
            is_admin=_bool(row, "is_admin"),
            is_banned=_bool(row, "is_banned"),
            banned_until=None if banned_until is None else parse_timestamp(banned_until),
        )

    def ban_active(self, now: datetime) -> bool:
        if not self.is_banned:
            return False
        return self.banned_until is None or self.banned_until > now

    def ban_expired(self, now: datetime) -> bool:
        return self.is_banned and self.banned_until is not None and self.banned_until <= now


@dataclass(frozen=True)
class ArchivedConversation:
    table: ClassVar[str] = ARCHIVED_CONVERSATIONS

    id: str
    user_id: str
    archived_user_id: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ArchivedConversation":
        return cls(
            id=_require_id(row),
            user_id=_require_str(row, "user_id"),
            archived_user_id=_require_str(row, "archived_user_id"),
        )


@dataclass(frozen=True)
class Product:
    table: ClassVar[str] = PRODUCTS

    id: str
    created_at: datetime
    seller_id: str
    name: str
    price: float
    stock: int
    description: str | None = None
    category: str | None = None
    image: str | None = None
    info: str | None = None
    link: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Product":
        return cls(
            id=_require_id(row),
            created_at=parse_timestamp(row.get("created_at")),
            seller_id=_require_str(row, "seller_id"),
            name=_require_str(row, "name"),
            price=_number(row, "price"),
            stock=_int(row, "stock"),
            description=_optional_str(row, "description"),
            category=_optional_str(row, "category"),
            image=_optional_str(row, "image"),
            info=_optional_str(row, "info"),
            link=_optional_str(row, "link"),
        )


@dataclass(frozen=True)
class Rating:
    table: ClassVar[str] = RATINGS

    id: str
    created_at: datetime
    user_id: str
    rating: int
    product_id: str | None = None
    rated_seller_id: str | None = None
    comment: str | None = None
    image_url: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Rating":
        return cls(
            id=_require_id(row),
            created_at=parse_timestamp(row.get("created_at")),
            user_id=_require_str(row, "user_id"),
            rating=_int(row, "rating"),
            product_id=_optional_str(row, "product_id"),
            rated_seller_id=_optional_str(row, "rated_seller_id"),
            comment=_optional_str(row, "comment"),
            image_url=_optional_str(row, "image_url"),
        )

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)
