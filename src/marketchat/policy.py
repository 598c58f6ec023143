"""Row-level authorization rules applied by the local backend."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from .errors import InvalidRequest, PermissionDenied
from .filters import Condition
from .rows import ARCHIVED_CONVERSATIONS, MESSAGES, PRODUCTS, PROFILES, RATINGS, parse_timestamp, utcnow

PROFILE_OWNER_COLUMNS = frozenset({"username", "avatar_url"})
RATING_TARGET_COLUMNS = ("user_id", "product_id", "rated_seller_id")

Row = Mapping[str, Any]


class OwnerPolicy:
    """Mirrors the hosted project's row policies.

    * messages: inserted by their sender; only the recipient may flip ``is_read``;
      never deleted.
    * archived_conversations: a user manages only their own rows.
    * profiles: created by their owner; the owner edits username/avatar and may
      clear an expired ban; admins may edit any column of any profile.
    * products: listed, edited and removed only by their seller.
    * ratings: written as the signed-in user, never about the user themselves
      or their own products; only the author edits or removes a rating.
    """

    def check(
        self,
        action: str,
        table: str,
        actor_id: Optional[str],
        old: Optional[Row],
        new: Optional[Row],
        tables: Any,
    ) -> None:
        if actor_id is None:
            raise PermissionDenied(f"{action} on {table} requires a signed-in user")
        if table == MESSAGES:
            self._check_message(action, actor_id, old, new)
        elif table == ARCHIVED_CONVERSATIONS:
            row = new if new is not None else old
            if row is None or row.get("user_id") != actor_id:
                raise PermissionDenied("archive rows belong to their owner")
        elif table == PROFILES:
            self._check_profile(action, actor_id, old, new, tables)
        elif table == PRODUCTS:
            self._check_product(action, actor_id, old, new)
        elif table == RATINGS:
            self._check_rating(action, actor_id, old, new, tables)

    def _check_message(self, action: str, actor_id: str, old: Optional[Row], new: Optional[Row]) -> None:
        if action == "insert":
            if new is None or new.get("sender_id") != actor_id:
                raise PermissionDenied("messages are sent as the signed-in user")
            return
        if action == "update":
            if old is None or new is None:
                raise InvalidRequest("message update needs the stored and the updated row")
            if old.get("recipient_id") != actor_id:
                raise PermissionDenied("only the recipient may update a message")
            changed = {key for key in new if new.get(key) != old.get(key)}
            if not changed <= {"is_read"} or (changed and new.get("is_read") is not True):
                raise PermissionDenied("only the read flag may change, and only to read")
            return
        raise PermissionDenied("messages cannot be deleted")

    def _check_profile(
        self, action: str, actor_id: str, old: Optional[Row], new: Optional[Row], tables: Any
    ) -> None:
        if self._is_admin(actor_id, tables):
            return
        row = new if new is not None else old
        if row is None or row.get("id") != actor_id:
            raise PermissionDenied("profiles are managed by their owner or an admin")
        if action == "insert":
            if new is not None and (new.get("is_admin") or new.get("is_banned") or new.get("badge")):
                raise PermissionDenied("role flags are assigned by an admin")
            return
        if action != "update":
            raise PermissionDenied("profiles cannot be deleted")
        if old is None or new is None:
            raise InvalidRequest("profile update needs the stored and the updated row")
        changed = {key for key in new if new.get(key) != old.get(key)}
        if changed <= PROFILE_OWNER_COLUMNS:
            return
        if changed - PROFILE_OWNER_COLUMNS <= {"is_banned", "banned_until"} and self._clears_expired_ban(old, new):
            return
        raise PermissionDenied("only an admin may change role or ban state")

    def _check_product(self, action: str, actor_id: str, old: Optional[Row], new: Optional[Row]) -> None:
        if action != "insert" and (old is None or old.get("seller_id") != actor_id):
            raise PermissionDenied("products are managed by their seller")
        if action != "delete" and (new is None or new.get("seller_id") != actor_id):
            raise PermissionDenied("products are listed as the signed-in seller")

    def _check_rating(
        self, action: str, actor_id: str, old: Optional[Row], new: Optional[Row], tables: Any
    ) -> None:
        if action == "insert":
            if new is None or new.get("user_id") != actor_id:
                raise PermissionDenied("ratings are written as the signed-in user")
            if new.get("rated_seller_id") == actor_id:
                raise PermissionDenied("users cannot rate themselves")
            product_id = new.get("product_id")
            if product_id is not None:
                products = tables.select(PRODUCTS, [Condition("id", "eq", product_id)])
                if products and products[0].get("seller_id") == actor_id:
                    raise PermissionDenied("sellers cannot rate their own products")
            return
        if old is None or old.get("user_id") != actor_id:
            raise PermissionDenied("ratings are managed by their author")
        if action == "update":
            if new is None:
                raise InvalidRequest("rating update needs the stored and the updated row")
            if any(new.get(key) != old.get(key) for key in RATING_TARGET_COLUMNS):
                raise PermissionDenied("a rating keeps its author and target")

    @staticmethod
    def _clears_expired_ban(old: Row, new: Row) -> bool:
        banned_until = old.get("banned_until")
        if banned_until is None:
            return False
        return (
            new.get("is_banned") is False
            and new.get("banned_until") is None
            and parse_timestamp(banned_until) <= utcnow()
        )

    @staticmethod
    def _is_admin(actor_id: str, tables: Any) -> bool:
        rows = tables.select(PROFILES, [Condition("id", "eq", actor_id)])
        return bool(rows and rows[0].get("is_admin"))
