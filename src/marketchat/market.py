"""Product listings and ratings for sellers and buyers."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping
from urllib.parse import urlsplit

from .backend import Backend
from .config import SyncConfig
from .errors import Conflict, InvalidRequest, NotFound, PermissionDenied
from .filters import Condition
from .rows import PRODUCTS, PROFILES, RATINGS, Product, Rating
from .session import SessionContext
from .storage import Attachment, upload_attachment

logger = logging.getLogger(__name__)

PRICE_PATTERN = re.compile(r"^\d+(\.\d{1,2})?$")
MIN_RATING = 1
MAX_RATING = 5
MAX_COMMENT_LENGTH = 1000
DELETE_PRODUCT_FAILED = "Could not delete product. You might not have the right permissions."


def _acting_user(session: SessionContext) -> str:
    if session.user is None:
        raise PermissionDenied("sign in required")
    session.require_access()
    return session.user.id


def _min_length(label: str, minimum: int) -> Callable[[Any], str]:
    def validate(value: Any) -> str:
        if not isinstance(value, str) or len(value.strip()) < minimum:
            raise InvalidRequest(f"{label} must be at least {minimum} characters.")
        return value.strip()

    return validate


def parse_price(value: Any) -> float:
    """Accept ``29.99``, ``"29.99"`` or ``"$29.99"``; at most two decimal places."""

    if isinstance(value, bool):
        raise InvalidRequest("Please enter a valid price (e.g., 29.99).")
    if isinstance(value, (int, float)):
        if value < 0 or round(value, 2) != value:
            raise InvalidRequest("Please enter a valid price (e.g., 29.99).")
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace("$", "", 1)
        if PRICE_PATTERN.match(text):
            return float(text)
    raise InvalidRequest("Please enter a valid price (e.g., 29.99).")


def _stock(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRequest("Stock must be a positive number.")
    return value


def _url(value: Any) -> str:
    parts = urlsplit(value) if isinstance(value, str) else None
    if parts is None or parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidRequest("Please enter a valid image URL.")
    return value


def _optional_link(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return _url(value)


PRODUCT_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": _min_length("Product name", 2),
    "description": _min_length("Description", 10),
    "price": parse_price,
    "category": _min_length("Category", 2),
    "stock": _stock,
    "image": _url,
    "info": _min_length("Info", 10),
    "link": _optional_link,
}
REQUIRED_PRODUCT_FIELDS = frozenset(PRODUCT_FIELDS) - {"link"}


def validate_product_fields(fields: Mapping[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    unknown = set(fields) - set(PRODUCT_FIELDS)
    if unknown:
        raise InvalidRequest(f"unknown product fields: {sorted(unknown)}")
    if not partial:
        missing = REQUIRED_PRODUCT_FIELDS - set(fields)
        if missing:
            raise InvalidRequest(f"missing product fields: {sorted(missing)}")
    return {name: PRODUCT_FIELDS[name](value) for name, value in fields.items()}


def validate_rating(rating: Any, comment: str | None) -> None:
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRequest("Rating is required.")
    if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
        raise InvalidRequest(f"Comment cannot exceed {MAX_COMMENT_LENGTH} characters.")


class CatalogService:
    """Products listed by the signed-in seller."""

    def __init__(self, backend: Backend, session: SessionContext) -> None:
        self._backend = backend
        self._session = session

    async def get(self, product_id: str) -> Product:
        rows = await self._backend.query(PRODUCTS, {"id": product_id})
        if not rows:
            raise NotFound(f"no product {product_id}")
        return Product.from_row(rows[0])

    async def list_product(self, **fields: Any) -> Product:
        seller_id = _acting_user(self._session)
        row = validate_product_fields(fields)
        row["seller_id"] = seller_id
        stored = await self._backend.insert(PRODUCTS, row)
        logger.info("seller %s listed product %s", seller_id, stored["id"])
        return Product.from_row(stored)

    async def update_product(self, product_id: str, **changes: Any) -> Product:
        seller_id = _acting_user(self._session)
        patch = validate_product_fields(changes, partial=True)
        if not patch:
            raise InvalidRequest("nothing to update")
        rows = await self._backend.update(PRODUCTS, {"id": product_id, "seller_id": seller_id}, patch)
        if not rows:
            raise NotFound(f"no product {product_id} listed by {seller_id}")
        return Product.from_row(rows[0])

    async def delete_product(self, product_id: str) -> None:
        seller_id = _acting_user(self._session)
        removed = await self._backend.delete(PRODUCTS, {"id": product_id, "seller_id": seller_id})
        if not removed:
            raise NotFound(DELETE_PRODUCT_FAILED)
        logger.info("seller %s deleted product %s", seller_id, product_id)

    async def seller_products(self, seller_id: str | None = None) -> List[Product]:
        """Products of ``seller_id`` (default: the signed-in user), newest first."""

        if seller_id is None:
            seller_id = _acting_user(self._session)
        rows = await self._backend.query(PRODUCTS, {"seller_id": seller_id}, order_by="created_at", descending=True)
        return [Product.from_row(row) for row in rows]


@dataclass(frozen=True)
class RatingSummary:
    count: int
    average: float | None


class RatingService:
    def __init__(self, backend: Backend, session: SessionContext, config: SyncConfig | None = None) -> None:
        self._backend = backend
        self._session = session
        self._config = config or SyncConfig()

    async def _image_url(self, user_id: str, image: Attachment | None) -> str | None:
        if image is None:
            return None
        return await upload_attachment(self._backend, self._config.rating_image_bucket, user_id, image)

    async def has_rated(self, product_id: str) -> bool:
        user_id = _acting_user(self._session)
        rows = await self._backend.query(RATINGS, {"user_id": user_id, "product_id": product_id}, limit=1)
        return bool(rows)

    async def rate_product(
        self, product_id: str, rating: int, comment: str | None = None, image: Attachment | None = None
    ) -> Rating:
        user_id = _acting_user(self._session)
        validate_rating(rating, comment)
        if not await self._backend.query(PRODUCTS, {"id": product_id}, limit=1):
            raise NotFound(f"no product {product_id}")
        if await self.has_rated(product_id):
            raise Conflict("You have already rated this product.")
        row = {
            "user_id": user_id,
            "product_id": product_id,
            "rating": rating,
            "comment": comment,
            "image_url": await self._image_url(user_id, image),
        }
        stored = await self._backend.insert(RATINGS, row)
        logger.info("%s rated product %s with %d", user_id, product_id, rating)
        return Rating.from_row(stored)

    async def rate_seller(self, seller_id: str, rating: int, comment: str | None = None) -> Rating:
        user_id = _acting_user(self._session)
        validate_rating(rating, comment)
        if not await self._backend.query(PROFILES, {"id": seller_id}, limit=1):
            raise NotFound(f"no profile for {seller_id}")
        stored = await self._backend.insert(
            RATINGS, {"user_id": user_id, "rated_seller_id": seller_id, "rating": rating, "comment": comment}
        )
        logger.info("%s rated seller %s with %d", user_id, seller_id, rating)
        return Rating.from_row(stored)

    async def update_rating(
        self, rating_id: str, rating: int, comment: str | None = None, image: Attachment | None = None
    ) -> Rating:
        """Replace score and comment; the stored image stays unless a new one is given."""

        user_id = _acting_user(self._session)
        validate_rating(rating, comment)
        patch: Dict[str, Any] = {"rating": rating, "comment": comment}
        if image is not None:
            patch["image_url"] = await self._image_url(user_id, image)
        rows = await self._backend.update(RATINGS, {"id": rating_id, "user_id": user_id}, patch)
        if not rows:
            raise NotFound(f"no rating {rating_id} by {user_id}")
        return Rating.from_row(rows[0])

    async def delete_rating(self, rating_id: str) -> None:
        user_id = _acting_user(self._session)
        removed = await self._backend.delete(RATINGS, {"id": rating_id, "user_id": user_id})
        if not removed:
            raise NotFound(f"no rating {rating_id} by {user_id}")

    async def product_ratings(self, product_id: str) -> List[Rating]:
        rows = await self._backend.query(RATINGS, {"product_id": product_id}, order_by="created_at", descending=True)
        return [Rating.from_row(row) for row in rows]

    async def seller_ratings(self, seller_id: str) -> List[Rating]:
        """Ratings of the seller and of the seller's products, newest first."""

        product_ids = [row["id"] for row in await self._backend.query(PRODUCTS, {"seller_id": seller_id})]
        rows = await self._backend.query(RATINGS, {"rated_seller_id": seller_id})
        if product_ids:
            rows += await self._backend.query(RATINGS, [Condition("product_id", "in", product_ids)])
        ratings = {row["id"]: Rating.from_row(row) for row in rows}
        return sorted(ratings.values(), key=lambda rating: rating.sort_key, reverse=True)

    async def seller_summary(self, seller_id: str) -> RatingSummary:
        ratings = await self.seller_ratings(seller_id)
        if not ratings:
            return RatingSummary(count=0, average=None)
        average = sum(rating.rating for rating in ratings) / len(ratings)
        return RatingSummary(count=len(ratings), average=round(average, 2))
