from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import InvalidRequest
from .rows import ARCHIVED_CONVERSATIONS, MESSAGES, PRODUCTS, PROFILES, RATINGS, now_iso

TEXT = "text"
BOOL = "bool"
TIMESTAMP = "timestamp"
INTEGER = "integer"
REAL = "real"


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Column:
    name: str
    kind: str = TEXT
    nullable: bool = True
    default: Optional[Callable[[], Any]] = None


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: Tuple[Column, ...]
    primary_key: str = "id"
    unique: Tuple[Tuple[str, ...], ...] = ()

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def column(self, name: str) -> Column:
        for column in self.columns:
            if column.name == name:
                return column
        raise InvalidRequest(f"unknown column {self.name}.{name}")

    def prepare_insert(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        self._reject_unknown(row)
        prepared: Dict[str, Any] = {}
        for column in self.columns:
            value = row.get(column.name)
            if value is None and column.default is not None:
                value = column.default()
            if value is None and not column.nullable:
                raise InvalidRequest(f"{self.name}.{column.name} is required")
            prepared[column.name] = self._coerce(column, value)
        return prepared

    def prepare_patch(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        if not patch:
            raise InvalidRequest("patch must not be empty")
        self._reject_unknown(patch)
        if self.primary_key in patch:
            raise InvalidRequest(f"{self.name}.{self.primary_key} is immutable")
        prepared: Dict[str, Any] = {}
        for name, value in patch.items():
            column = self.column(name)
            if value is None and not column.nullable:
                raise InvalidRequest(f"{self.name}.{name} cannot be null")
            prepared[name] = self._coerce(column, value)
        return prepared

    def conflict_key(self, row: Mapping[str, Any], columns: Tuple[str, ...]) -> Tuple[Any, ...]:
        return tuple(row.get(name) for name in columns)

    def _reject_unknown(self, row: Mapping[str, Any]) -> None:
        unknown = set(row) - set(self.column_names)
        if unknown:
            raise InvalidRequest(f"unknown columns for {self.name}: {sorted(unknown)}")

    def _coerce(self, column: Column, value: Any) -> Any:
        if value is None:
            return None
        if column.kind == BOOL:
            if isinstance(value, bool):
                return value
            if isinstance(value, int) and value in (0, 1):
                return bool(value)
            raise InvalidRequest(f"{self.name}.{column.name} must be a boolean")
        if column.kind == INTEGER:
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidRequest(f"{self.name}.{column.name} must be an integer")
            return value
        if column.kind == REAL:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidRequest(f"{self.name}.{column.name} must be a number")
            return float(value)
        if not isinstance(value, str):
            raise InvalidRequest(f"{self.name}.{column.name} must be a string")
        return value


SCHEMAS: Dict[str, TableSchema] = {
    MESSAGES: TableSchema(
        name=MESSAGES,
        columns=(
            Column("id", default=_new_id, nullable=False),
            Column("created_at", TIMESTAMP, nullable=False, default=now_iso),
            Column("sender_id", nullable=False),
            Column("recipient_id", nullable=False),
            Column("content"),
            Column("image_url"),
            Column("is_read", BOOL, nullable=False, default=lambda: False),
        ),
    ),
    PROFILES: TableSchema(
        name=PROFILES,
        columns=(
            Column("id", nullable=False),
            Column("created_at", TIMESTAMP, nullable=False, default=now_iso),
            Column("username"),
            Column("avatar_url"),
            Column("badge"),
            Column("is_admin", BOOL, nullable=False, default=lambda: False),
            Column("is_banned", BOOL, nullable=False, default=lambda: False),
            Column("banned_until", TIMESTAMP),
        ),
    ),
    ARCHIVED_CONVERSATIONS: TableSchema(
        name=ARCHIVED_CONVERSATIONS,
        columns=(
            Column("id", default=_new_id, nullable=False),
            Column("created_at", TIMESTAMP, nullable=False, default=now_iso),
            Column("user_id", nullable=False),
            Column("archived_user_id", nullable=False),
        ),
        unique=(("user_id", "archived_user_id"),),
    ),
    PRODUCTS: TableSchema(
        name=PRODUCTS,
        columns=(
            Column("id", default=_new_id, nullable=False),
            Column("created_at", TIMESTAMP, nullable=False, default=now_iso),
            Column("seller_id", nullable=False),
            Column("name", nullable=False),
            Column("description"),
            Column("price", REAL, nullable=False),
            Column("category"),
            Column("stock", INTEGER, nullable=False, default=lambda: 1),
            Column("image"),
            Column("info"),
            Column("link"),
        ),
    ),
    RATINGS: TableSchema(
        name=RATINGS,
        columns=(
            Column("id", default=_new_id, nullable=False),
            Column("created_at", TIMESTAMP, nullable=False, default=now_iso),
            Column("user_id", nullable=False),
            Column("product_id"),
            Column("rated_seller_id"),
            Column("rating", INTEGER, nullable=False),
            Column("comment"),
            Column("image_url"),
        ),
        # One rating per user and target; NULL targets never collide.
        unique=(("user_id", "product_id"), ("user_id", "rated_seller_id")),
    ),
}


def schema_for(table: str) -> TableSchema:
    schema = SCHEMAS.get(table)
    if schema is None:
        raise InvalidRequest(f"unknown table: {table}")
    return schema
