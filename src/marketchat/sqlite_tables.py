from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from .errors import Conflict, InvalidRequest
from .filters import Condition
from .schema import BOOL, INTEGER, REAL, SCHEMAS, TableSchema, schema_for
from .tables import Blob, Row

SCHEMA_VERSION = 2

_SQL_TYPES = {BOOL: "INTEGER", INTEGER: "INTEGER", REAL: "REAL"}

_SQL_OPERATORS = {"eq": "=", "neq": "!=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">="}


class SQLiteTables:
    """Owns a shared SQLite connection, applies migrations and serves table operations."""

    def __init__(self, db_path: str, schemas: Mapping[str, TableSchema] | None = None) -> None:
        self._lock = threading.Lock()
        self._schemas = dict(schemas or SCHEMAS)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        try:
            self._configure()
            self._apply_migrations()
        except Exception:
            self._conn.close()
            raise

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version in (0, 1):
            # Version 1 databases predate the products and ratings tables.
            self._create_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_schema(self) -> None:
        for schema in self._schemas.values():
            columns = []
            for column in schema.columns:
                sql_type = _SQL_TYPES.get(column.kind, "TEXT")
                null_clause = "" if column.nullable else " NOT NULL"
                columns.append(f"{column.name} {sql_type}{null_clause}")
            columns.append(f"PRIMARY KEY ({schema.primary_key})")
            for unique in schema.unique:
                columns.append(f"UNIQUE ({', '.join(unique)})")
            self._conn.execute(f"CREATE TABLE IF NOT EXISTS {schema.name} ({', '.join(columns)})")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS blobs (
                bucket TEXT NOT NULL,
                path TEXT NOT NULL,
                content_type TEXT,
                data BLOB NOT NULL,
                PRIMARY KEY (bucket, path)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS messages_recipient ON messages (recipient_id, is_read)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS messages_pair ON messages (sender_id, recipient_id, created_at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS products_seller ON products (seller_id, created_at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS ratings_product ON ratings (product_id, created_at)")

    def select(
        self,
        table: str,
        conditions: Sequence[Condition],
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[Row]:
        schema = schema_for(table)
        clause, params = self._where(schema, conditions)
        query = f"SELECT * FROM {schema.name}{clause}"
        if order_by is not None:
            schema.column(order_by)
            direction = "DESC" if descending else "ASC"
            query += f" ORDER BY {order_by} IS NULL, {order_by} {direction}, rowid ASC"
        else:
            query += " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._from_sql(schema, row) for row in rows]

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        schema = schema_for(table)
        prepared = schema.prepare_insert(row)
        with self._lock:
            try:
                self._insert_locked(schema, prepared)
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"duplicate key for {schema.name}: {exc}") from exc
        return prepared

    def upsert(self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]) -> Tuple[Row, bool]:
        schema = schema_for(table)
        columns = tuple(on_conflict)
        if not columns:
            raise InvalidRequest("on_conflict must name at least one column")
        prepared = schema.prepare_insert(row)
        conditions = [Condition(name, "eq", prepared[name]) for name in columns]
        clause, params = self._where(schema, conditions)
        conn = self._conn
        with self._lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                existing = cursor.execute(f"SELECT * FROM {schema.name}{clause}", params).fetchone()
                if existing is not None:
                    conn.commit()
                    return self._from_sql(schema, existing), False
                self._insert_locked(schema, prepared, cursor)
                conn.commit()
                return prepared, True
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise Conflict(f"duplicate key for {schema.name}: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def update(self, table: str, conditions: Sequence[Condition], patch: Mapping[str, Any]) -> List[Tuple[Row, Row]]:
        schema = schema_for(table)
        prepared = schema.prepare_patch(patch)
        clause, params = self._where(schema, conditions)
        assignments = ", ".join(f"{name}=?" for name in prepared)
        values = [self._to_sql(schema, name, value) for name, value in prepared.items()]
        conn = self._conn
        with self._lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                before = cursor.execute(f"SELECT * FROM {schema.name}{clause}", params).fetchall()
                if not before:
                    conn.commit()
                    return []
                keys = [row[schema.primary_key] for row in before]
                placeholders = ", ".join("?" for _ in keys)
                cursor.execute(
                    f"UPDATE {schema.name} SET {assignments} WHERE {schema.primary_key} IN ({placeholders})",
                    values + keys,
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise Conflict(f"duplicate key for {schema.name}: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        changes = []
        for row in before:
            old = self._from_sql(schema, row)
            new = dict(old)
            new.update(prepared)
            changes.append((old, new))
        return changes

    def delete(self, table: str, conditions: Sequence[Condition]) -> List[Row]:
        schema = schema_for(table)
        clause, params = self._where(schema, conditions)
        conn = self._conn
        with self._lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                removed = cursor.execute(f"SELECT * FROM {schema.name}{clause}", params).fetchall()
                cursor.execute(f"DELETE FROM {schema.name}{clause}", params)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return [self._from_sql(schema, row) for row in removed]

    def put_blob(self, bucket: str, path: str, data: bytes, content_type: str | None) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO blobs (bucket, path, content_type, data) VALUES (?, ?, ?, ?)",
                    (bucket, path, content_type, sqlite3.Binary(data)),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"object already exists: {bucket}/{path}") from exc

    def get_blob(self, bucket: str, path: str) -> Blob | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT data, content_type FROM blobs WHERE bucket=? AND path=?", (bucket, path)
            ).fetchone()
        if row is None:
            return None
        return bytes(row[0]), row[1]

    def _insert_locked(self, schema: TableSchema, row: Row, cursor: sqlite3.Cursor | None = None) -> None:
        names = list(row)
        placeholders = ", ".join("?" for _ in names)
        target = cursor or self._conn
        target.execute(
            f"INSERT INTO {schema.name} ({', '.join(names)}) VALUES ({placeholders})",
            [self._to_sql(schema, name, row[name]) for name in names],
        )

    def _where(self, schema: TableSchema, conditions: Sequence[Condition]) -> Tuple[str, List[Any]]:
        parts: List[str] = []
        params: List[Any] = []
        for condition in conditions:
            schema.column(condition.column)
            name = condition.column
            if condition.op == "in":
                values = list(condition.value)
                if not values:
                    parts.append("0")
                    continue
                parts.append(f"{name} IN ({', '.join('?' for _ in values)})")
                params.extend(self._to_sql(schema, name, value) for value in values)
            elif condition.value is None and condition.op in ("eq", "is"):
                parts.append(f"{name} IS NULL")
            elif condition.value is None and condition.op == "neq":
                parts.append(f"{name} IS NOT NULL")
            elif condition.op == "is":
                parts.append(f"{name} IS ?")
                params.append(self._to_sql(schema, name, condition.value))
            else:
                parts.append(f"{name} {_SQL_OPERATORS[condition.op]} ?")
                params.append(self._to_sql(schema, name, condition.value))
        if not parts:
            return "", params
        return " WHERE " + " AND ".join(parts), params

    @staticmethod
    def _to_sql(schema: TableSchema, name: str, value: Any) -> Any:
        if value is not None and schema.column(name).kind == BOOL:
            return 1 if value else 0
        return value

    @staticmethod
    def _from_sql(schema: TableSchema, row: sqlite3.Row) -> Row:
        result: Dict[str, Any] = {}
        for column in schema.columns:
            value = row[column.name]
            if value is not None and column.kind == BOOL:
                value = bool(value)
            result[column.name] = value
        return result
