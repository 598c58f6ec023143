from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import Conflict, InvalidRequest
from .filters import Condition, matches
from .schema import SCHEMAS, TableSchema, schema_for

Row = Dict[str, Any]
Blob = Tuple[bytes, Optional[str]]


def sort_rows(rows: List[Row], order_by: str | None, descending: bool, limit: int | None) -> List[Row]:
    if order_by is not None:
        # NULLs sort last in both directions, ties keep insertion order.
        present = [row for row in rows if row.get(order_by) is not None]
        missing = [row for row in rows if row.get(order_by) is None]
        present.sort(key=lambda row: row[order_by], reverse=descending)
        rows = present + missing
    if limit is not None:
        rows = rows[: max(limit, 0)]
    return rows


class InMemoryTables:
    """Dict-backed tables with primary and unique key enforcement."""

    def __init__(self, schemas: Mapping[str, TableSchema] | None = None) -> None:
        self._schemas = dict(schemas or SCHEMAS)
        self._rows: Dict[str, Dict[str, Row]] = {name: {} for name in self._schemas}
        self._blobs: Dict[Tuple[str, str], Blob] = {}

    def select(
        self,
        table: str,
        conditions: Sequence[Condition],
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[Row]:
        schema = schema_for(table)
        for condition in conditions:
            schema.column(condition.column)
        if order_by is not None:
            schema.column(order_by)
        rows = [row for row in self._rows[table].values() if matches(row, conditions)]
        return [copy.deepcopy(row) for row in sort_rows(rows, order_by, descending, limit)]

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        schema = schema_for(table)
        prepared = schema.prepare_insert(row)
        self._check_unique(schema, prepared)
        self._rows[table][prepared[schema.primary_key]] = prepared
        return copy.deepcopy(prepared)

    def upsert(self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]) -> Tuple[Row, bool]:
        """Insert ``row`` unless a row with the same ``on_conflict`` key exists.

        Returns the stored row and whether it was created. Existing rows are
        returned untouched.
        """

        schema = schema_for(table)
        columns = tuple(on_conflict)
        if not columns:
            raise InvalidRequest("on_conflict must name at least one column")
        for name in columns:
            schema.column(name)
        prepared = schema.prepare_insert(row)
        key = schema.conflict_key(prepared, columns)
        for existing in self._rows[table].values():
            if schema.conflict_key(existing, columns) == key:
                return copy.deepcopy(existing), False
        self._check_unique(schema, prepared)
        self._rows[table][prepared[schema.primary_key]] = prepared
        return copy.deepcopy(prepared), True

    def update(self, table: str, conditions: Sequence[Condition], patch: Mapping[str, Any]) -> List[Tuple[Row, Row]]:
        schema = schema_for(table)
        prepared = schema.prepare_patch(patch)
        pending: List[Tuple[Any, Row, Row]] = []
        for key, row in self._rows[table].items():
            if not matches(row, conditions):
                continue
            updated = dict(row)
            updated.update(prepared)
            pending.append((key, row, updated))
        candidate = dict(self._rows[table])
        candidate.update({key: updated for key, _, updated in pending})
        for key, _, updated in pending:
            self._check_unique(schema, updated, ignore_key=key, rows=candidate)
        for key, _, updated in pending:
            self._rows[table][key] = updated
        return [(copy.deepcopy(row), copy.deepcopy(updated)) for _, row, updated in pending]

    def delete(self, table: str, conditions: Sequence[Condition]) -> List[Row]:
        schema_for(table)
        removed = []
        for key, row in list(self._rows[table].items()):
            if matches(row, conditions):
                removed.append(self._rows[table].pop(key))
        return removed

    def put_blob(self, bucket: str, path: str, data: bytes, content_type: str | None) -> None:
        if (bucket, path) in self._blobs:
            raise Conflict(f"object already exists: {bucket}/{path}")
        self._blobs[(bucket, path)] = (bytes(data), content_type)

    def get_blob(self, bucket: str, path: str) -> Blob | None:
        return self._blobs.get((bucket, path))

    def close(self) -> None:
        return None

    def _check_unique(
        self, schema: TableSchema, row: Row, ignore_key: Any = None, rows: Dict[Any, Row] | None = None
    ) -> None:
        rows = self._rows[schema.name] if rows is None else rows
        pk = row[schema.primary_key]
        if ignore_key is None and pk in rows:
            raise Conflict(f"duplicate key {schema.name}.{schema.primary_key}={pk}")
        for columns in schema.unique:
            key = schema.conflict_key(row, columns)
            if any(value is None for value in key):
                continue
            for existing_key, existing in rows.items():
                if existing_key == ignore_key:
                    continue
                if schema.conflict_key(existing, columns) == key:
                    raise Conflict(f"duplicate key {schema.name}{columns}")
