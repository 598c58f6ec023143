from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Sequence, Union

from .errors import InvalidRequest

OPERATORS = ("eq", "neq", "lt", "lte", "gt", "gte", "in", "is")


@dataclass(frozen=True)
class Condition:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise InvalidRequest(f"unsupported operator: {self.op}")
        if self.op == "in" and not isinstance(self.value, (list, tuple, set, frozenset)):
            raise InvalidRequest("'in' requires a sequence value")

    def test(self, row: Mapping[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            # NULL never compares unequal to a value, as in SQL.
            if self.value is None:
                return actual is not None
            return actual is not None and actual != self.value
        if self.op == "is":
            return actual is self.value or actual == self.value
        if self.op == "in":
            return actual is not None and actual in self.value
        if actual is None or self.value is None:
            return False
        if self.op == "lt":
            return actual < self.value
        if self.op == "lte":
            return actual <= self.value
        if self.op == "gt":
            return actual > self.value
        return actual >= self.value

    def to_wire(self) -> list[Any]:
        value = list(self.value) if self.op == "in" else self.value
        return [self.column, self.op, value]


Where = Union[Mapping[str, Any], Sequence[Condition], None]


def eq(column: str, value: Any) -> Condition:
    return Condition(column, "eq", value)


def normalize_where(where: Where) -> List[Condition]:
    """Accept an equality mapping or a list of conditions; return conditions."""

    if where is None:
        return []
    if isinstance(where, Mapping):
        return [Condition(str(column), "eq", value) for column, value in where.items()]
    conditions = list(where)
    for condition in conditions:
        if not isinstance(condition, Condition):
            raise InvalidRequest("where must be a mapping or a sequence of Condition")
    return conditions


def matches(row: Mapping[str, Any], conditions: Iterable[Condition]) -> bool:
    return all(condition.test(row) for condition in conditions)


def equality_filter(where: Where) -> dict[str, Any]:
    """Subscriptions only filter on column equality."""

    conditions = normalize_where(where)
    result: dict[str, Any] = {}
    for condition in conditions:
        if condition.op != "eq":
            raise InvalidRequest("subscriptions support equality filters only")
        result[condition.column] = condition.value
    return result


def where_to_wire(where: Where) -> list[list[Any]]:
    return [condition.to_wire() for condition in normalize_where(where)]


def where_from_wire(raw: Any) -> List[Condition]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        return normalize_where(raw)
    if not isinstance(raw, list):
        raise InvalidRequest("where must be a list of [column, op, value]")
    conditions = []
    for item in raw:
        if not isinstance(item, list) or len(item) != 3 or not isinstance(item[0], str):
            raise InvalidRequest("where entries must be [column, op, value]")
        conditions.append(Condition(item[0], str(item[1]), item[2]))
    return conditions
