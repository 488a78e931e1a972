"""Fetch requests: predicates and sort descriptors.

A request is evaluated two ways: compiled to SQL by the store, and evaluated
in memory against cached objects by live result sets.  Both paths accept the
same key paths: an attribute of the entity (``"username"``) or an attribute
one to-one hop away (``"user.username"``).
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import UUID

from songstore.storage.models import ManagedObject, entity_for_name

Operator = Literal["==", "!=", "<", "<=", ">", ">=", "in"]

_SQL_OPERATORS: dict[str, str] = {
    "==": "=",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}

_PY_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def to_sql_value(value: Any) -> Any:
    """Convert a model value to the representation stored in SQLite."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def resolve_key_path(obj: ManagedObject, key_path: str) -> Any:
    value: Any = obj
    for part in key_path.split("."):
        if value is None:
            return None
        value = getattr(value, part)
    return value


def _split_key_path(entity: type[ManagedObject], key_path: str) -> tuple[str | None, type[ManagedObject], str]:
    """Validate *key_path* against *entity*; return (relationship, owner entity, attribute)."""
    parts = key_path.split(".")
    if len(parts) == 1:
        relationship, owner, attr = None, entity, parts[0]
    elif len(parts) == 2 and parts[0] in entity.to_one:
        relationship = parts[0]
        owner = entity_for_name(entity.to_one[relationship].target)
        attr = parts[1]
    else:
        msg = f"Unsupported key path for {entity.entity_name}: {key_path!r}"
        raise ValueError(msg)
    if attr not in owner.model_fields:
        msg = f"{owner.entity_name} has no attribute {attr!r}"
        raise ValueError(msg)
    return relationship, owner, attr


class SQLBuilder:
    """Collects joins and parameters while compiling a request for one entity."""

    def __init__(self, entity: type[ManagedObject]) -> None:
        self.entity = entity
        self.joins: dict[str, str] = {}
        self.params: list[Any] = []

    def column(self, key_path: str) -> str:
        relationship, owner, attr = _split_key_path(self.entity, key_path)
        if relationship is None:
            return f't."{attr}"'
        alias = f"r_{relationship}"
        if relationship not in self.joins:
            rel = self.entity.to_one[relationship]
            self.joins[relationship] = (
                f'LEFT JOIN "{owner.table_name}" AS {alias} '
                f'ON {alias}."{owner.natural_key}" = t."{rel.foreign_key}"'
            )
        return f'{alias}."{attr}"'

    @property
    def join_sql(self) -> str:
        return " ".join(self.joins.values())


@dataclass(frozen=True)
class Predicate:
    """Compare the value at *key_path* with *value*."""

    key_path: str
    operator: Operator = "=="
    value: Any = None

    def __and__(self, other: Predicate | AndPredicate) -> AndPredicate:
        return AndPredicate((self, other))

    def evaluate(self, obj: ManagedObject) -> bool:
        actual = resolve_key_path(obj, self.key_path)
        if self.operator == "in":
            return actual in self.value
        if actual is None or self.value is None:
            if self.operator == "==":
                return actual is None and self.value is None
            if self.operator == "!=":
                return (actual is None) != (self.value is None)
            return False
        return _PY_OPERATORS[self.operator](actual, self.value)

    def to_sql(self, builder: SQLBuilder) -> str:
        column = builder.column(self.key_path)
        if self.operator == "in":
            values = list(self.value)
            if not values:
                return "0"
            builder.params.extend(to_sql_value(v) for v in values)
            return f"{column} IN ({', '.join('?' for _ in values)})"
        if self.value is None:
            if self.operator == "==":
                return f"{column} IS NULL"
            if self.operator == "!=":
                return f"{column} IS NOT NULL"
        builder.params.append(to_sql_value(self.value))
        return f"{column} {_SQL_OPERATORS[self.operator]} ?"


@dataclass(frozen=True)
class AndPredicate:
    predicates: tuple[Predicate | AndPredicate, ...]

    def __and__(self, other: Predicate | AndPredicate) -> AndPredicate:
        return AndPredicate((*self.predicates, other))

    def evaluate(self, obj: ManagedObject) -> bool:
        return all(p.evaluate(obj) for p in self.predicates)

    def to_sql(self, builder: SQLBuilder) -> str:
        return " AND ".join(f"({p.to_sql(builder)})" for p in self.predicates)


@dataclass(frozen=True)
class SortDescriptor:
    key_path: str
    ascending: bool = True


@dataclass(frozen=True)
class FetchRequest:
    """What to fetch: an entity, an optional predicate, ordering and limit."""

    entity: type[ManagedObject]
    predicate: Predicate | AndPredicate | None = None
    sort_descriptors: Sequence[SortDescriptor] = field(default_factory=tuple)
    fetch_limit: int | None = None

    def matches(self, obj: ManagedObject) -> bool:
        if not isinstance(obj, self.entity):
            return False
        return self.predicate is None or self.predicate.evaluate(obj)

    def sort(self, objects: Iterable[ManagedObject]) -> list[ManagedObject]:
        """Order *objects* like the store would, then apply the fetch limit."""
        ordered = list(objects)
        # Stable sorts applied from the least significant descriptor up.
        for descriptor in reversed(self.sort_descriptors):
            ordered.sort(
                key=lambda o, kp=descriptor.key_path: _sort_key(resolve_key_path(o, kp)),
                reverse=not descriptor.ascending,
            )
        if self.fetch_limit is not None:
            ordered = ordered[: self.fetch_limit]
        return ordered

    def to_sql(self, columns: str = "t.*") -> tuple[str, list[Any]]:
        builder = SQLBuilder(self.entity)
        where = f"WHERE {self.predicate.to_sql(builder)}" if self.predicate is not None else ""
        order = ""
        if self.sort_descriptors:
            terms = [
                f"{builder.column(d.key_path)} {'ASC' if d.ascending else 'DESC'}" for d in self.sort_descriptors
            ]
            order = "ORDER BY " + ", ".join(terms)
        limit = ""
        if self.fetch_limit is not None:
            limit = "LIMIT ?"
        sql = " ".join(
            part
            for part in (
                f'SELECT {columns} FROM "{self.entity.table_name}" AS t',
                builder.join_sql,
                where,
                order,
                limit,
            )
            if part
        )
        params = list(builder.params)
        if self.fetch_limit is not None:
            params.append(self.fetch_limit)
        return sql, params


def _sort_key(value: Any) -> tuple[bool, Any]:
    # SQLite orders NULL first ascending.
    return (value is not None, value)
