"""Composable, parameterized SQL predicates.

A ``Clause`` is a SQL fragment using ``?`` markers plus its bound values.
Clauses are combined with ``and_``/``or_``/``not_`` and rendered for a
backend by a dialect, which also owns the backend-specific forms for list
membership and array overlap (JSON arrays on SQLite, ``TEXT[]`` on
Postgres). Values are always bound, never interpolated.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import aiosqlite


@dataclass(frozen=True)
class Clause:
    sql: str
    params: tuple[Any, ...] = ()

    def __and__(self, other: "Clause") -> "Clause":
        return and_(self, other)

    def __or__(self, other: "Clause") -> "Clause":
        return or_(self, other)


TRUE = Clause("1 = 1")
FALSE = Clause("1 = 0")


def _join(operator: str, clauses: Iterable[Clause | None]) -> Clause | None:
    parts = [clause for clause in clauses if clause is not None]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    sql = f" {operator} ".join(f"({clause.sql})" for clause in parts)
    params: tuple[Any, ...] = ()
    for clause in parts:
        params += clause.params
    return Clause(sql, params)


def and_(*clauses: Clause | None) -> Clause | None:
    return _join("AND", clauses)


def or_(*clauses: Clause | None) -> Clause | None:
    return _join("OR", clauses)


def not_(clause: Clause | None) -> Clause | None:
    if clause is None:
        return None
    return Clause(f"NOT ({clause.sql})", clause.params)


def _unique(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    result: list[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


class SqliteDialect:
    name = "sqlite"

    def in_list(self, column: str, values: Sequence[Any]) -> Clause:
        items = _unique(values)
        if not items:
            return FALSE
        markers = ", ".join("?" for _ in items)
        return Clause(f"{column} IN ({markers})", tuple(items))

    def not_in_list(self, column: str, values: Sequence[Any]) -> Clause:
        items = _unique(values)
        if not items:
            return TRUE
        markers = ", ".join("?" for _ in items)
        return Clause(f"{column} NOT IN ({markers})", tuple(items))

    def overlaps(self, column: str, values: Sequence[Any]) -> Clause:
        """JSON array column shares at least one element with ``values``."""
        items = _unique(values)
        if not items:
            return FALSE
        markers = ", ".join("?" for _ in items)
        return Clause(
            f"EXISTS (SELECT 1 FROM json_each({column}) AS je WHERE je.value IN ({markers}))",
            tuple(items),
        )

    def array_contains(self, column: str, value: Any) -> Clause:
        return Clause(f"EXISTS (SELECT 1 FROM json_each({column}) AS je WHERE je.value = ?)", (value,))

    def array_empty(self, column: str) -> Clause:
        return Clause(f"COALESCE(json_array_length({column}), 0) = 0")

    def contains_text(self, column: str, needle: str) -> Clause:
        return Clause(f"instr(lower(COALESCE({column}, '')), ?) > 0", (needle.lower(),))

    def json_text(self, column: str, key: str) -> str:
        return f"json_extract({column}, '$.{key}')"

    def render(self, clause: Clause | None) -> tuple[str, list[Any]]:
        if clause is None:
            return "", []
        return clause.sql, list(clause.params)


class PostgresDialect:
    name = "postgres"

    def in_list(self, column: str, values: Sequence[Any]) -> Clause:
        items = _unique(values)
        if not items:
            return FALSE
        return Clause(f"{column} = ANY(?::text[])", (items,))

    def not_in_list(self, column: str, values: Sequence[Any]) -> Clause:
        items = _unique(values)
        if not items:
            return TRUE
        return Clause(f"NOT ({column} = ANY(?::text[]))", (items,))

    def overlaps(self, column: str, values: Sequence[Any]) -> Clause:
        items = _unique(values)
        if not items:
            return FALSE
        return Clause(f"COALESCE({column}, '{{}}'::text[]) && ?::text[]", (items,))

    def array_contains(self, column: str, value: Any) -> Clause:
        return Clause(f"? = ANY(COALESCE({column}, '{{}}'::text[]))", (value,))

    def array_empty(self, column: str) -> Clause:
        return Clause(f"COALESCE(cardinality({column}), 0) = 0")

    def contains_text(self, column: str, needle: str) -> Clause:
        return Clause(f"strpos(lower(COALESCE({column}, '')), ?) > 0", (needle.lower(),))

    def json_text(self, column: str, key: str) -> str:
        return f"({column}->>'{key}')"

    def render(self, clause: Clause | None, start: int = 1) -> tuple[str, list[Any]]:
        if clause is None:
            return "", []
        return renumber(clause.sql, start), list(clause.params)


def renumber(sql: str, start: int = 1) -> str:
    """Rewrite ``?`` markers as ``$n`` placeholders."""
    parts = sql.split("?")
    out = [parts[0]]
    for index, part in enumerate(parts[1:]):
        out.append(f"${start + index}")
        out.append(part)
    return "".join(out)


def dialect_for(db: Any) -> SqliteDialect | PostgresDialect:
    if isinstance(db, aiosqlite.Connection):
        return SqliteDialect()
    return PostgresDialect()
