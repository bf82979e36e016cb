from __future__ import annotations

from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Iterable, Mapping, Sequence

Row = dict[str, Any]
Filters = Mapping[str, Any]


@dataclass(frozen=True)
class In:
    """Membership predicate: ``column IN values``."""

    values: tuple[Any, ...]

    def __init__(self, values: Iterable[Any]) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False
    nulls_last: bool = True


def normalize_order(order: Order | Sequence[Order] | None) -> list[Order]:
    if order is None:
        return []
    if isinstance(order, Order):
        return [order]
    return list(order)


def value_matches(expected: Any, actual: Any) -> bool:
    if expected is None:
        return actual is None
    if isinstance(expected, In):
        return actual in expected.values
    return actual == expected


def row_matches(filters: Filters | None, row: Mapping[str, Any]) -> bool:
    if not filters:
        return True
    return all(value_matches(expected, row.get(column)) for column, expected in filters.items())


def sort_rows(rows: list[Row], order: Order | Sequence[Order] | None) -> list[Row]:
    orders = normalize_order(order)
    if not orders:
        return rows

    def compare(left: Row, right: Row) -> int:
        for term in orders:
            a = left.get(term.column)
            b = right.get(term.column)
            if a is None and b is None:
                continue
            if a is None:
                return 1 if term.nulls_last else -1
            if b is None:
                return -1 if term.nulls_last else 1
            if a == b:
                continue
            result = -1 if a < b else 1
            return -result if term.descending else result
        return 0

    return sorted(rows, key=cmp_to_key(compare))
