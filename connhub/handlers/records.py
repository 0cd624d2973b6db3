"""Filter, sort and paginate over in-memory record sequences."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..errors import ConnectionManagerError, ErrorKind


class _Missing:
    """Value of a path that does not exist in a record."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __eq__(self, other: object) -> bool:
        return other is None or isinstance(other, _Missing)

    def __hash__(self) -> int:
        return hash(None)


MISSING: Any = _Missing()

OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$regex")


@dataclass(frozen=True, slots=True)
class ReadResult:
    data: tuple[Any, ...]
    total: int
    limit: int | None
    offset: int
    has_more: bool


def get_nested_value(record: Any, path: str) -> Any:
    """Follow a dot path through mappings and list indices; ``MISSING`` when absent."""

    current = record
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _compare(value: Any, operand: Any) -> bool:
        if value is MISSING or value is None or operand is None:
            return False
        try:
            return bool(op(value, operand))
        except TypeError:
            return False

    return _compare


def _regex(value: Any, operand: Any) -> bool:
    if value is MISSING or value is None:
        return False
    if isinstance(operand, re.Pattern):
        pattern = operand
    else:
        try:
            pattern = re.compile(str(operand))
        except re.error as exc:
            raise ConnectionManagerError(ErrorKind.PARSE_ERROR, f"invalid $regex pattern {operand!r}: {exc}") from exc
    return pattern.search(str(value)) is not None


def _member(value: Any, operand: Any) -> bool:
    if operand is None:
        return False
    if isinstance(operand, (str, bytes, Mapping)) or not isinstance(operand, Iterable):
        raise ConnectionManagerError(
            ErrorKind.PARSE_ERROR, f"$in and $nin expect a list, got {type(operand).__name__}"
        )
    return any(value == candidate for candidate in operand)


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda value, operand: value == operand,
    "$ne": lambda value, operand: not value == operand,
    "$gt": _ordered(lambda value, operand: value > operand),
    "$gte": _ordered(lambda value, operand: value >= operand),
    "$lt": _ordered(lambda value, operand: value < operand),
    "$lte": _ordered(lambda value, operand: value <= operand),
    "$in": _member,
    "$nin": lambda value, operand: not _member(value, operand),
    "$regex": _regex,
}


def _is_operator_object(condition: Any) -> bool:
    return isinstance(condition, Mapping) and bool(condition) and all(
        isinstance(key, str) and key.startswith("$") for key in condition
    )


def matches_condition(value: Any, condition: Any) -> bool:
    if not _is_operator_object(condition):
        return value == condition
    for operator, operand in condition.items():
        comparator = _COMPARATORS.get(operator)
        if comparator is None:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"unknown filter operator '{operator}'")
        if not comparator(value, operand):
            return False
    return True


def matches(record: Any, filters: Mapping[str, Any] | None) -> bool:
    """A record matches when every filtered path matches."""

    if not filters:
        return True
    return all(matches_condition(get_nested_value(record, path), condition) for path, condition in filters.items())


def filter_records(records: Sequence[Any], filters: Mapping[str, Any] | None) -> list[Any]:
    return [record for record in records if matches(record, filters)]


def _parse_sort(sort_by: Any) -> tuple[str, bool]:
    if isinstance(sort_by, str):
        return sort_by, False
    if isinstance(sort_by, Sequence) and sort_by:
        path = str(sort_by[0])
        order = str(sort_by[1]).lower() if len(sort_by) > 1 and sort_by[1] is not None else "asc"
        if order not in {"asc", "desc"}:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"unknown sort order '{order}'")
        return path, order == "desc"
    raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"invalid sortBy value {sort_by!r}")


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is MISSING or value is None:
        return (3, 0)
    if isinstance(value, (bool, int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, str(value))


def sort_records(records: Sequence[Any], sort_by: Any) -> list[Any]:
    """Sort by ``path`` or ``[path, order]``; missing values go last when ascending."""

    if not sort_by:
        return list(records)
    path, descending = _parse_sort(sort_by)
    return sorted(records, key=lambda record: _sort_key(get_nested_value(record, path)), reverse=descending)


def paginate(records: Sequence[Any], limit: int | None, offset: int | None) -> ReadResult:
    start = max(int(offset or 0), 0)
    total = len(records)
    if limit is None:
        page = records[start:]
        has_more = False
    else:
        size = max(int(limit), 0)
        page = records[start : start + size]
        has_more = size > 0 and start + size < total
    return ReadResult(data=tuple(page), total=total, limit=limit, offset=start, has_more=has_more)


__all__ = [
    "MISSING",
    "OPERATORS",
    "ReadResult",
    "filter_records",
    "get_nested_value",
    "matches",
    "paginate",
    "sort_records",
]
