"""Field access and comparison operators shared by predicates and segments."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class _Missing:
    """Marker for a path that does not resolve (distinct from None)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_field_value(obj: Any, path: str) -> Any:
    """
    Resolve a dot-separated path inside nested mappings and lists.

    List elements are addressed by integer segments ("items.0.name").
    Any segment that does not resolve yields MISSING, never an error.
    """
    if not path:
        return MISSING

    current = obj
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if not part.isdigit() or int(part) >= len(current):
                return MISSING
            current = current[int(part)]
        else:
            return MISSING
    return current


def is_number(value: Any) -> bool:
    """Real numbers only; booleans do not count."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_list(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def strict_equals(actual: Any, expected: Any) -> bool:
    """Equality that never crosses value kinds (True != 1, "1" != 1)."""
    if actual is MISSING or expected is MISSING:
        return actual is expected
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    if is_number(actual) and is_number(expected):
        return actual == expected
    if _is_list(actual) and _is_list(expected):
        return list(actual) == list(expected)
    if isinstance(actual, Mapping) and isinstance(expected, Mapping):
        return dict(actual) == dict(expected)
    if type(actual) is not type(expected):
        return False
    return actual == expected


def _member(container: Any, item: Any) -> bool:
    return any(strict_equals(element, item) for element in container)


def compare(operator: str, actual: Any, expected: Any) -> bool:
    """
    Apply a comparison operator to a resolved value.

    Type mismatches evaluate to False for ordering and containment operators.
    Unknown operators evaluate to False.
    """
    if operator == "equals":
        return strict_equals(actual, expected)
    if operator == "notEquals":
        return not strict_equals(actual, expected)
    if operator == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if _is_list(actual):
            return _member(actual, expected)
        return False
    if operator == "notContains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected not in actual
        if _is_list(actual):
            return not _member(actual, expected)
        return True
    if operator in ("greaterThan", "lessThan", "greaterThanOrEqual", "lessThanOrEqual"):
        if not (is_number(actual) and is_number(expected)):
            return False
        if operator == "greaterThan":
            return actual > expected
        if operator == "lessThan":
            return actual < expected
        if operator == "greaterThanOrEqual":
            return actual >= expected
        return actual <= expected
    if operator == "in":
        return _is_list(expected) and _member(expected, actual)
    if operator == "notIn":
        return _is_list(expected) and not _member(expected, actual)
    if operator == "exists":
        return actual is not MISSING and actual is not None
    if operator == "notExists":
        return actual is MISSING or actual is None
    return False
