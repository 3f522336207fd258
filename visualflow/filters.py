"""Declarative boolean predicates over chain data.

A rule maps field paths to either a literal (equality) or an operator
mapping, e.g.::

    {"$trigger.payload.amount": {"_gt": 100}, "status": "paid"}

``_and``/``_or`` take a list of rules and ``_not`` takes a single rule.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable

from .errors import FilterError
from .paths import get_path

LOGICAL_KEYS = frozenset({"_and", "_or", "_not"})


def _is_empty(value: Any) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, (list, tuple)) and len(value) == 0


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _check(value: Any, expected: Any) -> bool:
        if value is None or expected is None:
            return False
        try:
            return compare(value, expected)
        except TypeError:
            left, right = _as_number(value), _as_number(expected)
            if left is None or right is None:
                return False
            return compare(left, right)

    return _check


def _equals(value: Any, expected: Any) -> bool:
    if value == expected:
        return True
    if isinstance(value, str) != isinstance(expected, str):
        left, right = _as_number(value), _as_number(expected)
        return left is not None and left == right
    return False


def _member(value: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return any(_equals(value, candidate) for candidate in expected)


def _contains(value: Any, expected: Any) -> bool:
    if isinstance(value, str):
        return str(expected) in value
    if isinstance(value, (list, tuple)):
        return any(_equals(item, expected) for item in value)
    if isinstance(value, Mapping):
        try:
            return expected in value
        except TypeError:
            return False
    return False


def _starts_with(value: Any, expected: Any) -> bool:
    return isinstance(value, str) and value.startswith(str(expected))


def _ends_with(value: Any, expected: Any) -> bool:
    return isinstance(value, str) and value.endswith(str(expected))


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "_eq": _equals,
    "_neq": lambda value, expected: not _equals(value, expected),
    "_gt": _ordered(lambda a, b: a > b),
    "_gte": _ordered(lambda a, b: a >= b),
    "_lt": _ordered(lambda a, b: a < b),
    "_lte": _ordered(lambda a, b: a <= b),
    "_in": _member,
    "_nin": lambda value, expected: not _member(value, expected),
    "_contains": _contains,
    "_starts_with": _starts_with,
    "_ends_with": _ends_with,
    "_null": lambda value, expected: (value is None) == bool(expected),
    "_empty": lambda value, expected: _is_empty(value) == bool(expected),
}


def is_operator_mapping(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and len(value) > 0
        and all(isinstance(key, str) and key.startswith("_") for key in value)
    )


def _check_operators(value: Any, operators: Mapping[str, Any], strict: bool) -> bool:
    for name, expected in operators.items():
        check = OPERATORS.get(name)
        if check is None:
            if strict:
                raise FilterError(f"Unknown filter operator: {name}")
            # Unknown operators pass.
            continue
        if not check(value, expected):
            return False
    return True


def _sub_rules(key: str, condition: Any, strict: bool) -> list[Any]:
    # Malformed groups are vacuous, like unknown operators.
    if isinstance(condition, (list, tuple)):
        return list(condition)
    if condition is not None and strict:
        raise FilterError(f"{key} takes a list of rules")
    return []


def evaluate_filter(rule: Mapping[str, Any] | None, data: Any, *, strict: bool = False) -> bool:
    """Return whether ``data`` satisfies ``rule``. An empty rule always passes."""
    if not rule:
        return True
    if not isinstance(rule, Mapping):
        if strict:
            raise FilterError("Filter rule must be a mapping")
        return True

    for key, condition in rule.items():
        if key == "_and":
            if not all(evaluate_filter(sub, data, strict=strict) for sub in _sub_rules(key, condition, strict)):
                return False
        elif key == "_or":
            subs = _sub_rules(key, condition, strict)
            if subs and not any(evaluate_filter(sub, data, strict=strict) for sub in subs):
                return False
        elif key == "_not":
            if not isinstance(condition, Mapping):
                if strict:
                    raise FilterError("_not takes a single rule")
                continue
            if evaluate_filter(condition, data, strict=strict):
                return False
        else:
            value = get_path(data, key)
            if is_operator_mapping(condition):
                if not _check_operators(value, condition, strict):
                    return False
            elif not _equals(value, condition):
                return False
    return True


def collect_operators(rule: Any) -> set[str]:
    """Every operator and logical key used anywhere in ``rule``."""
    found: set[str] = set()
    if not isinstance(rule, Mapping):
        return found
    for key, condition in rule.items():
        if key in ("_and", "_or"):
            found.add(key)
            if isinstance(condition, (list, tuple)):
                for sub in condition:
                    found |= collect_operators(sub)
        elif key == "_not":
            found.add(key)
            found |= collect_operators(condition)
        elif isinstance(key, str) and key.startswith("_"):
            found.add(key)
        elif is_operator_mapping(condition):
            found.update(condition)
    return found


def unknown_operators(rule: Any) -> set[str]:
    return {name for name in collect_operators(rule) if name not in OPERATORS and name not in LOGICAL_KEYS}
