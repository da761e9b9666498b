"""
Shared condition evaluator — used by the Automation Runner to gate executions.

Evaluates Condition / ConditionGroup trees against an event context.
Pure and total: missing paths resolve to the UNDEFINED sentinel, comparisons
between mismatched types fall back to string comparison, nothing raises.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from models.schemas import Condition, ConditionGroup, ConditionOperator, LogicOperator


class _Undefined:
    """Sentinel for a path that is absent (or null) in the context."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value by dot path, e.g. 'order.total_value'.

    A flat key containing dots ('order.total_value' stored as-is) wins over
    traversal. Missing keys and None both yield UNDEFINED.
    """
    if field in data:
        value = data[field]
        return UNDEFINED if value is None else value
    current: Any = data
    for part in field.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return UNDEFINED
    return UNDEFINED if current is None else current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize(a: Any, b: Any) -> tuple[Any, Any]:
    """Same-kind values compare natively; anything else compares as strings."""
    if _is_number(a) and _is_number(b):
        return a, b
    if type(a) is type(b):
        return a, b
    return _as_text(a), _as_text(b)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _equals(a: Any, b: Any) -> bool:
    a, b = _normalize(a, b)
    return a == b


def _ordered(cmp: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        a, b = _normalize(a, b)
        try:
            return cmp(a, b)
        except TypeError:
            return cmp(_as_text(a), _as_text(b))
    return compare


def _contains(a: Any, b: Any) -> bool:
    if isinstance(a, (list, tuple, set)):
        return any(_equals(item, b) for item in a)
    if isinstance(a, dict):
        return _as_text(b) in {_as_text(k) for k in a}
    return _as_text(b).lower() in _as_text(a).lower()


def _in_set(a: Any, b: Any) -> bool:
    options = b if isinstance(b, (list, tuple, set)) else [b]
    return any(_equals(a, option) for option in options)


OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: lambda a, b: not _equals(a, b),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.GREATER_THAN: _ordered(lambda a, b: a > b),
    ConditionOperator.LESS_THAN: _ordered(lambda a, b: a < b),
    ConditionOperator.IN_SET: _in_set,
}


def evaluate_condition(condition: Condition, data: dict[str, Any]) -> bool:
    """Evaluate a single leaf condition against the context."""
    val = get_nested_value(data, condition.field)
    if condition.operator == ConditionOperator.IS_NOT_SET:
        return val is UNDEFINED
    if condition.operator == ConditionOperator.IS_SET:
        return val is not UNDEFINED
    # Absent values satisfy only is_not_set.
    if val is UNDEFINED:
        return False
    return OPERATORS[condition.operator](val, condition.value)


def evaluate_group(group: ConditionGroup, data: dict[str, Any]) -> bool:
    """Evaluate a group; AND stops at the first false, OR at the first true.

    An empty group matches.
    """
    if not group.conditions:
        return True
    results = (
        evaluate_group(child, data) if isinstance(child, ConditionGroup)
        else evaluate_condition(child, data)
        for child in group.conditions
    )
    if group.logic == LogicOperator.OR:
        return any(results)
    return all(results)


def evaluate_conditions(conditions: Optional[ConditionGroup], data: dict[str, Any]) -> bool:
    """Evaluate an automation's condition tree. No tree means always true."""
    if conditions is None:
        return True
    return evaluate_group(conditions, data)
