# /chatflow/workflows/conditions.py

"""
Comparison operators of the `condition` node.

Pure functions, no I/O. `greater` and `less` coerce both sides to numbers
the way a JavaScript `Number()` cast does: blank strings are 0, anything
unparsable is NaN, and every comparison involving NaN is false.
"""

import math
from typing import Callable, Dict, Optional


def to_number(value: Optional[str]) -> float:
    if value is None:
        return math.nan
    text = value.strip()
    if not text:
        return 0.0
    # float() accepts spellings that Number() rejects
    if text.lower().lstrip("+-") in ("nan", "inf") or "_" in text:
        return math.nan
    try:
        return float(text)
    except ValueError:
        return math.nan


def _equals(left: Optional[str], right: str) -> bool:
    return left == right


def _not_equals(left: Optional[str], right: str) -> bool:
    return left != right


def _contains(left: Optional[str], right: str) -> bool:
    return left is not None and right in left


def _greater(left: Optional[str], right: str) -> bool:
    return to_number(left) > to_number(right)


def _less(left: Optional[str], right: str) -> bool:
    return to_number(left) < to_number(right)


OPERATORS: Dict[str, Callable[[Optional[str], str], bool]] = {
    "equals": _equals,
    "not_equals": _not_equals,
    "contains": _contains,
    "greater": _greater,
    "less": _less,
}


def evaluate_condition(left: Optional[str], operator: str, right: str) -> bool:
    """Unknown operators evaluate to False."""
    comparator = OPERATORS.get(operator)
    if comparator is None:
        return False
    return comparator(left, right)
