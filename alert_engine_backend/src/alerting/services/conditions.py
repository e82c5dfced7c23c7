"""Condition tree evaluation.

A condition tree is either a `SimpleCondition` leaf or a `CompoundCondition`
(and/or) node. Evaluation is pure and total: malformed input, unknown operators
and unknown logic values all evaluate to False and are logged.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional

from src.alerting.schemas.rules import CompoundCondition, ConditionNode, SimpleCondition

logger = logging.getLogger(__name__)


def _as_number(v: Any) -> Optional[float]:
    # bool is an int subclass but not a measurement.
    if isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _numeric(cmp: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return cmp(a, b)

    return op


def _equals(actual: Any, expected: Any) -> bool:
    # True == 1 in Python; a flag is never equal to a measurement.
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _is_sequence(v: Any) -> bool:
    return isinstance(v, (str, list, tuple))


def _contains(actual: Any, expected: Any) -> bool:
    if not _is_sequence(actual):
        return False
    if isinstance(actual, str) and not isinstance(expected, str):
        return False
    return expected in actual


def _not_contains(actual: Any, expected: Any) -> bool:
    if not _is_sequence(actual):
        return False
    if isinstance(actual, str) and not isinstance(expected, str):
        return False
    return expected not in actual


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "gt": _numeric(lambda a, b: a > b),
    "lt": _numeric(lambda a, b: a < b),
    "gte": _numeric(lambda a, b: a >= b),
    "lte": _numeric(lambda a, b: a <= b),
    "eq": _equals,
    "neq": lambda a, b: not _equals(a, b),
    "contains": _contains,
    "not_contains": _not_contains,
}


class ConditionEvaluator:
    """Recursive-descent evaluator over condition trees."""

    def evaluate(self, record: Mapping, node: ConditionNode) -> bool:
        try:
            if isinstance(node, SimpleCondition):
                return self._simple(record, node)
            if isinstance(node, CompoundCondition):
                return self._compound(record, node)
            logger.warning("Unsupported condition node type=%s; evaluating to false", type(node).__name__)
            return False
        except Exception:
            logger.exception("Condition evaluation failed; evaluating to false")
            return False

    def _simple(self, record: Mapping, node: SimpleCondition) -> bool:
        op = OPERATORS.get(node.operator)
        if op is None:
            logger.warning("Unknown condition operator=%r on field=%s", node.operator, node.field)
            return False
        if node.field not in record:
            return False
        return bool(op(record[node.field], node.value))

    def _compound(self, record: Mapping, node: CompoundCondition) -> bool:
        logic = (node.logic or "").lower()
        # Generators keep all()/any() short-circuiting.
        if logic == "and":
            return all(self.evaluate(record, child) for child in node.conditions)
        if logic == "or":
            return any(self.evaluate(record, child) for child in node.conditions)
        logger.warning("Unknown compound logic=%r; evaluating to false", node.logic)
        return False


_default = ConditionEvaluator()


# PUBLIC_INTERFACE
def evaluate(record: Mapping, node: ConditionNode) -> bool:
    """Evaluate a condition tree against a telemetry record."""
    return _default.evaluate(record, node)
