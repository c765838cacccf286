"""
Visibility condition evaluator.

Evaluates a component's ``visible`` condition against the render
context. Conditions read values by path; an unreadable path is None,
which makes comparisons false rather than raising.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from blocktree.runtime.paths import get_by_path
from blocktree.specs.display import Condition, ConditionOp, PathOperand, ValueOperand

# =============================================================================
# Condition Evaluation
# =============================================================================


def evaluate_condition(condition: Condition | None, context: dict[str, Any]) -> bool:
    """
    Evaluate a condition against the render context.

    Args:
        condition: Condition to evaluate; None means visible
        context: Render context (``data``, ``references``, ...)

    Returns:
        True if the condition holds
    """
    if condition is None:
        return True

    if condition.op == ConditionOp.ALL:
        return all(evaluate_condition(c, context) for c in condition.conditions)
    if condition.op == ConditionOp.ANY:
        return any(evaluate_condition(c, context) for c in condition.conditions)

    left = _resolve_operand(condition.left, context)

    if condition.op == ConditionOp.EXISTS:
        return left is not None
    if condition.op == ConditionOp.EMPTY:
        return _is_empty(left)
    if condition.op == ConditionOp.NOT_EMPTY:
        return not _is_empty(left)

    right = _resolve_operand(condition.right, context)
    return _compare(left, condition.op, right)


def _resolve_operand(operand: PathOperand | ValueOperand | None, context: dict[str, Any]) -> Any:
    if operand is None:
        return None
    if isinstance(operand, PathOperand):
        return get_by_path(context, operand.path)
    return operand.value


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str | list | dict | tuple | set):
        return len(value) == 0
    return False


def _normalise(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


def _compare(left: Any, op: ConditionOp, right: Any) -> bool:
    """
    Perform a comparison operation.

    Args:
        left: Value read from the context
        op: Comparison operator
        right: Comparison target

    Returns:
        True if comparison passes
    """
    left = _normalise(left)
    right = _normalise(right)

    if op == ConditionOp.EQUALS:
        return left == right
    if op == ConditionOp.NOT_EQUALS:
        return left != right

    if op in (ConditionOp.IN, ConditionOp.NOT_IN):
        if not isinstance(right, list | tuple | set):
            return op == ConditionOp.NOT_IN
        members = [_normalise(r) for r in right]
        return (left in members) == (op == ConditionOp.IN)

    # Ordering comparisons need two comparable non-null values
    if left is None or right is None:
        return False
    try:
        if op == ConditionOp.GT:
            return left > right  # type: ignore[no-any-return]
        if op == ConditionOp.GTE:
            return left >= right  # type: ignore[no-any-return]
        if op == ConditionOp.LT:
            return left < right  # type: ignore[no-any-return]
        if op == ConditionOp.LTE:
            return left <= right  # type: ignore[no-any-return]
    except TypeError:
        return False

    return False
