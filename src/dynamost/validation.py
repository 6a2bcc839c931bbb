from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from typing import Any

from .errors import ValidationError

MaxFieldNameLength = 255
MaxNestedDepth = 32

EXISTENCE_OPERATORS = frozenset({"attribute_exists", "attribute_not_exists"})
COMPARISON_OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "begins_with",
        "greater_than",
        "greater_than_or_equal_to",
        "less_than",
        "less_than_or_equal_to",
    }
)
RANGE_OPERATORS = frozenset({"between"})
CONDITION_OPERATORS = EXISTENCE_OPERATORS | COMPARISON_OPERATORS | RANGE_OPERATORS
COMPOSITE_OPERATORS = frozenset({"and", "or"})

# The operators DynamoDB accepts on a sort key in a KeyConditionExpression.
RANGE_KEY_OPERATORS = frozenset(
    {
        "between",
        "begins_with",
        "greater_than",
        "greater_than_or_equal_to",
        "less_than",
        "less_than_or_equal_to",
    }
)

UPDATE_OPERATIONS = frozenset({"set"})


def validate_field_name(name: Any) -> None:
    if not isinstance(name, str) or not name:
        raise ValidationError("attribute name must be a non-empty string")
    if len(name) > MaxFieldNameLength:
        raise ValidationError(f"attribute name exceeds {MaxFieldNameLength} characters: {name[:32]}...")


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _validate_composite(node: Mapping[str, Any], *, depth: int, child: Any) -> None:
    if len(node) != 1:
        raise ValidationError("a composite condition cannot mix and/or with other operators")
    (op, children), *_ = node.items()
    if not _is_sequence(children):
        raise ValidationError(f"{op} requires a list of conditions")
    for c in children:
        child(c, depth=depth + 1)


def validate_condition(condition: Any, *, depth: int = 0) -> None:
    if depth > MaxNestedDepth:
        raise ValidationError(f"condition nesting exceeds {MaxNestedDepth} levels")
    if not isinstance(condition, Mapping):
        raise ValidationError("condition must be a map")

    if COMPOSITE_OPERATORS.intersection(condition):
        _validate_composite(condition, depth=depth, child=validate_condition)
        return

    for op, operand in condition.items():
        if op not in CONDITION_OPERATORS:
            raise ValidationError(f"unsupported condition operator: {op}")
        if operand is None:
            continue

        if op in EXISTENCE_OPERATORS:
            if not _is_sequence(operand):
                raise ValidationError(f"{op} requires a list of attribute names")
            for name in operand:
                validate_field_name(name)
            continue

        if not isinstance(operand, Mapping):
            raise ValidationError(f"{op} requires a map of attribute names to values")
        for name, value in operand.items():
            validate_field_name(name)
            if op in RANGE_OPERATORS and (not _is_sequence(value) or len(value) != 2):
                raise ValidationError(f"{op} requires a [low, high] pair for {name}")


def validate_range_condition(condition: Any, *, depth: int = 0) -> None:
    if depth > MaxNestedDepth:
        raise ValidationError(f"range key condition nesting exceeds {MaxNestedDepth} levels")
    if not isinstance(condition, Mapping):
        raise ValidationError("range key condition must be a map")

    if COMPOSITE_OPERATORS.intersection(condition):
        _validate_composite(condition, depth=depth, child=validate_range_condition)
        return

    for op, operand in condition.items():
        if op not in RANGE_KEY_OPERATORS:
            raise ValidationError(f"unsupported range key operator: {op}")
        if op == "between" and operand is not None and (not _is_sequence(operand) or len(operand) != 2):
            raise ValidationError("between requires a [low, high] pair")


def validate_update(update: Any, *, key_attributes: Collection[str] = ()) -> None:
    if not isinstance(update, Mapping):
        raise ValidationError("update must be a map")

    for op in update:
        if op == "remove":
            raise ValidationError("attribute removal is not supported")
        if op not in UPDATE_OPERATIONS:
            raise ValidationError(f"unsupported update operation: {op}")

    assignments = update.get("set")
    if not isinstance(assignments, Mapping):
        raise ValidationError("update requires a set map")
    if not assignments:
        raise ValidationError("no updates provided")

    for name in assignments:
        validate_field_name(name)
        if name in key_attributes:
            raise ValidationError(f"cannot update key attribute: {name}")
