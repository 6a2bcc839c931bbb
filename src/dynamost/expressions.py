"""Compile structured conditions and updates into DynamoDB expressions.

Conditions are plain maps. Within one map every operator is AND-ed::

    {"attribute_exists": ["user"], "equals": {"firstName": "Jane"}}

and maps compose with ``and`` / ``or``::

    {"or": [{"attribute_exists": ["user"]}, {"equals": {"firstName": "Jane", "lastName": "Doe"}}]}

Attribute names and values never appear inline: they are replaced by
``#name`` / ``:refN`` placeholders allocated by an :class:`ExpressionContext`.
A single DynamoDB request must use exactly one context, otherwise the
placeholders of its expressions collide.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Collection, Mapping, Sequence
from typing import Any, Literal

from .config import KeySchema
from .errors import ValidationError
from .validation import validate_condition, validate_range_condition, validate_update

type Condition = Mapping[str, Any]
type RangeKeyCondition = Mapping[str, Any]
type KeyCondition = Mapping[str, Any]
type Update = Mapping[str, Any]

_PLACEHOLDER_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


class ExpressionContext:
    def __init__(self) -> None:
        self.names: dict[str, str] = {}
        self.values: dict[str, Any] = {}
        self._name_refs: dict[str, str] = {}
        self._value_counter = 0

    def name_ref(self, attribute: str) -> str:
        existing = self._name_refs.get(attribute)
        if existing is not None:
            return existing

        base = "#" + (_PLACEHOLDER_UNSAFE.sub("_", attribute) or "attr")
        ref = base
        suffix = 0
        while ref in self.names:
            suffix += 1
            ref = f"{base}_{suffix}"

        self._name_refs[attribute] = ref
        self.names[ref] = attribute
        return ref

    def value_ref(self, value: Any) -> str:
        ref = f":ref{self._value_counter}"
        self._value_counter += 1
        self.values[ref] = value
        return ref

    def attribute_tables(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.names:
            out["ExpressionAttributeNames"] = dict(self.names)
        # DynamoDB rejects an empty ExpressionAttributeValues map.
        if self.values:
            out["ExpressionAttributeValues"] = dict(self.values)
        return out


def _comparison(template: str) -> Callable[[ExpressionContext, Mapping[str, Any]], list[str]]:
    def serialize(ctx: ExpressionContext, entries: Mapping[str, Any]) -> list[str]:
        return [template.format(name=ctx.name_ref(k), value=ctx.value_ref(v)) for k, v in entries.items()]

    return serialize


def _existence(function: str) -> Callable[[ExpressionContext, Sequence[str]], list[str]]:
    def serialize(ctx: ExpressionContext, names: Sequence[str]) -> list[str]:
        return [f"{function}({ctx.name_ref(name)})" for name in names]

    return serialize


def _between(ctx: ExpressionContext, entries: Mapping[str, Any]) -> list[str]:
    out: list[str] = []
    for name, (low, high) in entries.items():
        ref = ctx.name_ref(name)
        out.append(f"({ref} BETWEEN {ctx.value_ref(low)} AND {ctx.value_ref(high)})")
    return out


_SERIALIZERS: dict[str, Callable[[ExpressionContext, Any], list[str]]] = {
    "attribute_exists": _existence("attribute_exists"),
    "attribute_not_exists": _existence("attribute_not_exists"),
    "equals": _comparison("{name} = {value}"),
    "not_equals": _comparison("{name} <> {value}"),
    "between": _between,
    "begins_with": _comparison("begins_with({name}, {value})"),
    "greater_than": _comparison("{name} > {value}"),
    "greater_than_or_equal_to": _comparison("{name} >= {value}"),
    "less_than": _comparison("{name} < {value}"),
    "less_than_or_equal_to": _comparison("{name} <= {value}"),
}


def _join(ctx: ExpressionContext, conditions: Sequence[Condition], joiner: Literal["AND", "OR"]) -> str | None:
    parts = [p for p in (_compile(c, ctx) for c in conditions) if p]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return f" {joiner} ".join(f"({p})" for p in parts)


def _compile(condition: Condition, ctx: ExpressionContext) -> str | None:
    if "or" in condition:
        return _join(ctx, condition["or"], "OR")
    if "and" in condition:
        return _join(ctx, condition["and"], "AND")

    fragments: list[str] = []
    for op, operand in condition.items():
        if not operand:
            continue
        fragments.extend(_SERIALIZERS[op](ctx, operand))

    if not fragments:
        return None
    return " AND ".join(fragments)


def compile_condition(condition: Condition, context: ExpressionContext) -> str | None:
    """Lower ``condition`` into an expression string, or ``None`` if it has no leaves."""
    validate_condition(condition)
    return _compile(condition, context)


def serialize_condition(condition: Condition, *, context: ExpressionContext | None = None) -> dict[str, Any]:
    ctx = context or ExpressionContext()
    expression = compile_condition(condition, ctx)
    if not expression:
        return {}
    return {"ConditionExpression": expression, **ctx.attribute_tables()}


def serialize_update(
    update: Update,
    *,
    condition: Condition | None = None,
    key_attributes: Collection[str] = (),
) -> dict[str, Any]:
    validate_update(update, key_attributes=key_attributes)

    ctx = ExpressionContext()
    condition_expression = compile_condition(condition, ctx) if condition is not None else None

    assignments = [f"{ctx.name_ref(k)} = {ctx.value_ref(v)}" for k, v in update["set"].items()]

    out: dict[str, Any] = {"UpdateExpression": "SET " + ", ".join(assignments)}
    if condition_expression:
        out["ConditionExpression"] = condition_expression
    out.update(ctx.attribute_tables())
    return out


def _range_to_condition(attribute: str, condition: RangeKeyCondition) -> Condition:
    if "or" in condition:
        return {"or": [_range_to_condition(attribute, c) for c in condition["or"]]}
    if "and" in condition:
        return {"and": [_range_to_condition(attribute, c) for c in condition["and"]]}
    return {op: {attribute: operand} for op, operand in condition.items() if operand is not None}


def create_key_condition(schema: KeySchema, key_condition: KeyCondition) -> Condition:
    if not isinstance(key_condition, Mapping):
        raise ValidationError("key condition must be a map")

    allowed = set(schema.attributes())
    unknown = sorted(str(k) for k in key_condition if k not in allowed)
    if unknown:
        raise ValidationError(f"key condition references non-key attributes: {unknown}")

    hash_value = key_condition.get(schema.hash)
    if hash_value is None:
        raise ValidationError(f"hash key value is required: {schema.hash}")

    hash_condition: Condition = {"equals": {schema.hash: hash_value}}

    if schema.range is None:
        return hash_condition
    range_condition = key_condition.get(schema.range)
    if not range_condition:
        return hash_condition

    validate_range_condition(range_condition)
    return {"and": [hash_condition, _range_to_condition(schema.range, range_condition)]}


def serialize_key_condition(
    schema: KeySchema,
    key_condition: KeyCondition,
    *,
    context: ExpressionContext | None = None,
) -> dict[str, Any]:
    ctx = context or ExpressionContext()
    expression = compile_condition(create_key_condition(schema, key_condition), ctx)
    if not expression:  # pragma: no cover (the hash equality is always present)
        raise ValidationError("key condition compiled to an empty expression")
    return {"KeyConditionExpression": expression, **ctx.attribute_tables()}
