from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ValidationError

# DynamoDB rejects BatchWriteItem calls with more than 25 requests.
BATCH_WRITE_MAX_ITEMS = 25
# DynamoDB rejects TransactWriteItems calls with more than 100 actions.
TRANSACTION_MAX_ACTIONS = 100


@dataclass(frozen=True)
class KeySchema:
    hash: str
    range: str | None = None

    def attributes(self) -> tuple[str, ...]:
        if self.range is None:
            return (self.hash,)
        return (self.hash, self.range)


@dataclass(frozen=True)
class BatchWriteSettings:
    max_items: int = BATCH_WRITE_MAX_ITEMS
    concurrency: int = 2
    max_attempts: int = 5
    base_delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if not 0 < self.max_items <= BATCH_WRITE_MAX_ITEMS:
            raise ValidationError(f"batch_write.max_items must be between 1 and {BATCH_WRITE_MAX_ITEMS}")
        if self.concurrency <= 0:
            raise ValidationError("batch_write.concurrency must be > 0")
        if self.max_attempts <= 0:
            raise ValidationError("batch_write.max_attempts must be > 0")
        if self.base_delay_seconds < 0:
            raise ValidationError("batch_write.base_delay_seconds must be >= 0")

    def backoff_seconds(self, attempt: int) -> float:
        return self.base_delay_seconds * (2.0**attempt) / 2


@dataclass(frozen=True)
class UpsertSettings:
    max_attempts: int = 3
    min_delay_seconds: float = 0.1
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValidationError("upsert.max_attempts must be > 0")
        if self.min_delay_seconds < 0:
            raise ValidationError("upsert.min_delay_seconds must be >= 0")
        if self.backoff_factor < 1:
            raise ValidationError("upsert.backoff_factor must be >= 1")

    def backoff_seconds(self, attempt: int) -> float:
        return self.min_delay_seconds * (self.backoff_factor ** (attempt - 1))


@dataclass(frozen=True)
class TableDefinition:
    table_name: str
    keys: KeySchema
    secondary_indexes: Mapping[str, KeySchema] = field(default_factory=dict)
    batch_write: BatchWriteSettings = field(default_factory=BatchWriteSettings)
    upsert: UpsertSettings = field(default_factory=UpsertSettings)

    def __post_init__(self) -> None:
        if not self.table_name:
            raise ValidationError("table_name is required")
        if not self.keys.hash:
            raise ValidationError("keys.hash is required")

    def key_schema(self, index_name: str | None = None) -> KeySchema:
        if index_name is None:
            return self.keys
        schema = self.secondary_indexes.get(index_name)
        if schema is None:
            raise ValidationError(f"unknown index: {index_name}")
        return schema


def load_table_definition(raw: str) -> TableDefinition:
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as err:
        raise ValidationError("invalid table definition YAML/JSON") from err

    if not isinstance(parsed, dict):
        raise ValidationError("table definition must be a map/object")

    return table_definition_from_mapping(parsed)


def load_table_definition_file(path: str | Path) -> TableDefinition:
    return load_table_definition(Path(path).read_text(encoding="utf-8"))


def table_definition_from_mapping(doc: Mapping[str, Any]) -> TableDefinition:
    table_name = doc.get("table")
    if not isinstance(table_name, str) or not table_name:
        raise ValidationError("table definition missing table")

    keys = _key_schema(doc.get("keys"), path="keys")

    indexes_raw = doc.get("secondary_indexes") or {}
    if not isinstance(indexes_raw, dict):
        raise ValidationError("secondary_indexes must be a map")
    indexes: dict[str, KeySchema] = {}
    for name, schema in indexes_raw.items():
        if not isinstance(name, str) or not name:
            raise ValidationError("secondary index names must be non-empty strings")
        indexes[name] = _key_schema(schema, path=f"secondary_indexes.{name}")

    return TableDefinition(
        table_name=table_name,
        keys=keys,
        secondary_indexes=indexes,
        batch_write=BatchWriteSettings(**_settings(doc.get("batch_write"), BatchWriteSettings, "batch_write")),
        upsert=UpsertSettings(**_settings(doc.get("upsert"), UpsertSettings, "upsert")),
    )


def _key_schema(raw: Any, *, path: str) -> KeySchema:
    if not isinstance(raw, dict):
        raise ValidationError(f"{path} must be a map")
    hash_attr = raw.get("hash")
    if not isinstance(hash_attr, str) or not hash_attr:
        raise ValidationError(f"{path}.hash is required")
    range_attr = raw.get("range")
    if range_attr is not None and (not isinstance(range_attr, str) or not range_attr):
        raise ValidationError(f"{path}.range must be a non-empty string")
    return KeySchema(hash=hash_attr, range=range_attr)


def _settings(raw: Any, cls: type, path: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(f"{path} must be a map")

    known = set(cls.__dataclass_fields__)
    unknown = sorted(str(k) for k in raw if k not in known)
    if unknown:
        raise ValidationError(f"{path}: unknown settings {unknown}")

    out: dict[str, Any] = {}
    for k, v in raw.items():
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValidationError(f"{path}.{k} must be a number")
        out[k] = v
    return out
