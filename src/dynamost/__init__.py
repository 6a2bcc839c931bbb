from __future__ import annotations

import json
import re
from importlib.resources import files
from typing import TYPE_CHECKING, Any

from .config import (
    BatchWriteSettings,
    KeySchema,
    TableDefinition,
    UpsertSettings,
    load_table_definition,
    load_table_definition_file,
)
from .errors import (
    AwsError,
    BatchRetryExceededError,
    ConditionFailedError,
    DynamostError,
    EmptyTransactionError,
    InvalidPageTokenError,
    TransactionCanceledError,
    UpsertRetryExhaustedError,
    ValidationError,
)
from .expressions import ExpressionContext, serialize_condition, serialize_key_condition, serialize_update
from .page_token import PageToken
from .transaction import (
    TransactConditionCheck,
    TransactDelete,
    Transacter,
    Transaction,
    TransactionManager,
    TransactPut,
    TransactUpdate,
    TransactWriteAction,
)

if TYPE_CHECKING:
    from .table import DynamoTable, Page, RetrySignal


def _read_repo_version() -> str:
    try:
        data = json.loads(files(__package__).joinpath("version.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return "0.0.0"

    version = data.get("version")
    return version if isinstance(version, str) and version else "0.0.0"


def _normalize_repo_version(repo_version: str) -> str:
    match = re.match(r"^(\d+\.\d+\.\d+)-rc\.?([0-9]+)$", repo_version)
    if match:
        return f"{match.group(1)}rc{match.group(2)}"
    return repo_version


__repo_version__ = _read_repo_version()
__version__ = _normalize_repo_version(__repo_version__)


def __getattr__(name: str) -> Any:
    if name in {"DynamoTable", "Page", "RetrySignal"}:
        from . import table

        return getattr(table, name)
    raise AttributeError(name)


__all__ = [
    "AwsError",
    "BatchRetryExceededError",
    "BatchWriteSettings",
    "ConditionFailedError",
    "DynamoTable",
    "DynamostError",
    "EmptyTransactionError",
    "ExpressionContext",
    "InvalidPageTokenError",
    "KeySchema",
    "Page",
    "PageToken",
    "RetrySignal",
    "TableDefinition",
    "TransactConditionCheck",
    "TransactDelete",
    "TransactPut",
    "TransactUpdate",
    "TransactWriteAction",
    "Transacter",
    "Transaction",
    "TransactionCanceledError",
    "TransactionManager",
    "UpsertRetryExhaustedError",
    "UpsertSettings",
    "ValidationError",
    "__repo_version__",
    "__version__",
    "load_table_definition",
    "load_table_definition_file",
    "serialize_condition",
    "serialize_key_condition",
    "serialize_update",
]
