from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import ClientError

from .aws_errors import map_transaction_error as _map_transaction_error
from .config import TRANSACTION_MAX_ACTIONS
from .errors import EmptyTransactionError, ValidationError
from .expressions import Condition, Update

if TYPE_CHECKING:
    from .table import DynamoTable

logger = logging.getLogger(__name__)

type WriteTransactionItem = Mapping[str, Any]


@dataclass(frozen=True)
class TransactPut:
    record: Mapping[str, Any]
    overwrite: bool = False
    condition: Condition | None = None


@dataclass(frozen=True)
class TransactUpdate:
    key: Mapping[str, Any]
    update: Update
    condition: Condition | None = None


@dataclass(frozen=True)
class TransactDelete:
    key: Mapping[str, Any]
    condition: Condition | None = None


@dataclass(frozen=True)
class TransactConditionCheck:
    key: Mapping[str, Any]
    condition: Condition


type TransactWriteAction = TransactPut | TransactUpdate | TransactDelete | TransactConditionCheck


class Transaction(Protocol):
    def add_write(self, item: WriteTransactionItem) -> None: ...


class _TransactionHandle:
    def __init__(self, writes: list[WriteTransactionItem]) -> None:
        self._writes = writes

    def add_write(self, item: WriteTransactionItem) -> None:
        self._writes.append(item)


def _transact_write_items(client: Any, items: Sequence[WriteTransactionItem]) -> None:
    if not items:
        raise EmptyTransactionError()
    if len(items) > TRANSACTION_MAX_ACTIONS:
        raise ValidationError(f"a transaction supports at most {TRANSACTION_MAX_ACTIONS} actions")

    logger.debug("committing transaction with %d actions", len(items))
    try:
        client.transact_write_items(TransactItems=list(items))
    except ClientError as err:
        raise _map_transaction_error(err) from err


class TransactionManager:
    """Collects writes from many call sites and commits them atomically.

    ``run`` hands the callback a transaction handle; table methods such as
    :meth:`DynamoTable.put_transact` register their writes on it. When the
    callback returns, every registered write is committed with a single
    ``TransactWriteItems`` call and the callback's return value is passed
    through.

    One manager models one in-flight transaction: do not call ``run``
    concurrently on the same instance. The collected writes are cleared after
    every commit attempt, so the manager can be reused afterwards.
    """

    def __init__(self, client: Any) -> None:
        if client is None:
            raise ValueError("client is required")
        self._client = client
        self._writes: list[WriteTransactionItem] = []
        self._transaction = _TransactionHandle(self._writes)

    @property
    def pending_writes(self) -> tuple[WriteTransactionItem, ...]:
        return tuple(self._writes)

    def run[R](self, callback: Callable[[Transaction], R]) -> R:
        try:
            result = callback(self._transaction)
            _transact_write_items(self._client, self._writes)
            return result
        finally:
            self._writes.clear()


class Transacter:
    """Commits typed actions against several tables in one transaction."""

    def __init__(self, client: Any, tables: Mapping[str, DynamoTable]) -> None:
        if client is None:
            raise ValueError("client is required")
        self._client = client
        self._tables = dict(tables)

    def transact_write(self, txn: Mapping[str, Sequence[TransactWriteAction]]) -> None:
        items: list[WriteTransactionItem] = []
        for name, actions in txn.items():
            table = self._tables.get(name)
            if table is None:
                raise ValidationError(f"unknown table: {name}")
            items.extend(table.to_transact_write_items(actions or ()))

        _transact_write_items(self._client, items)
