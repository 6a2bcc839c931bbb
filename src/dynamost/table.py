from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .aws_errors import map_client_error as _map_client_error
from .batch_write import WriteRequest, batch_write
from .config import TableDefinition
from .errors import ConditionFailedError, UpsertRetryExhaustedError, ValidationError
from .expressions import (
    Condition,
    ExpressionContext,
    KeyCondition,
    Update,
    compile_condition,
    create_key_condition,
    serialize_condition,
    serialize_update,
)
from .page_token import decode_page_token, encode_page_token
from .transaction import (
    TransactConditionCheck,
    TransactDelete,
    TransactPut,
    Transaction,
    TransactUpdate,
    TransactWriteAction,
    WriteTransactionItem,
)

logger = logging.getLogger(__name__)

# Page size used while walking a query in delete_all.
DELETE_ALL_PAGE_SIZE = 500

type Record = dict[str, Any]


@dataclass(frozen=True)
class Page:
    items: list[Record]
    next_page_token: str | None = None


@dataclass(frozen=True)
class RetrySignal:
    """Returned by an upsert modification to ask for a fresh read-modify-write cycle."""

    reason: str


def _request_retry(reason: str) -> RetrySignal:
    return RetrySignal(reason=reason)


type Modification = Callable[
    [Record | None, Callable[[str], RetrySignal]],
    Mapping[str, Any] | RetrySignal,
]


class DynamoTable:
    def __init__(
        self,
        definition: TableDefinition,
        *,
        client: Any | None = None,
        parse: Callable[[Mapping[str, Any]], Mapping[str, Any]] | None = None,
    ) -> None:
        self._definition = definition
        self._table_name = definition.table_name
        self._keys = definition.keys
        self._client: Any = client or boto3.client("dynamodb")
        self._parse_record = parse
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @property
    def definition(self) -> TableDefinition:
        return self._definition

    def put(
        self,
        record: Mapping[str, Any],
        *,
        overwrite: bool = False,
        condition: Condition | None = None,
    ) -> Record:
        """Create ``record``.

        Unless ``overwrite`` is set the write fails with
        :class:`ConditionFailedError` when a record with the same key exists.
        """
        item = self._parse(record)
        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Item": self._to_item(item),
            **self._put_condition(overwrite=overwrite, condition=condition),
        }

        try:
            self._client.put_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err
        return item

    def get(self, key: Mapping[str, Any], *, consistent_read: bool = False) -> Record | None:
        try:
            resp = self._client.get_item(
                TableName=self._table_name,
                Key=self._to_key(key),
                ConsistentRead=consistent_read,
            )
        except ClientError as err:
            raise _map_client_error(err) from err

        item = resp.get("Item")
        if not item:
            return None
        return self._from_item(item)

    def delete(self, key: Mapping[str, Any], *, condition: Condition | None = None) -> None:
        req: dict[str, Any] = {"TableName": self._table_name, "Key": self._to_key(key)}
        if condition is not None:
            req.update(self._serialize_fragment(serialize_condition(condition)))

        try:
            self._client.delete_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

    def patch(
        self,
        key: Mapping[str, Any],
        update: Update,
        *,
        condition: Condition | None = None,
    ) -> Record:
        """Apply ``update`` to an existing record and return the new record.

        A patch never creates a record: it fails with
        :class:`ConditionFailedError` when the key does not exist.
        """
        req = self._build_update_request(
            key,
            update,
            condition=self._patch_condition(condition),
            return_values="ALL_NEW",
        )

        try:
            resp = self._client.update_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        attrs = resp.get("Attributes")
        if not attrs:
            raise ValidationError("update did not return Attributes")
        return self._from_item(attrs)

    def upsert(
        self,
        key: Mapping[str, Any],
        modification: Modification,
        *,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> Record:
        """Apply ``modification`` to the current record with optimistic concurrency.

        ``modification(existing, retry)`` receives a copy of the record read
        with strong consistency (``None`` when absent) and returns the desired
        new record, or ``retry(reason)`` to start over with a fresh read.

        The write only succeeds if no attribute of the record read has changed
        and none of the attributes the modification introduces appeared in the
        meantime. Attributes added concurrently that the modification does not
        set are not detected.

        Condition failures and retry requests restart the cycle up to
        ``UpsertSettings.max_attempts`` times; when attempts run out the last
        :class:`ConditionFailedError` is raised, or
        :class:`UpsertRetryExhaustedError` if the last attempt asked for a
        retry. Any other error propagates immediately.
        """
        settings = self._definition.upsert
        key_attributes = self._keys.attributes()
        last_error: ConditionFailedError | None = None
        last_signal: RetrySignal | None = None

        for attempt in range(1, settings.max_attempts + 1):
            if attempt > 1:
                delay = settings.backoff_seconds(attempt - 1)
                if sleep is not None and delay > 0:
                    sleep(delay)

            existing = self.get(key, consistent_read=True)
            outcome = modification(copy.deepcopy(existing), _request_retry)
            if isinstance(outcome, RetrySignal):
                logger.debug(
                    "upsert on %s: retry requested on attempt %d: %s", self._table_name, attempt, outcome.reason
                )
                last_signal, last_error = outcome, None
                continue

            updated = self._parse(outcome)
            # DynamoDB rejects updates that touch key attributes.
            assignments = {k: v for k, v in updated.items() if k not in key_attributes}

            condition: Condition
            if existing is not None:
                condition = {
                    "equals": existing,
                    "attribute_not_exists": [k for k in assignments if k not in existing],
                }
            else:
                condition = {"attribute_not_exists": [self._keys.hash]}

            req = self._build_update_request(
                key,
                {"set": assignments},
                condition=condition,
                return_values="ALL_NEW",
            )

            try:
                resp = self._client.update_item(**req)
            except ClientError as err:
                mapped = _map_client_error(err)
                if not isinstance(mapped, ConditionFailedError):
                    raise mapped from err
                logger.debug("upsert on %s: condition failed on attempt %d", self._table_name, attempt)
                last_error, last_signal = mapped, None
                continue

            return self._from_item(resp.get("Attributes") or {})

        if last_error is not None:
            raise last_error
        assert last_signal is not None
        raise UpsertRetryExhaustedError(attempts=settings.max_attempts, reason=last_signal.reason)

    def query(
        self,
        key: KeyCondition,
        *,
        limit: int | None = None,
        scan_forward: bool = True,
        page_token: str | None = None,
        consistent_read: bool = False,
        filter: Condition | None = None,
    ) -> Page:
        return self._query(
            None,
            key,
            limit=limit,
            scan_forward=scan_forward,
            page_token=page_token,
            consistent_read=consistent_read,
            filter=filter,
        )

    def query_index(
        self,
        index_name: str,
        key: KeyCondition,
        *,
        limit: int | None = None,
        scan_forward: bool = True,
        page_token: str | None = None,
        consistent_read: bool = False,
        filter: Condition | None = None,
    ) -> Page:
        return self._query(
            index_name,
            key,
            limit=limit,
            scan_forward=scan_forward,
            page_token=page_token,
            consistent_read=consistent_read,
            filter=filter,
        )

    def query_all(
        self,
        key: KeyCondition,
        *,
        index_name: str | None = None,
        scan_forward: bool = True,
        consistent_read: bool = False,
        filter: Condition | None = None,
    ) -> list[Record]:
        out: list[Record] = []
        page_token: str | None = None

        while True:
            page = self._query(
                index_name,
                key,
                scan_forward=scan_forward,
                page_token=page_token,
                consistent_read=consistent_read,
                filter=filter,
            )
            out.extend(page.items)
            if page.next_page_token is None:
                break
            page_token = page.next_page_token

        return out

    def scan(
        self,
        *,
        limit: int | None = None,
        page_token: str | None = None,
        consistent_read: bool = False,
        filter: Condition | None = None,
    ) -> Page:
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be > 0")

        req: dict[str, Any] = {"TableName": self._table_name, "ConsistentRead": consistent_read}
        if limit is not None:
            req["Limit"] = limit
        start_key = decode_page_token(page_token)
        if start_key is not None:
            req["ExclusiveStartKey"] = start_key
        if filter is not None:
            fragment = serialize_condition(filter)
            if fragment:
                req["FilterExpression"] = fragment.pop("ConditionExpression")
                req.update(self._serialize_fragment(fragment))

        try:
            resp = self._client.scan(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        return self._page(resp)

    def scan_all(
        self,
        *,
        consistent_read: bool = False,
        filter: Condition | None = None,
    ) -> list[Record]:
        out: list[Record] = []
        page_token: str | None = None

        while True:
            page = self.scan(page_token=page_token, consistent_read=consistent_read, filter=filter)
            out.extend(page.items)
            if page.next_page_token is None:
                break
            page_token = page.next_page_token

        return out

    def batch_put(
        self,
        records: Sequence[Mapping[str, Any]],
        *,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> None:
        """Put any number of records with BatchWriteItem.

        The records are split into store-sized batches and unprocessed items
        are retried with backoff.
        """
        requests: list[WriteRequest] = [
            {"PutRequest": {"Item": self._to_item(self._parse(record))}} for record in records
        ]
        batch_write(
            self._client,
            self._table_name,
            requests,
            settings=self._definition.batch_write,
            sleep=sleep,
        )

    def batch_delete(
        self,
        keys: Sequence[Mapping[str, Any]],
        *,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> None:
        requests: list[WriteRequest] = [{"DeleteRequest": {"Key": self._to_key(key)}} for key in keys]
        batch_write(
            self._client,
            self._table_name,
            requests,
            settings=self._definition.batch_write,
            sleep=sleep,
        )

    def delete_all(
        self,
        key: KeyCondition,
        *,
        scan_forward: bool = True,
        consistent_read: bool = False,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> None:
        """Delete every record matching the query ``key``."""
        self._delete_all(None, key, scan_forward=scan_forward, consistent_read=consistent_read, sleep=sleep)

    def delete_all_by_index(
        self,
        index_name: str,
        key: KeyCondition,
        *,
        scan_forward: bool = True,
        consistent_read: bool = False,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> None:
        """Delete every record matching the query ``key`` on ``index_name``."""
        self._delete_all(index_name, key, scan_forward=scan_forward, consistent_read=consistent_read, sleep=sleep)

    def key_from_record(self, record: Mapping[str, Any]) -> Record:
        return {name: record[name] for name in self._keys.attributes() if name in record}

    def put_transact(
        self,
        record: Mapping[str, Any],
        *,
        transaction: Transaction,
        overwrite: bool = False,
        condition: Condition | None = None,
    ) -> None:
        transaction.add_write(self._transact_put(TransactPut(record, overwrite=overwrite, condition=condition)))

    def patch_transact(
        self,
        key: Mapping[str, Any],
        update: Update,
        *,
        transaction: Transaction,
        condition: Condition | None = None,
    ) -> None:
        transaction.add_write(self._transact_update(TransactUpdate(key, update, condition=condition)))

    def delete_transact(
        self,
        key: Mapping[str, Any],
        *,
        transaction: Transaction,
        condition: Condition | None = None,
    ) -> None:
        transaction.add_write(self._transact_delete(TransactDelete(key, condition=condition)))

    def condition_transact(
        self,
        key: Mapping[str, Any],
        *,
        transaction: Transaction,
        condition: Condition,
    ) -> None:
        transaction.add_write(self._transact_condition_check(TransactConditionCheck(key, condition)))

    def to_transact_write_items(self, actions: Sequence[TransactWriteAction]) -> list[WriteTransactionItem]:
        items: list[WriteTransactionItem] = []
        for action in actions:
            if isinstance(action, TransactPut):
                items.append(self._transact_put(action))
            elif isinstance(action, TransactUpdate):
                items.append(self._transact_update(action))
            elif isinstance(action, TransactDelete):
                items.append(self._transact_delete(action))
            elif isinstance(action, TransactConditionCheck):
                items.append(self._transact_condition_check(action))
            else:
                raise ValidationError(f"unsupported transaction action: {type(action).__name__}")
        return items

    def _transact_put(self, action: TransactPut) -> WriteTransactionItem:
        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Item": self._to_item(self._parse(action.record)),
            **self._put_condition(overwrite=action.overwrite, condition=action.condition),
        }
        return {"Put": req}

    def _transact_update(self, action: TransactUpdate) -> WriteTransactionItem:
        return {
            "Update": self._build_update_request(
                action.key,
                action.update,
                condition=self._patch_condition(action.condition),
            )
        }

    def _transact_delete(self, action: TransactDelete) -> WriteTransactionItem:
        req: dict[str, Any] = {"TableName": self._table_name, "Key": self._to_key(action.key)}
        if action.condition is not None:
            req.update(self._serialize_fragment(serialize_condition(action.condition)))
        return {"Delete": req}

    def _transact_condition_check(self, action: TransactConditionCheck) -> WriteTransactionItem:
        fragment = serialize_condition(action.condition)
        if not fragment:
            raise ValidationError("a condition check requires a non-empty condition")
        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Key": self._to_key(action.key),
            **self._serialize_fragment(fragment),
        }
        return {"ConditionCheck": req}

    def _put_condition(self, *, overwrite: bool, condition: Condition | None) -> dict[str, Any]:
        conditions: list[Condition] = []
        if not overwrite:
            conditions.append({"attribute_not_exists": [self._keys.hash]})
        if condition is not None:
            conditions.append(condition)
        return self._serialize_fragment(serialize_condition({"and": conditions}))

    def _patch_condition(self, condition: Condition | None) -> Condition:
        # patch must never create a record.
        return {"and": [{"attribute_exists": [self._keys.hash]}, condition or {}]}

    def _build_update_request(
        self,
        key: Mapping[str, Any],
        update: Update,
        *,
        condition: Condition | None = None,
        return_values: str | None = None,
    ) -> dict[str, Any]:
        fragment = serialize_update(update, condition=condition, key_attributes=self._keys.attributes())
        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Key": self._to_key(key),
            **self._serialize_fragment(fragment),
        }
        if return_values is not None:
            req["ReturnValues"] = return_values
        return req

    def _query(
        self,
        index_name: str | None,
        key: KeyCondition,
        *,
        limit: int | None = None,
        scan_forward: bool = True,
        page_token: str | None = None,
        consistent_read: bool = False,
        filter: Condition | None = None,
    ) -> Page:
        schema = self._definition.key_schema(index_name)
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be > 0")

        # Key condition and filter share one context so their placeholders never collide.
        ctx = ExpressionContext()
        key_expression = compile_condition(create_key_condition(schema, key), ctx)

        req: dict[str, Any] = {
            "TableName": self._table_name,
            "KeyConditionExpression": key_expression,
            "ScanIndexForward": scan_forward,
            "ConsistentRead": consistent_read,
        }
        if filter is not None:
            filter_expression = compile_condition(filter, ctx)
            if filter_expression:
                req["FilterExpression"] = filter_expression
        req.update(self._serialize_fragment(ctx.attribute_tables()))

        if index_name is not None:
            req["IndexName"] = index_name
        if limit is not None:
            req["Limit"] = limit
        start_key = decode_page_token(page_token)
        if start_key is not None:
            req["ExclusiveStartKey"] = start_key

        try:
            resp = self._client.query(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        return self._page(resp)

    def _delete_all(
        self,
        index_name: str | None,
        key: KeyCondition,
        *,
        scan_forward: bool,
        consistent_read: bool,
        sleep: Callable[[float], None] | None,
    ) -> None:
        page_token: str | None = None

        while True:
            page = self._query(
                index_name,
                key,
                limit=DELETE_ALL_PAGE_SIZE,
                scan_forward=scan_forward,
                page_token=page_token,
                consistent_read=consistent_read,
            )
            self.batch_delete([self.key_from_record(item) for item in page.items], sleep=sleep)
            if page.next_page_token is None:
                break
            page_token = page.next_page_token

    def _page(self, resp: Mapping[str, Any]) -> Page:
        return Page(
            items=[self._from_item(item) for item in resp.get("Items", [])],
            next_page_token=encode_page_token(resp.get("LastEvaluatedKey")),
        )

    def _parse(self, record: Mapping[str, Any]) -> Record:
        if not isinstance(record, Mapping):
            raise ValidationError("record must be a map")
        if self._parse_record is None:
            return dict(record)
        return dict(self._parse_record(record))

    def _serialize(self, value: Any) -> Any:
        try:
            return self._serializer.serialize(value)
        except TypeError as err:
            raise ValidationError(str(err)) from err

    def _serialize_fragment(self, fragment: Mapping[str, Any]) -> dict[str, Any]:
        out = dict(fragment)
        values = out.get("ExpressionAttributeValues")
        if values:
            out["ExpressionAttributeValues"] = {k: self._serialize(v) for k, v in values.items()}
        return out

    def _to_item(self, record: Mapping[str, Any]) -> dict[str, Any]:
        for name in self._keys.attributes():
            if record.get(name) is None:
                raise ValidationError(f"record is missing key attribute: {name}")
        return {k: self._serialize(v) for k, v in record.items()}

    def _to_key(self, key: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(key, Mapping):
            raise ValidationError("key must be a map")

        expected = self._keys.attributes()
        for name in expected:
            if key.get(name) is None:
                raise ValidationError(f"key is missing attribute: {name}")
        extra = sorted(str(k) for k in key if k not in expected)
        if extra:
            raise ValidationError(f"key has non-key attributes: {extra}")

        return {name: self._serialize(key[name]) for name in expected}

    def _from_item(self, item: Mapping[str, Any]) -> Record:
        record = {k: self._deserializer.deserialize(v) for k, v in item.items()}
        if self._parse_record is None:
            return record
        return dict(self._parse_record(record))
