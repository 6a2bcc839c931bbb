from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import pytest

from dynamost import AwsError, ConditionFailedError, DynamoTable, KeySchema, TableDefinition, ValidationError
from dynamost.mocks import ANY, FakeDynamoDBClient
from dynamost.testkit import client_error

USERS = TableDefinition(
    table_name="users",
    keys=KeySchema(hash="id", range="createdAt"),
    secondary_indexes={"account-index": KeySchema(hash="account", range="createdAt")},
)

JANE = {"id": "u1", "createdAt": "2020-01-01", "account": "a1", "name": "Jane"}
JANE_ITEM = {
    "id": {"S": "u1"},
    "createdAt": {"S": "2020-01-01"},
    "account": {"S": "a1"},
    "name": {"S": "Jane"},
}


def _table(client: FakeDynamoDBClient, **kwargs: Any) -> DynamoTable:
    return DynamoTable(USERS, client=client, **kwargs)


def test_put_refuses_to_overwrite_by_default() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "put_item",
        {
            "TableName": "users",
            "Item": JANE_ITEM,
            "ConditionExpression": "attribute_not_exists(#id)",
            "ExpressionAttributeNames": {"#id": "id"},
        },
    )

    assert _table(client).put(JANE) == JANE
    client.assert_no_pending()
    assert "ExpressionAttributeValues" not in client.calls[0][1]


def test_put_with_overwrite_sends_no_condition() -> None:
    client = FakeDynamoDBClient()
    client.expect("put_item", {"TableName": "users", "Item": JANE_ITEM})

    _table(client).put(JANE, overwrite=True)

    assert "ConditionExpression" not in client.calls[0][1]


def test_put_combines_existence_guard_with_condition() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "put_item",
        {
            "ConditionExpression": "(attribute_not_exists(#id)) AND (#name <> :ref0)",
            "ExpressionAttributeNames": {"#id": "id", "#name": "name"},
            "ExpressionAttributeValues": {":ref0": {"S": "Bob"}},
        },
    )

    _table(client).put(JANE, condition={"not_equals": {"name": "Bob"}})
    client.assert_no_pending()


def test_put_of_existing_record_raises_condition_failed() -> None:
    client = FakeDynamoDBClient()
    client.expect("put_item", error=client_error("ConditionalCheckFailedException", operation="PutItem"))

    with pytest.raises(ConditionFailedError):
        _table(client).put(JANE)


def test_put_rejects_records_missing_key_attributes() -> None:
    client = FakeDynamoDBClient()
    with pytest.raises(ValidationError, match="missing key attribute: createdAt"):
        _table(client).put({"id": "u1"})
    assert client.calls == []


def test_put_rejects_unsupported_values() -> None:
    client = FakeDynamoDBClient()
    with pytest.raises(ValidationError):
        _table(client).put({**JANE, "score": 1.5})
    assert client.calls == []


def test_get_returns_record() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "get_item",
        {"TableName": "users", "Key": {"id": {"S": "u1"}, "createdAt": {"S": "2020-01-01"}}, "ConsistentRead": True},
        response={"Item": {**JANE_ITEM, "age": {"N": "30"}}},
    )

    got = _table(client).get({"id": "u1", "createdAt": "2020-01-01"}, consistent_read=True)
    assert got == {**JANE, "age": Decimal(30)}


def test_get_missing_record_returns_none() -> None:
    client = FakeDynamoDBClient()
    client.expect("get_item", {"ConsistentRead": False}, response={})

    assert _table(client).get({"id": "u1", "createdAt": "2020-01-01"}) is None


@pytest.mark.parametrize(
    ("key", "match"),
    [
        ({"id": "u1"}, "key is missing attribute: createdAt"),
        ({"id": "u1", "createdAt": "x", "name": "Jane"}, "non-key attributes"),
        ("u1", "key must be a map"),
    ],
)
def test_key_must_be_exactly_the_table_key(key: Any, match: str) -> None:
    client = FakeDynamoDBClient()
    with pytest.raises(ValidationError, match=match):
        _table(client).get(key)
    assert client.calls == []


def test_delete_with_condition() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "delete_item",
        {
            "TableName": "users",
            "Key": {"id": {"S": "u1"}, "createdAt": {"S": "2020-01-01"}},
            "ConditionExpression": "#name = :ref0",
            "ExpressionAttributeValues": {":ref0": {"S": "Jane"}},
        },
    )

    _table(client).delete({"id": "u1", "createdAt": "2020-01-01"}, condition={"equals": {"name": "Jane"}})
    client.assert_no_pending()


def test_delete_without_condition() -> None:
    client = FakeDynamoDBClient()
    client.expect("delete_item", {"TableName": "users"})

    _table(client).delete({"id": "u1", "createdAt": "2020-01-01"})

    assert "ConditionExpression" not in client.calls[0][1]


def test_patch_requires_existing_record_and_returns_new_image() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "update_item",
        {
            "TableName": "users",
            "Key": {"id": {"S": "u1"}, "createdAt": {"S": "2020-01-01"}},
            "ConditionExpression": "attribute_exists(#id)",
            "UpdateExpression": "SET #name = :ref0",
            "ExpressionAttributeNames": {"#id": "id", "#name": "name"},
            "ExpressionAttributeValues": {":ref0": {"S": "Janet"}},
            "ReturnValues": "ALL_NEW",
        },
        response={"Attributes": {**JANE_ITEM, "name": {"S": "Janet"}}},
    )

    got = _table(client).patch({"id": "u1", "createdAt": "2020-01-01"}, {"set": {"name": "Janet"}})
    assert got == {**JANE, "name": "Janet"}


def test_patch_numbers_condition_values_before_update_values() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "update_item",
        {
            "ConditionExpression": "(attribute_exists(#id)) AND (#name = :ref0)",
            "UpdateExpression": "SET #name = :ref1",
            "ExpressionAttributeValues": {":ref0": {"S": "Jane"}, ":ref1": {"S": "Janet"}},
        },
        response={"Attributes": JANE_ITEM},
    )

    _table(client).patch(
        {"id": "u1", "createdAt": "2020-01-01"},
        {"set": {"name": "Janet"}},
        condition={"equals": {"name": "Jane"}},
    )
    client.assert_no_pending()


def test_patch_of_missing_record_raises_condition_failed() -> None:
    client = FakeDynamoDBClient()
    client.expect("update_item", error=client_error("ConditionalCheckFailedException", operation="UpdateItem"))

    with pytest.raises(ConditionFailedError):
        _table(client).patch({"id": "nope", "createdAt": "x"}, {"set": {"name": "x"}})


@pytest.mark.parametrize(
    ("update", "match"),
    [
        ({"set": {"createdAt": "2021"}}, "cannot update key attribute: createdAt"),
        ({"set": {}}, "no updates provided"),
        ({"remove": ["name"]}, "attribute removal is not supported"),
    ],
)
def test_patch_rejects_invalid_updates_without_calling_the_store(update: dict, match: str) -> None:
    client = FakeDynamoDBClient()
    with pytest.raises(ValidationError, match=match):
        _table(client).patch({"id": "u1", "createdAt": "2020-01-01"}, update)
    assert client.calls == []


def test_parse_hook_runs_on_writes_and_reads() -> None:
    seen: list[Mapping[str, Any]] = []

    def parse(record: Mapping[str, Any]) -> Mapping[str, Any]:
        seen.append(record)
        if "name" not in record:
            raise ValueError("name is required")
        return {**record, "name": str(record["name"]).strip()}

    client = FakeDynamoDBClient()
    client.expect("put_item", {"Item": {"name": {"S": "Jane"}}})
    client.expect("get_item", response={"Item": {**JANE_ITEM, "name": {"S": " Jane "}}})

    table = _table(client, parse=parse)
    assert table.put({**JANE, "name": "  Jane"})["name"] == "Jane"
    assert table.get({"id": "u1", "createdAt": "2020-01-01"}) == JANE
    assert len(seen) == 2

    with pytest.raises(ValueError, match="name is required"):
        table.put({"id": "u2", "createdAt": "2020"})
    client.assert_no_pending()


def test_store_errors_keep_native_details() -> None:
    client = FakeDynamoDBClient()
    client.expect("get_item", error=client_error("ResourceNotFoundException", "no table", operation="GetItem"))

    with pytest.raises(AwsError) as exc:
        _table(client).get({"id": "u1", "createdAt": "2020-01-01"})

    assert exc.value.response["Error"]["Code"] == "ResourceNotFoundException"
    assert exc.value.code == "ResourceNotFoundException"


def test_fake_client_matches_partial_requests() -> None:
    client = FakeDynamoDBClient()
    client.expect("put_item", {"TableName": "users", "Item": ANY})
    _table(client).put(JANE)
    client.assert_no_pending()
