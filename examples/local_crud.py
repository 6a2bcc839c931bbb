from __future__ import annotations

import dataclasses
import logging
import os
import uuid
from pathlib import Path

import boto3

from dynamost import DynamoTable, TransactionManager, load_table_definition_file


def _client():
    return boto3.client(
        "dynamodb",
        endpoint_url=os.environ.get("DYNAMODB_ENDPOINT", "http://localhost:8000"),
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "dummy"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "dummy"),
    )


def main() -> None:
    logging.basicConfig(level=logging.DEBUG if os.environ.get("DEBUG") else logging.INFO)

    client = _client()
    definition = load_table_definition_file(Path(__file__).with_name("users.yaml"))
    definition = dataclasses.replace(definition, table_name=f"dynamost_example_{uuid.uuid4().hex[:12]}")

    client.create_table(
        TableName=definition.table_name,
        KeySchema=[
            {"AttributeName": "id", "KeyType": "HASH"},
            {"AttributeName": "createdAt", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "id", "AttributeType": "S"},
            {"AttributeName": "createdAt", "AttributeType": "S"},
            {"AttributeName": "account", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "account-index",
                "KeySchema": [
                    {"AttributeName": "account", "KeyType": "HASH"},
                    {"AttributeName": "createdAt", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.get_waiter("table_exists").wait(TableName=definition.table_name)

    try:
        users = DynamoTable(definition, client=client)

        users.put({"id": "u1", "createdAt": "2020-01-01", "account": "a1", "name": "Jane"})
        users.batch_put([{"id": f"u{i}", "createdAt": "2020-02-01", "account": "a1"} for i in range(2, 40)])

        print("get:", users.get({"id": "u1", "createdAt": "2020-01-01"}))
        print(
            "patch:",
            users.patch({"id": "u1", "createdAt": "2020-01-01"}, {"set": {"name": "Janet"}}),
        )
        print(
            "upsert:",
            users.upsert(
                {"id": "u1", "createdAt": "2020-01-01"},
                lambda existing, retry: {**(existing or {}), "visits": (existing or {}).get("visits", 0) + 1},
            ),
        )

        page = users.query_index("account-index", {"account": "a1"}, limit=10)
        print("first page of account a1:", len(page.items), "next token:", page.next_page_token)

        TransactionManager(client).run(
            lambda txn: users.put_transact({"id": "u99", "createdAt": "2021-01-01", "account": "a2"}, transaction=txn)
        )

        users.delete_all_by_index("account-index", {"account": "a1"})
        print("remaining:", users.scan_all())
    finally:
        client.delete_table(TableName=definition.table_name)


if __name__ == "__main__":
    main()
