from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from botocore.exceptions import ClientError

from .mocks import ANY, FakeDynamoDBClient


def no_sleep(_: float) -> None:
    return None


def client_error(
    code: str,
    message: str = "",
    *,
    operation: str = "DynamoDB",
    cancellation_reasons: Sequence[str | None] | None = None,
) -> ClientError:
    """Build the ``ClientError`` botocore raises for a failed DynamoDB call.

    ``cancellation_reasons`` lists one reason code per transaction action, with
    ``None`` for actions that did not cause the cancellation.
    """
    response: dict[str, Any] = {"Error": {"Code": code, "Message": message}}
    if cancellation_reasons is not None:
        response["CancellationReasons"] = [{"Code": reason or "None"} for reason in cancellation_reasons]
    return ClientError(response, operation)


__all__ = [
    "ANY",
    "FakeDynamoDBClient",
    "client_error",
    "no_sleep",
]
