from __future__ import annotations

from botocore.exceptions import ClientError

from .errors import AwsError, ConditionFailedError, TransactionCanceledError


def map_client_error(err: ClientError) -> Exception:
    if isinstance(err, AwsError):
        return err

    code = str(err.response.get("Error", {}).get("Code", ""))
    if code == "ConditionalCheckFailedException":
        return ConditionFailedError(err.response, err.operation_name)
    if code == "TransactionCanceledException":
        return TransactionCanceledError(err.response, err.operation_name)

    return AwsError(err.response, err.operation_name)


def map_transaction_error(err: ClientError) -> Exception:
    if isinstance(err, AwsError):
        return err

    code = str(err.response.get("Error", {}).get("Code", ""))
    message = str(err.response.get("Error", {}).get("Message", ""))

    if code == "TransactionCanceledException" or "Transaction cancelled" in message:
        return TransactionCanceledError(err.response, err.operation_name)

    return map_client_error(err)
