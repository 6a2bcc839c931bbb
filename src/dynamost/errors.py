from __future__ import annotations

from typing import Any

from botocore.exceptions import ClientError


class DynamostError(Exception):
    pass


class ValidationError(DynamostError):
    pass


class InvalidPageTokenError(ValidationError):
    pass


class EmptyTransactionError(DynamostError):
    def __init__(self) -> None:
        super().__init__("No writes were added to the transaction")


class BatchRetryExceededError(DynamostError):
    def __init__(self, *, operation: str, attempts: int, unprocessed_count: int) -> None:
        super().__init__(
            f"{operation}: returned some unprocessed items after {attempts} attempts "
            f"(unprocessed={unprocessed_count})"
        )
        self.operation = operation
        self.attempts = attempts
        self.unprocessed_count = unprocessed_count


class UpsertRetryExhaustedError(DynamostError):
    def __init__(self, *, attempts: int, reason: str) -> None:
        super().__init__(f"upsert: retry requested after {attempts} attempts: {reason}")
        self.attempts = attempts
        self.reason = reason


class AwsError(ClientError, DynamostError):
    """A store failure.

    Still a ``ClientError`` carrying the botocore ``response`` and
    ``operation_name``, so code matching on botocore error codes keeps working.
    """

    def __init__(self, error_response: dict[str, Any], operation_name: str) -> None:
        super().__init__(error_response, operation_name)
        error = error_response.get("Error", {})
        self.code = str(error.get("Code", "")) or "UnknownError"
        self.message = str(error.get("Message", ""))


class ConditionFailedError(AwsError):
    pass


class TransactionCanceledError(AwsError):
    def __init__(self, error_response: dict[str, Any], operation_name: str) -> None:
        super().__init__(error_response, operation_name)
        reasons = error_response.get("CancellationReasons") or []
        self.reason_codes: tuple[str, ...] = tuple(
            str(reason.get("Code") or "None") if isinstance(reason, dict) else "None"
            for reason in reasons
        )

    @property
    def condition_failed(self) -> bool:
        return "ConditionalCheckFailed" in self.reason_codes or "ConditionalCheckFailed" in self.message
