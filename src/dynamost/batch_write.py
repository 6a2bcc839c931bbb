from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypedDict

from botocore.exceptions import ClientError

from .aws_errors import map_client_error as _map_client_error
from .config import BatchWriteSettings
from .errors import BatchRetryExceededError

logger = logging.getLogger(__name__)


class PutWriteRequest(TypedDict):
    PutRequest: Mapping[str, Any]


class DeleteWriteRequest(TypedDict):
    DeleteRequest: Mapping[str, Any]


type WriteRequest = PutWriteRequest | DeleteWriteRequest


def _chunked[T](items: Sequence[T], size: int) -> Sequence[Sequence[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [items[i : i + size] for i in range(0, len(items), size)]


def _retry_batch_write(
    client: Any,
    table_name: str,
    requests: Sequence[WriteRequest],
    *,
    settings: BatchWriteSettings,
    sleep: Callable[[float], None] | None,
) -> None:
    pending = list(requests)
    attempt = 0

    while pending:
        if attempt >= settings.max_attempts:
            logger.warning(
                "batch write to %s gave up with %d unprocessed items after %d attempts",
                table_name,
                len(pending),
                attempt,
            )
            raise BatchRetryExceededError(
                operation="batch_write", attempts=attempt, unprocessed_count=len(pending)
            )

        try:
            resp = client.batch_write_item(RequestItems={table_name: pending})
        except ClientError as err:
            raise _map_client_error(err) from err

        pending = list((resp.get("UnprocessedItems") or {}).get(table_name) or [])
        if not pending:
            return

        delay = settings.backoff_seconds(attempt)
        logger.debug(
            "batch write to %s left %d unprocessed items on attempt %d; retrying in %.3fs",
            table_name,
            len(pending),
            attempt + 1,
            delay,
        )
        if sleep is not None and delay > 0:
            sleep(delay)
        attempt += 1


def batch_write(
    client: Any,
    table_name: str,
    requests: Sequence[WriteRequest],
    *,
    settings: BatchWriteSettings | None = None,
    sleep: Callable[[float], None] | None = time.sleep,
) -> None:
    """Write ``requests`` in store-sized chunks, retrying unprocessed items.

    Chunks run on a small thread pool because DynamoDB also throttles a client
    sending many large batches at once. Chunk completion order is not
    defined. The first chunk that fails (store error or exhausted retries)
    fails the whole call once the chunks already in flight have finished.
    """
    settings = settings or BatchWriteSettings()
    if not requests:
        return

    chunks = _chunked(list(requests), settings.max_items)
    if len(chunks) == 1:
        _retry_batch_write(client, table_name, chunks[0], settings=settings, sleep=sleep)
        return

    with ThreadPoolExecutor(max_workers=min(settings.concurrency, len(chunks))) as ex:
        futures = [
            ex.submit(_retry_batch_write, client, table_name, chunk, settings=settings, sleep=sleep)
            for chunk in chunks
        ]
        try:
            for fut in futures:
                fut.result()
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
