from __future__ import annotations

import logging
import threading
import time

import pytest

from dynamost import AwsError, BatchRetryExceededError, BatchWriteSettings
from dynamost.batch_write import batch_write
from dynamost.testkit import client_error


def _put_requests(n: int) -> list[dict]:
    return [{"PutRequest": {"Item": {"id": {"S": f"item-{i}"}, "account": {"S": "account-1"}}}} for i in range(n)]


class _ConcurrencyTrackingClient:
    def __init__(self, *, table_name: str, parallelism: int = 2) -> None:
        self._table_name = table_name
        self._parallelism = parallelism
        self._lock = threading.Lock()
        self._all_in_flight = threading.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.chunks: list[list[dict]] = []

    def batch_write_item(self, *, RequestItems):  # noqa: N803
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.chunks.append(list(RequestItems[self._table_name]))
            if self.in_flight >= self._parallelism:
                self._all_in_flight.set()

        self._all_in_flight.wait(timeout=5)
        time.sleep(0.01)

        with self._lock:
            self.in_flight -= 1
        return {"UnprocessedItems": {}}


class _ScriptedUnprocessedClient:
    def __init__(self, *, table_name: str, unprocessed: list[list[dict]]) -> None:
        self._table_name = table_name
        self._unprocessed = list(unprocessed)
        self.requests: list[list[dict]] = []

    def batch_write_item(self, *, RequestItems):  # noqa: N803
        self.requests.append(list(RequestItems[self._table_name]))
        if not self._unprocessed:
            return {}
        return {"UnprocessedItems": {self._table_name: self._unprocessed.pop(0)}}


class _AlwaysUnprocessedClient:
    def __init__(self) -> None:
        self.calls = 0

    def batch_write_item(self, *, RequestItems):  # noqa: N803
        self.calls += 1
        return {"UnprocessedItems": RequestItems}


class _FailingClient:
    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def batch_write_item(self, *, RequestItems):  # noqa: N803
        with self._lock:
            self.calls += 1
        raise client_error("ValidationException", "bad item", operation="BatchWriteItem")


def test_batch_write_splits_into_chunks_with_two_in_flight() -> None:
    client = _ConcurrencyTrackingClient(table_name="users")
    requests = _put_requests(75)

    batch_write(client, "users", requests, sleep=None)

    assert sorted(len(c) for c in client.chunks) == [25, 25, 25]
    assert client.max_in_flight == 2
    written = sorted(r["PutRequest"]["Item"]["id"]["S"] for c in client.chunks for r in c)
    assert written == sorted(f"item-{i}" for i in range(75))


def test_batch_write_respects_configured_concurrency() -> None:
    client = _ConcurrencyTrackingClient(table_name="users", parallelism=1)

    batch_write(client, "users", _put_requests(60), settings=BatchWriteSettings(max_items=10, concurrency=1))

    assert len(client.chunks) == 6
    assert client.max_in_flight == 1


def test_batch_write_retries_unprocessed_items_with_backoff() -> None:
    requests = _put_requests(25)
    client = _ScriptedUnprocessedClient(table_name="users", unprocessed=[requests[15:], requests[20:]])
    sleeps: list[float] = []

    batch_write(client, "users", requests, sleep=sleeps.append)

    assert client.requests == [requests, requests[15:], requests[20:]]
    assert sleeps == pytest.approx([0.05, 0.1])


def test_batch_write_gives_up_after_five_attempts() -> None:
    client = _AlwaysUnprocessedClient()

    with pytest.raises(BatchRetryExceededError, match="unprocessed items after 5 attempts") as exc:
        batch_write(client, "users", _put_requests(25), sleep=lambda _: None)

    assert client.calls == 5
    assert exc.value.attempts == 5
    assert exc.value.unprocessed_count == 25


def test_batch_write_with_no_requests_makes_no_calls() -> None:
    client = _AlwaysUnprocessedClient()
    batch_write(client, "users", [])
    assert client.calls == 0


def test_batch_write_surfaces_store_errors() -> None:
    client = _FailingClient()

    with pytest.raises(AwsError, match="bad item") as exc:
        batch_write(client, "users", _put_requests(75), sleep=None)

    assert exc.value.code == "ValidationException"
    assert 1 <= client.calls <= 3


def test_batch_write_logs_retries_and_exhaustion(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="dynamost.batch_write")

    with pytest.raises(BatchRetryExceededError):
        batch_write(_AlwaysUnprocessedClient(), "users", _put_requests(3), sleep=None)

    levels = [r.levelno for r in caplog.records if r.name == "dynamost.batch_write"]
    assert levels.count(logging.DEBUG) == 5
    assert levels[-1] == logging.WARNING
