from __future__ import annotations

import logging
import threading
import time
from unittest.mock import patch

import pytest

from riakhttp.cleaner import (
    BucketCleaner,
    CleanerConfig,
    DeleteTask,
    SlotPool,
)
from riakhttp.client import Client
from riakhttp.errors import (
    BadRequestError,
    ConfigurationError,
    ServiceUnavailableError,
    TransportError,
    UnhandledResponseError,
    UnknownKeyError,
)

from .conftest import FakeConnection, make_response


class FakeConn:
    def __init__(self, index: int) -> None:
        self.index = index
        self.closed = False
        self.busy = False

    def close(self) -> None:
        self.closed = True


class FakeStoreClient:
    """Stands in for Client: lists from a dict and records deletes."""

    def __init__(self, buckets, missing=(), errors=None, delay=0.0, unlistable=()):
        self.buckets = buckets
        self.missing = set(missing)
        self.errors = dict(errors or {})
        self.delay = delay
        self.unlistable = set(unlistable)
        self.deleted = []
        self.connections = []
        self.in_flight = 0
        self.peak = 0
        self.shared_connection_use = False
        self._lock = threading.Lock()

    def connect(self):
        with self._lock:
            conn = FakeConn(len(self.connections))
            self.connections.append(conn)
        return conn

    def list_keys(self, bucket, out, connection=None):
        try:
            if bucket in self.unlistable:
                raise UnhandledResponseError(500, "Unexpected response listing keys")
            for key in self.buckets[bucket]:
                out.put(key)
        finally:
            out.close()

    def delete_item(self, bucket, key, params=None, connection=None):
        with self._lock:
            if connection.busy:
                self.shared_connection_use = True
            connection.busy = True
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            scripted = self.errors.get((bucket, key))
            if scripted:
                error = scripted.pop(0)
                if error is not None:
                    raise error
            if (bucket, key) in self.missing:
                raise UnknownKeyError()
            with self._lock:
                self.deleted.append((bucket, key))
        finally:
            with self._lock:
                self.in_flight -= 1
                connection.busy = False


def _cleaner(client, **config) -> BucketCleaner:
    return BucketCleaner(CleanerConfig(**config), client=client)


class TestConfig:
    @pytest.mark.parametrize(
        "kwargs",
        [{"concurrency": 0}, {"concurrency": -3}, {"max_retries": -1}, {"retry_delay": -1}, {"timeout": 0}],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ConfigurationError):
            CleanerConfig(**kwargs).validate()

    def test_cleaner_validates(self):
        with pytest.raises(ConfigurationError, match="at least 1"):
            BucketCleaner(CleanerConfig(concurrency=0), client=FakeStoreClient({}))

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("RIAK_URL", "http://db9:8098/")
        monkeypatch.setenv("RIAK_CLIENT_ID", "cleaner-1")
        config = CleanerConfig.from_environment()
        assert config.root_url == "http://db9:8098/"
        assert config.client_id == "cleaner-1"
        assert config.concurrency == 1
        assert config.verbose is False

    def test_default_client_built_from_config(self):
        cleaner = BucketCleaner(CleanerConfig(root_url="http://db2:8098/", client_id="x", timeout=7))
        assert cleaner.client.host == "db2:8098"
        assert cleaner.client.client_id == "x"
        assert cleaner.client.timeout == 7


class TestSlotPool:
    def test_rejects_empty_pool(self):
        with pytest.raises(ConfigurationError):
            SlotPool(0, object)

    def test_slot_released_on_failure(self):
        pool = SlotPool(1, object)
        with pytest.raises(RuntimeError):
            with pool.acquire():
                raise RuntimeError("boom")
        assert pool.in_flight == 0
        with pool.acquire() as slot:
            assert slot.uses == 1

    def test_connection_dialed_once_per_slot(self):
        dialed = []
        pool = SlotPool(2, lambda: dialed.append(1) or object())
        for _ in range(5):
            with pool.acquire() as slot:
                slot.connection
                slot.connection
        assert len(dialed) == 1

    def test_acquire_blocks_when_all_slots_taken(self):
        pool = SlotPool(1, object)
        acquired = threading.Event()

        def second():
            with pool.acquire():
                acquired.set()

        with pool.acquire():
            t = threading.Thread(target=second)
            t.start()
            assert not acquired.wait(0.1)
        assert acquired.wait(5)
        t.join(5)
        assert pool.peak == 1


class TestDeleteAll:
    def test_delete_uses_the_pool_it_is_given(self):
        client = FakeStoreClient({})
        cleaner = _cleaner(client)
        pool = SlotPool(1, client.connect)

        assert cleaner._delete(DeleteTask("b", "k"), pool) is None
        assert client.deleted == [("b", "k")]
        assert pool.slots[0].uses == 1
        assert cleaner.slots is None

    def test_end_to_end_three_keys_two_workers(self):
        client = FakeStoreClient({"b": ["k1", "k2", "k3"]}, delay=0.01)
        cleaner = _cleaner(client, concurrency=2)

        report = cleaner.delete_all(["b"])

        assert sorted(client.deleted) == [("b", "k1"), ("b", "k2"), ("b", "k3")]
        assert report.deleted == 3
        assert report.ok
        assert sum(slot.uses for slot in cleaner.slots.slots) == 3
        assert all(slot.uses <= 2 for slot in cleaner.slots.slots)
        assert len(client.connections) <= 2
        assert all(conn.closed for conn in client.connections)

    @pytest.mark.parametrize("concurrency", [1, 4, 32])
    def test_never_more_than_n_in_flight(self, concurrency):
        keys = [f"k{i}" for i in range(120)]
        client = FakeStoreClient({"b": keys}, delay=0.002)
        cleaner = _cleaner(client, concurrency=concurrency)

        report = cleaner.delete_all(["b"])

        assert report.deleted == 120
        assert client.peak <= concurrency
        assert cleaner.slots.peak <= concurrency
        assert cleaner.slots.in_flight == 0
        assert not client.shared_connection_use

    def test_missing_key_does_not_fail_the_batch(self):
        client = FakeStoreClient({"b": ["k1", "gone", "k3"]}, missing=[("b", "gone")])
        report = _cleaner(client, concurrency=2).delete_all(["b"])

        assert report.deleted == 2
        assert report.missing == [DeleteTask("b", "gone")]
        assert report.failures == []
        assert report.ok

    def test_failures_are_isolated(self, caplog):
        caplog.set_level(logging.INFO)
        client = FakeStoreClient(
            {"b": ["k1", "bad", "k3"]},
            errors={("b", "bad"): [UnhandledResponseError(500, "DeleteItem failed")]},
        )
        report = _cleaner(client, concurrency=2).delete_all(["b"])

        assert report.deleted == 2
        assert [f.task for f in report.failures] == [DeleteTask("b", "bad")]
        assert isinstance(report.failures[0].error, UnhandledResponseError)
        assert not report.ok
        messages = [r.getMessage() for r in caplog.records]
        assert any("Error deleting b - bad" in m for m in messages)
        # without verbose, only the failure gets a line of its own
        assert not any("Calling delete" in m for m in messages)

    def test_verbose_logs_every_delete(self, caplog):
        caplog.set_level(logging.INFO)
        client = FakeStoreClient({"b": ["k1", "k2"]})
        _cleaner(client, verbose=True).delete_all(["b"])

        messages = [r.getMessage() for r in caplog.records]
        assert "Calling delete on b - k1" in messages
        assert "Calling delete on b - k2" in messages

    def test_multiple_buckets(self):
        client = FakeStoreClient({"a": ["1", "2"], "b": ["3"], "c": []})
        report = _cleaner(client, concurrency=3).delete_all(["a", "b", "c"])

        assert sorted(client.deleted) == [("a", "1"), ("a", "2"), ("b", "3")]
        assert report.deleted == 3

    def test_unlistable_bucket_does_not_stop_others(self, caplog):
        client = FakeStoreClient({"good": ["k1"], "bad": []}, unlistable=["bad"])
        report = _cleaner(client, concurrency=2).delete_all(["good", "bad"])

        assert client.deleted == [("good", "k1")]
        assert list(report.failed_buckets) == ["bad"]
        assert not report.ok
        assert any("Couldn't get bucket bad" in r.getMessage() for r in caplog.records)

    def test_no_buckets(self):
        report = _cleaner(FakeStoreClient({})).delete_all([])
        assert report.deleted == 0
        assert report.ok

    def test_retries_transport_and_503_only(self):
        client = FakeStoreClient(
            {"b": ["flaky", "busy", "missing"]},
            missing=[("b", "missing")],
            errors={
                ("b", "flaky"): [TransportError("reset"), None],
                ("b", "busy"): [ServiceUnavailableError(), ServiceUnavailableError(), None],
            },
        )
        cleaner = _cleaner(client, max_retries=2, retry_delay=0)
        with patch("riakhttp.cleaner.time.sleep") as sleep:
            report = cleaner.delete_all(["b"])

        assert report.deleted == 2
        assert report.missing == [DeleteTask("b", "missing")]
        assert cleaner.stats.retried == 3
        assert sleep.call_count == 3

    def test_retries_exhausted(self):
        client = FakeStoreClient(
            {"b": ["k"]},
            errors={("b", "k"): [TransportError("reset"), TransportError("reset again")]},
        )
        cleaner = _cleaner(client, max_retries=1, retry_delay=0)
        report = cleaner.delete_all(["b"])

        assert report.deleted == 0
        assert str(report.failures[0].error) == "reset again"

    def test_no_retry_by_default(self):
        client = FakeStoreClient({"b": ["k"]}, errors={("b", "k"): [TransportError("reset"), None]})
        report = _cleaner(client).delete_all(["b"])
        assert len(report.failures) == 1
        assert client.deleted == []

    def test_backoff_is_capped(self):
        client = FakeStoreClient(
            {"b": ["k"]},
            errors={("b", "k"): [ServiceUnavailableError()] * 4 + [None]},
        )
        cleaner = _cleaner(client, max_retries=4, retry_delay=1.0, max_retry_delay=3.0)
        with patch("riakhttp.cleaner.time.sleep") as sleep:
            cleaner.delete_all(["b"])
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 3.0, 3.0]

    def test_cancel_stops_new_deletes(self):
        client = FakeStoreClient({"b": [f"k{i}" for i in range(50)]})
        cleaner = _cleaner(client)
        original = client.delete_item

        def delete_then_cancel(*args, **kwargs):
            original(*args, **kwargs)
            cleaner.cancel()

        client.delete_item = delete_then_cancel
        report = cleaner.delete_all(["b"])

        assert len(client.deleted) == 1
        assert report.cancelled
        assert not report.ok


class ScriptedClient(Client):
    """A real Client whose listing is fixed and whose connection replays responses."""

    def __init__(self, keys, *responses) -> None:
        super().__init__(client_id="test-client")
        self.keys = keys
        self.conn = FakeConnection(*responses)

    def list_keys(self, bucket, out, connection=None):
        try:
            for key in self.keys:
                out.put(key)
        finally:
            out.close()

    def connect(self):
        return self.conn


class TestDeleteAllOverClient:
    def test_503_is_retried(self):
        client = ScriptedClient(["k"], make_response(503), make_response(204))
        cleaner = _cleaner(client, max_retries=2, retry_delay=0)
        with patch("riakhttp.cleaner.time.sleep"):
            report = cleaner.delete_all(["b"])

        assert report.deleted == 1
        assert report.ok
        assert cleaner.stats.retried == 1
        assert [req.method for req, _ in client.conn.sent] == ["DELETE", "DELETE"]

    def test_400_is_not_retried(self):
        client = ScriptedClient(["k"], make_response(400), make_response(204))
        cleaner = _cleaner(client, max_retries=2, retry_delay=0)
        report = cleaner.delete_all(["b"])

        assert report.deleted == 0
        assert isinstance(report.failures[0].error, BadRequestError)
        assert cleaner.stats.retried == 0
        assert len(client.conn.sent) == 1

    def test_404_is_reported_missing(self):
        client = ScriptedClient(["gone"], make_response(404))
        report = _cleaner(client).delete_all(["b"])

        assert report.missing == [DeleteTask("b", "gone")]
        assert report.ok
