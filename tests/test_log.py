"""Tests for the record log implementations."""

import pytest
from nacl.signing import SigningKey

from sealedlog.addressing import hash_id
from sealedlog.errors import PublishError
from sealedlog.log import (
    STATUS_CONFIRMED,
    InMemoryRecordLog,
    LogRecord,
    SqliteRecordLog,
    TransactionHandle,
)

PUBLISHER = "0x" + "a1" * 20
OTHER = "0x" + "b2" * 20
SCHEMA = hash_id("uint64 a")
OTHER_SCHEMA = hash_id("uint64 b")


def _record(name: str, data: bytes = b"\x01", schema: str = SCHEMA) -> LogRecord:
    return LogRecord(record_id=hash_id(name), schema_id=schema, data=data)


@pytest.fixture(params=["memory", "sqlite"])
def log(request, tmp_path):
    """Each local log implementation."""
    if request.param == "memory":
        instance = InMemoryRecordLog()
    else:
        instance = SqliteRecordLog(tmp_path / "log.db")
    yield instance
    instance.close()


class TestPublish:
    """Tests for publish and read_all_by_publisher."""

    def test_publish_and_read(self, log):
        handle = log.publish(PUBLISHER, [_record("one", b"a"), _record("two", b"b")])
        handle.wait(timeout=1)
        rows = log.read_all_by_publisher(SCHEMA, PUBLISHER)
        assert [row.data for row in rows] == [b"a", b"b"]
        assert rows[0].record_id == hash_id("one")

    def test_slots_are_separate(self, log):
        log.publish(PUBLISHER, [_record("one")])
        assert log.read_all_by_publisher(SCHEMA, OTHER) == []
        assert log.read_all_by_publisher(OTHER_SCHEMA, PUBLISHER) == []

    def test_republish_replaces_in_place(self, log):
        """Overwriting a record keeps its original position."""
        log.publish(PUBLISHER, [_record("one", b"v1")])
        log.publish(PUBLISHER, [_record("two", b"x")])
        log.publish(PUBLISHER, [_record("one", b"v2")])
        rows = log.read_all_by_publisher(SCHEMA, PUBLISHER)
        assert [row.data for row in rows] == [b"v2", b"x"]

    def test_publisher_case_insensitive(self, log):
        log.publish("0x" + "A1" * 20, [_record("one")])
        assert len(log.read_all_by_publisher(SCHEMA, PUBLISHER)) == 1

    def test_invalid_publisher(self, log):
        with pytest.raises(PublishError):
            log.publish("alice", [_record("one")])

    def test_invalid_record_id(self, log):
        bad = LogRecord(record_id="0x1234", schema_id=SCHEMA, data=b"")
        with pytest.raises(PublishError):
            log.publish(PUBLISHER, [bad])

    def test_transaction_status(self, log):
        handle = log.publish(PUBLISHER, [_record("one")])
        assert log.transaction_status(handle.tx_hash) == STATUS_CONFIRMED
        assert log.transaction_status(hash_id("unknown")) is None

    def test_distinct_tx_hashes(self, log):
        first = log.publish(PUBLISHER, [_record("one")])
        second = log.publish(PUBLISHER, [_record("one")])
        assert first.tx_hash != second.tx_hash


class TestLogInfo:
    def test_in_memory(self):
        info = InMemoryRecordLog().get_info()
        assert info.log_type == "in_memory"
        assert info.location == ":memory:"

    def test_sqlite(self, tmp_path):
        instance = SqliteRecordLog(tmp_path / "x.db")
        assert instance.get_info().log_type == "sqlite"
        instance.close()

    def test_sqlite_persists(self, tmp_path):
        path = tmp_path / "log.db"
        first = SqliteRecordLog(path)
        first.publish(PUBLISHER, [_record("one", b"keep")])
        first.close()

        second = SqliteRecordLog(path)
        assert second.read_all_by_publisher(SCHEMA, PUBLISHER)[0].data == b"keep"
        second.close()


class TestTransactionHandle:
    """Tests for TransactionHandle.wait."""

    def test_unknown_transaction(self):
        handle = TransactionHandle("0xabc", lambda tx: None)
        with pytest.raises(PublishError):
            handle.wait()

    def test_times_out_when_pending(self):
        handle = TransactionHandle("0xabc", lambda tx: "pending")
        with pytest.raises(PublishError):
            handle.wait(timeout=0.05, interval=0.01)

    def test_waits_until_confirmed(self):
        statuses = iter(["pending", "pending", STATUS_CONFIRMED])
        handle = TransactionHandle("0xabc", lambda tx: next(statuses))
        handle.wait(timeout=5, interval=0.001)


class TestPublisherKeys:
    """Tests for the publisher key bindings the log server relies on."""

    def test_unbound(self, log):
        assert log.publisher_key(PUBLISHER) is None

    def test_first_binding_wins(self, log):
        assert log.bind_publisher_key(PUBLISHER, b"k" * 32) == b"k" * 32
        assert log.bind_publisher_key("0x" + "A1" * 20, b"x" * 32) == b"k" * 32
        assert log.publisher_key(PUBLISHER) == b"k" * 32
        assert log.publisher_key(OTHER) is None

    def test_add_signer_is_ignored_locally(self, log):
        log.add_signer(PUBLISHER, SigningKey.generate())
        log.publish(PUBLISHER, [_record("one")]).wait(timeout=5)
        assert len(log.read_all_by_publisher(SCHEMA, PUBLISHER)) == 1

    def test_binding_persists(self, tmp_path):
        path = tmp_path / "log.db"
        first = SqliteRecordLog(path)
        first.bind_publisher_key(PUBLISHER, b"k" * 32)
        first.close()

        second = SqliteRecordLog(path)
        assert second.publisher_key(PUBLISHER) == b"k" * 32
        second.close()
