"""Pytest fixtures for testing with sealedlog.

Usage in conftest.py:
    pytest_plugins = ["sealedlog.testing"]

Or import specific fixtures:
    from sealedlog.testing import record_log, alice, bob

Available fixtures:
    - record_log: Fresh in-memory record log shared by the users below
    - keystore: Fresh in-memory keystore
    - clock: ManualClock starting at t=1000 ms
    - alice, bob, carol: Initialized Messengers on ``record_log``, each
      with its own keystore and all sharing ``clock``
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Generator

import pytest

from .client import Messenger
from .errors import PublishError
from .keystore import InMemoryKeyStore
from .log import InMemoryRecordLog, LogInfo, LogRecord, LogRow, RecordLog, TransactionHandle
from .options import MessengerOptions

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


class ManualClock:
    """Millisecond clock that only moves when told to.

    Example:
        clock = ManualClock(1000)
        clock()          # 1000
        clock.advance()  # 1001
    """

    def __init__(self, start: int = 1000):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return self.now

    def advance(self, ms: int = 1) -> int:
        with self._lock:
            self.now += ms
            return self.now


class FlakyRecordLog(RecordLog):
    """Wraps a log and fails selected publishes.

    Args:
        inner: Log that receives successful publishes
        should_fail: Called with the records of each publish; True rejects it

    Example:
        flaky = FlakyRecordLog(log, lambda records: flaky.publish_count == 2)
    """

    def __init__(self, inner: RecordLog, should_fail: Callable[[list[LogRecord]], bool]):
        self.inner = inner
        self.should_fail = should_fail
        self.publish_count = 0
        self.failures = 0
        self._lock = threading.Lock()

    def get_info(self) -> LogInfo:
        return self.inner.get_info()

    def add_signer(self, publisher, signing_key) -> None:
        self.inner.add_signer(publisher, signing_key)

    def publish(self, publisher: str, records: list[LogRecord]) -> TransactionHandle:
        with self._lock:
            self.publish_count += 1
            fail = self.should_fail(records)
            if fail:
                self.failures += 1
        if fail:
            raise PublishError("Simulated publish failure")
        return self.inner.publish(publisher, records)

    def read_all_by_publisher(self, schema_id: str, publisher: str) -> list[LogRow]:
        return self.inner.read_all_by_publisher(schema_id, publisher)

    def transaction_status(self, tx_hash: str) -> str | None:
        return self.inner.transaction_status(tx_hash)

    def close(self) -> None:
        self.inner.close()


def make_messenger(
    address: str,
    log: RecordLog,
    clock: Callable[[], int] | None = None,
    initialize: bool = True,
    **options,
) -> Messenger:
    """Messenger on a shared log with a private in-memory keystore."""
    messenger = Messenger(
        address,
        MessengerOptions(in_memory=True, **options),
        log=log,
        keystore=InMemoryKeyStore(),
        clock=clock,
    )
    if initialize:
        messenger.initialize()
    return messenger


@pytest.fixture
def record_log() -> Generator[InMemoryRecordLog, None, None]:
    """Fresh in-memory record log.

    Example:
        def test_publish(record_log):
            handle = record_log.publish(address, [LogRecord(...)])
            handle.wait()
    """
    log = InMemoryRecordLog()
    yield log
    log.close()


@pytest.fixture
def keystore() -> InMemoryKeyStore:
    """Fresh in-memory keystore."""
    return InMemoryKeyStore()


@pytest.fixture
def clock() -> ManualClock:
    """Manual millisecond clock starting at t=1000."""
    return ManualClock(1000)


@pytest.fixture
def alice(record_log: InMemoryRecordLog, clock: ManualClock) -> Generator[Messenger, None, None]:
    """Alice, initialized and registered on the shared log."""
    messenger = make_messenger(ALICE, record_log, clock)
    yield messenger
    messenger.close()


@pytest.fixture
def bob(record_log: InMemoryRecordLog, clock: ManualClock) -> Generator[Messenger, None, None]:
    """Bob, initialized and registered on the shared log."""
    messenger = make_messenger(BOB, record_log, clock)
    yield messenger
    messenger.close()


@pytest.fixture
def carol(record_log: InMemoryRecordLog, clock: ManualClock) -> Generator[Messenger, None, None]:
    """Carol, initialized and registered on the shared log."""
    messenger = make_messenger(CAROL, record_log, clock)
    yield messenger
    messenger.close()
