"""Append-only record log implementations.

The log is public and keyed by ``(schema_id, publisher, record_id)``.
Publishing under an existing key replaces the stored data (the only form of
"deletion" is republishing with a deleted flag). Reading returns the latest
version of every record a publisher ever wrote under a schema, in the order
the records were first published.

Only a slot's owner may write to it. Local logs have a single writer; the
log server (``sealedlog.api``) requires each publish to be signed with the
Ed25519 key bound to the publisher on its first write.

This module provides:
- RecordLog: Abstract base class defining the interface
- SqliteRecordLog: File-system based SQLite storage
- InMemoryRecordLog: Ephemeral SQLite for testing
- RemoteRecordLog: HTTP client for a log server (see ``sealedlog.api``)
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from nacl.signing import SigningKey

from .addressing import hash_id, normalize_address
from .crypto import sign_message
from .errors import LogReadError, PublishError
from .schema import is_address

logger = logging.getLogger(__name__)

_BYTES32_RE = re.compile(r"^0x[0-9a-f]{64}$")

STATUS_CONFIRMED = "confirmed"


@dataclass(frozen=True)
class LogRecord:
    """One record to publish."""

    record_id: str
    schema_id: str
    data: bytes


@dataclass(frozen=True)
class LogRow:
    """One record as read back from the log."""

    record_id: str
    data: bytes


@dataclass
class LogInfo:
    """Information about a log instance."""

    log_type: str
    """Type of log: 'sqlite', 'in_memory', or 'remote'."""

    location: str
    """Location description: path, URL, or ':memory:'."""


class TransactionHandle:
    """Handle for a publish; ``wait()`` blocks until the write is visible."""

    def __init__(self, tx_hash: str, status_fn: Callable[[str], str | None]):
        self.tx_hash = tx_hash
        self._status_fn = status_fn

    def __repr__(self) -> str:
        return f"TransactionHandle({self.tx_hash!r})"

    def wait(self, timeout: float | None = 30.0, interval: float = 0.2) -> None:
        """
        Wait for the transaction to be confirmed.

        Raises:
            PublishError: If the transaction is unknown or not confirmed in time
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            status = self._status_fn(self.tx_hash)
            if status == STATUS_CONFIRMED:
                return
            if status is None:
                raise PublishError(f"Unknown transaction {self.tx_hash}")
            if deadline is not None and time.monotonic() >= deadline:
                raise PublishError(f"Transaction {self.tx_hash} not confirmed after {timeout}s")
            time.sleep(interval)


def _check_records(publisher: str, records: list[LogRecord]) -> None:
    if not is_address(publisher):
        raise PublishError(f"Invalid publisher address: {publisher!r}")
    for record in records:
        if not _BYTES32_RE.match(record.record_id) or not _BYTES32_RE.match(record.schema_id):
            raise PublishError(f"Invalid record or schema id: {record.record_id!r}")
        if not isinstance(record.data, bytes):
            raise PublishError(f"Record {record.record_id} data must be bytes")


def publish_signing_payload(publisher: str, issued_at: int, records: list[LogRecord]) -> bytes:
    """Canonical bytes a publisher signs to authorize a publish."""
    lines = ["sealedlog-publish-v1", normalize_address(publisher), str(issued_at)]
    lines.extend(f"{r.record_id}:{r.schema_id}:{r.data.hex()}" for r in records)
    return "\n".join(lines).encode("utf-8")


class RecordLog(ABC):
    """Abstract base class for record logs."""

    def add_signer(self, publisher: str, signing_key: SigningKey) -> None:
        """
        Register the key that authorizes publishes in ``publisher``'s slot.

        Only logs shared between users over a network need it; the default
        ignores the key.
        """
        pass

    @abstractmethod
    def get_info(self) -> LogInfo:
        """Get information about this log."""
        ...

    @abstractmethod
    def publish(self, publisher: str, records: list[LogRecord]) -> TransactionHandle:
        """
        Publish records in the publisher's slot.

        Args:
            publisher: Address of the writer (the records' owner)
            records: Records to write; existing ids are overwritten

        Returns:
            Handle to wait on for confirmation

        Raises:
            PublishError: If the log rejects the write
        """
        ...

    @abstractmethod
    def read_all_by_publisher(self, schema_id: str, publisher: str) -> list[LogRow]:
        """Latest version of every record the publisher wrote under the schema."""
        ...

    @abstractmethod
    def transaction_status(self, tx_hash: str) -> str | None:
        """Status of a transaction, or None if unknown."""
        ...

    def close(self) -> None:
        """Close any resources held by the log."""
        pass


class SqliteRecordLog(RecordLog):
    """Record log stored in a SQLite file.

    Tables:
    - records: one row per (schema_id, publisher, record_id), with ``seq``
      fixed at first publish so reads keep publish order
    - transactions: tx hash and status
    - publishers: the verify key each publisher's writes are bound to
      (used by the log server)
    """

    def __init__(self, path: str | Path):
        self._path = str(path)
        if self._path == ":memory:":
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            # Enable WAL mode for better concurrent read/write performance
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    schema_id TEXT NOT NULL,
                    publisher TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    data BLOB NOT NULL,
                    tx_hash TEXT NOT NULL,
                    UNIQUE (schema_id, publisher, record_id)
                );
                CREATE TABLE IF NOT EXISTS transactions (
                    tx_hash TEXT PRIMARY KEY,
                    publisher TEXT NOT NULL,
                    record_count INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL
                );
                CREATE TABLE IF NOT EXISTS publishers (
                    publisher TEXT PRIMARY KEY,
                    verify_key BLOB NOT NULL,
                    bound_at REAL NOT NULL
                );
                """
            )
            self._conn.commit()

    def get_info(self) -> LogInfo:
        return LogInfo(log_type="sqlite", location=self._path)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self._conn.close()

    def publish(self, publisher: str, records: list[LogRecord]) -> TransactionHandle:
        _check_records(publisher, records)
        publisher = normalize_address(publisher)
        now = time.time()
        with self._lock:
            count = self._conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
            tx_hash = hash_id(
                f"tx-{publisher}-{count}-{now}-" + ",".join(r.record_id for r in records)
            )
            try:
                for record in records:
                    self._conn.execute(
                        """
                        INSERT INTO records (schema_id, publisher, record_id, data, tx_hash)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT (schema_id, publisher, record_id)
                        DO UPDATE SET data = excluded.data, tx_hash = excluded.tx_hash
                        """,
                        (record.schema_id, publisher, record.record_id, record.data, tx_hash),
                    )
                self._conn.execute(
                    """
                    INSERT INTO transactions (tx_hash, publisher, record_count, status, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (tx_hash, publisher, len(records), STATUS_CONFIRMED, now),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PublishError(f"Failed to publish: {e}") from e

        logger.debug("Published %d records for %s in %s", len(records), publisher, tx_hash)
        return TransactionHandle(tx_hash, self.transaction_status)

    def read_all_by_publisher(self, schema_id: str, publisher: str) -> list[LogRow]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT record_id, data FROM records
                WHERE schema_id = ? AND publisher = ?
                ORDER BY seq
                """,
                (schema_id, normalize_address(publisher)),
            ).fetchall()
        return [LogRow(record_id=row["record_id"], data=bytes(row["data"])) for row in rows]

    def transaction_status(self, tx_hash: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT status FROM transactions WHERE tx_hash = ?", (tx_hash,)
            ).fetchone()
        return row["status"] if row else None

    def publisher_key(self, publisher: str) -> bytes | None:
        """Verify key bound to ``publisher``, or None if it never wrote."""
        with self._lock:
            row = self._conn.execute(
                "SELECT verify_key FROM publishers WHERE publisher = ?",
                (normalize_address(publisher),),
            ).fetchone()
        return bytes(row["verify_key"]) if row else None

    def bind_publisher_key(self, publisher: str, verify_key: bytes) -> bytes:
        """
        Bind ``verify_key`` to ``publisher`` unless a key is already bound.

        Returns:
            The key bound to the publisher after the call
        """
        publisher = normalize_address(publisher)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO publishers (publisher, verify_key, bound_at)
                VALUES (?, ?, ?)
                ON CONFLICT (publisher) DO NOTHING
                """,
                (publisher, verify_key, time.time()),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT verify_key FROM publishers WHERE publisher = ?", (publisher,)
            ).fetchone()
        return bytes(row["verify_key"])


class InMemoryRecordLog(SqliteRecordLog):
    """In-memory log for testing.

    Uses SQLite's :memory: database. All data is lost when the log is
    closed or garbage collected.
    """

    def __init__(self):
        super().__init__(":memory:")

    def get_info(self) -> LogInfo:
        return LogInfo(log_type="in_memory", location=":memory:")


class RemoteRecordLog(RecordLog):
    """HTTP client for a sealedlog log server.

    Each publish is signed with the key registered for its publisher via
    ``add_signer`` (``Messenger`` registers its own). Publishing for an
    address with no registered key raises ``PublishError``.

    Args:
        url: Base URL of the log server
        client: Optional preconfigured ``httpx.Client`` (e.g. a FastAPI
            ``TestClient``); closed by ``close()`` only if created here
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        url: str,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        self._url = url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._signers: dict[str, SigningKey] = {}
        self._last_issued: dict[str, int] = {}
        self._signers_lock = threading.Lock()

    def get_info(self) -> LogInfo:
        return LogInfo(log_type="remote", location=self._url)

    def close(self) -> None:
        """Close HTTP client."""
        if self._owns_client:
            self._client.close()

    def add_signer(self, publisher: str, signing_key: SigningKey) -> None:
        with self._signers_lock:
            self._signers[normalize_address(publisher)] = signing_key

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        error_cls: type[Exception] = LogReadError,
        allow_404: bool = False,
    ) -> Any:
        """Make an HTTP request."""
        url = f"{self._url}{path}"
        try:
            response = self._client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise error_cls(f"Request to {url} failed: {e}") from e

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise error_cls(f"API error {response.status_code}: {response.text}")

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    def publish(self, publisher: str, records: list[LogRecord]) -> TransactionHandle:
        _check_records(publisher, records)
        publisher = normalize_address(publisher)
        with self._signers_lock:
            signing_key = self._signers.get(publisher)
            if signing_key is None:
                raise PublishError(f"No signing key registered for {publisher}")
            # Strictly increasing per publisher; the server rejects repeated signatures
            issued_at = max(int(time.time() * 1000), self._last_issued.get(publisher, 0) + 1)
            self._last_issued[publisher] = issued_at
        signature = sign_message(
            publish_signing_payload(publisher, issued_at, records), signing_key
        )
        result = self._request(
            "POST",
            "/v1/records",
            json={
                "publisher": publisher,
                "records": [
                    {"id": r.record_id, "schemaId": r.schema_id, "data": r.data.hex()}
                    for r in records
                ],
            },
            headers={
                "X-Publisher-Key": bytes(signing_key.verify_key).hex(),
                "X-Publish-Signature": signature.hex(),
                "X-Publish-Issued-At": str(issued_at),
            },
            error_cls=PublishError,
        )
        return TransactionHandle(result["txHash"], self.transaction_status)

    def read_all_by_publisher(self, schema_id: str, publisher: str) -> list[LogRow]:
        result = self._request(
            "GET", f"/v1/records/{schema_id}/{normalize_address(publisher)}"
        )
        rows = []
        for row in result["rows"]:
            try:
                rows.append(LogRow(record_id=row["id"], data=bytes.fromhex(row["data"])))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed row from %s", self._url, exc_info=True)
        return rows

    def transaction_status(self, tx_hash: str) -> str | None:
        result = self._request(
            "GET", f"/v1/transactions/{tx_hash}", error_cls=PublishError, allow_404=True
        )
        if result is None:
            return None
        return result.get("status")
