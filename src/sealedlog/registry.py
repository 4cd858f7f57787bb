"""Public key registry.

Legacy envelopes carry no ephemeral key, so readers look up the sender's
long-term public key here. Entries are ``PublicKeyRecord``s published in
the owner's own slot of the record log, under a record id derived from the
owner's address (updates overwrite).
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from .addressing import normalize_address, public_key_record_id
from .crypto import base64url_to_bytes, bytes_to_base64url
from .errors import SchemaError, SealedlogError
from .log import LogRecord, RecordLog, TransactionHandle
from .records import PublicKeyRecord

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class PublicKeyRegistry(ABC):
    """Abstract base class for public key registries."""

    @abstractmethod
    def register(self, address: str, public_key: bytes) -> TransactionHandle:
        """Register an address's public key."""
        ...

    @abstractmethod
    def fetch(self, address: str) -> bytes | None:
        """Get the current public key for an address, or None."""
        ...

    @abstractmethod
    def update(self, address: str, public_key: bytes) -> TransactionHandle:
        """Replace an address's public key, keeping its registration time."""
        ...

    def has_public_key(self, address: str) -> bool:
        return self.fetch(address) is not None


class LogPublicKeyRegistry(PublicKeyRegistry):
    """Registry stored as records on a RecordLog."""

    def __init__(self, log: RecordLog, clock: Callable[[], int] = _now_ms):
        self._log = log
        self._clock = clock

    def _latest(self, address: str) -> PublicKeyRecord | None:
        address = normalize_address(address)
        rows = self._log.read_all_by_publisher(PublicKeyRecord.SCHEMA.id, address)
        latest = None
        for row in rows:
            try:
                record = PublicKeyRecord.decode(row.data)
            except SchemaError:
                logger.warning("Skipping undecodable registry row %s", row.record_id)
                continue
            if normalize_address(record.user) != address:
                continue
            if latest is None or record.updated_at >= latest.updated_at:
                latest = record
        return latest

    def _publish(self, record: PublicKeyRecord) -> TransactionHandle:
        return self._log.publish(
            record.user,
            [
                LogRecord(
                    record_id=public_key_record_id(record.user),
                    schema_id=PublicKeyRecord.SCHEMA.id,
                    data=record.encode(),
                )
            ],
        )

    def register(self, address: str, public_key: bytes) -> TransactionHandle:
        now = self._clock()
        record = PublicKeyRecord(
            user=normalize_address(address),
            public_key=bytes_to_base64url(public_key),
            registered_at=now,
            updated_at=now,
        )
        logger.info("Registering public key for %s", record.user)
        return self._publish(record)

    def update(self, address: str, public_key: bytes) -> TransactionHandle:
        existing = self._latest(address)
        now = self._clock()
        record = PublicKeyRecord(
            user=normalize_address(address),
            public_key=bytes_to_base64url(public_key),
            registered_at=existing.registered_at if existing else now,
            updated_at=now,
        )
        logger.info("Updating public key for %s", record.user)
        return self._publish(record)

    def fetch(self, address: str) -> bytes | None:
        try:
            record = self._latest(address)
        except SealedlogError:
            logger.warning("Registry lookup failed for %s", address, exc_info=True)
            return None
        if record is None:
            return None
        try:
            return base64url_to_bytes(record.public_key)
        except ValueError:
            logger.warning("Registry entry for %s has an invalid key", address)
            return None
