"""Local storage for key pairs and group keys.

This module provides keystore classes:
- KeyStore: Abstract base class with the shared key and bundle logic
- InMemoryKeyStore: Dictionary storage for tests and short sessions
- SqliteKeyStore: Durable storage in a single SQLite file

Keys never leave the keystore except through ``export_bundle``. A bundle is
JSON::

    {"version": 1, "address": "0x...", "keys": {"publicKey": ..., "privateKey": ...},
     "groupKeys": {"0x<group id>": ...}, "timestamp": 1700000000000}

With a passphrase the bundle is sealed as
``{"version": 1, "kdf": "scrypt", "salt": ..., "iv": ..., "ciphertext": ...}``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path

from .addressing import normalize_address
from .crypto import (
    KeyPair,
    base64url_to_bytes,
    bytes_to_base64url,
    open_with_passphrase,
    seal_with_passphrase,
)
from .errors import KeyAbsentError, KeyBundleError

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1

KIND_KEY_PAIR = "keypair"
KIND_GROUP_KEY = "group"


class KeyStore(ABC):
    """Abstract base class for keystores.

    Subclasses implement raw get/put/delete of string values addressed by
    ``(kind, name)``; encoding, locking and bundles live here.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, kind: str, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((kind, name))
            if lock is None:
                lock = threading.Lock()
                self._locks[(kind, name)] = lock
            return lock

    # --- Storage primitives ---

    @abstractmethod
    def _get(self, kind: str, name: str) -> str | None: ...

    @abstractmethod
    def _put(self, kind: str, name: str, value: str) -> None: ...

    @abstractmethod
    def _delete(self, kind: str, name: str) -> bool: ...

    @abstractmethod
    def _names(self, kind: str) -> list[str]: ...

    def close(self) -> None:
        """Release any resources held by the keystore."""
        pass

    # --- Key pairs ---

    def get_key_pair(self, user: str) -> KeyPair | None:
        """Get the stored key pair for a user, or None."""
        value = self._get(KIND_KEY_PAIR, normalize_address(user))
        if value is None:
            return None
        return KeyPair.from_private_key_base64(value)

    def save_key_pair(self, user: str, key_pair: KeyPair) -> None:
        """Store (or overwrite) a user's key pair."""
        name = normalize_address(user)
        with self._lock_for(KIND_KEY_PAIR, name):
            self._put(KIND_KEY_PAIR, name, key_pair.private_key_base64)

    def get_or_create_key_pair(self, user: str, factory) -> tuple[KeyPair, bool]:
        """
        Return the user's key pair, creating it with ``factory()`` if missing.

        Returns:
            (key_pair, created)
        """
        name = normalize_address(user)
        with self._lock_for(KIND_KEY_PAIR, name):
            value = self._get(KIND_KEY_PAIR, name)
            if value is not None:
                return KeyPair.from_private_key_base64(value), False
            key_pair = factory()
            self._put(KIND_KEY_PAIR, name, key_pair.private_key_base64)
            return key_pair, True

    def delete_key_pair(self, user: str) -> bool:
        """Delete a user's key pair. Returns True if one existed."""
        name = normalize_address(user)
        with self._lock_for(KIND_KEY_PAIR, name):
            return self._delete(KIND_KEY_PAIR, name)

    def list_users(self) -> list[str]:
        return sorted(self._names(KIND_KEY_PAIR))

    # --- Group keys ---

    def get_group_key(self, group_id: str) -> bytes | None:
        """Get the stored key for a group, or None."""
        value = self._get(KIND_GROUP_KEY, group_id.lower())
        if value is None:
            return None
        return base64url_to_bytes(value)

    def save_group_key(self, group_id: str, key: bytes) -> None:
        """Store (or overwrite) a group key."""
        name = group_id.lower()
        with self._lock_for(KIND_GROUP_KEY, name):
            self._put(KIND_GROUP_KEY, name, bytes_to_base64url(key))

    def list_group_ids(self) -> list[str]:
        return sorted(self._names(KIND_GROUP_KEY))

    # --- Backup bundles ---

    def export_bundle(self, user: str, passphrase: str | None = None) -> str:
        """
        Export a user's key pair and all group keys as a backup bundle.

        Args:
            user: Address whose key pair to export
            passphrase: Optional passphrase to seal the bundle with

        Returns:
            Bundle as a JSON string

        Raises:
            KeyAbsentError: If the user has no key pair
        """
        key_pair = self.get_key_pair(user)
        if key_pair is None:
            raise KeyAbsentError(f"No key pair for {user}")

        bundle = {
            "version": BUNDLE_VERSION,
            "address": normalize_address(user),
            "keys": {
                "publicKey": key_pair.public_key_base64,
                "privateKey": key_pair.private_key_base64,
            },
            "groupKeys": {
                group_id: bytes_to_base64url(self.get_group_key(group_id))
                for group_id in self.list_group_ids()
            },
            "timestamp": int(time.time() * 1000),
        }
        payload = json.dumps(bundle)
        if passphrase is None:
            return payload

        sealed = {"version": BUNDLE_VERSION}
        sealed.update(seal_with_passphrase(payload.encode("utf-8"), passphrase))
        return json.dumps(sealed)

    def import_bundle(self, bundle: str, passphrase: str | None = None) -> str:
        """
        Restore keys from a backup bundle, overwriting existing entries.

        Args:
            bundle: JSON string produced by ``export_bundle``
            passphrase: Passphrase if the bundle is sealed

        Returns:
            The restored user's address

        Raises:
            KeyBundleError: If the bundle is corrupt, unsupported, or the
                passphrase is missing or wrong
        """
        data = _load_json(bundle)
        if "kdf" in data:
            if passphrase is None:
                raise KeyBundleError("Bundle is sealed; a passphrase is required")
            data = _load_json(open_with_passphrase(data, passphrase).decode("utf-8"))

        if data.get("version") != BUNDLE_VERSION:
            raise KeyBundleError(f"Unsupported bundle version: {data.get('version')!r}")

        try:
            address = normalize_address(data["address"])
            keys = data["keys"]
            key_pair = KeyPair.from_private_key_base64(keys["privateKey"])
            group_keys = {
                group_id: base64url_to_bytes(value)
                for group_id, value in data.get("groupKeys", {}).items()
            }
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise KeyBundleError(f"Malformed bundle: {e}") from e

        if keys.get("publicKey") != key_pair.public_key_base64:
            raise KeyBundleError("Bundle public key does not match its private key")

        self.save_key_pair(address, key_pair)
        for group_id, key in group_keys.items():
            self.save_group_key(group_id, key)

        logger.info("Imported key bundle for %s (%d group keys)", address, len(group_keys))
        return address


def _load_json(text: str) -> dict:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise KeyBundleError("Bundle is not valid JSON") from e
    if not isinstance(data, dict):
        raise KeyBundleError("Bundle is not a JSON object")
    return data


class InMemoryKeyStore(KeyStore):
    """Keystore backed by a dictionary. All keys are lost on exit."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[tuple[str, str], str] = {}

    def _get(self, kind: str, name: str) -> str | None:
        return self._data.get((kind, name))

    def _put(self, kind: str, name: str, value: str) -> None:
        self._data[(kind, name)] = value

    def _delete(self, kind: str, name: str) -> bool:
        return self._data.pop((kind, name), None) is not None

    def _names(self, kind: str) -> list[str]:
        return [name for k, name in list(self._data) if k == kind]


class SqliteKeyStore(KeyStore):
    """Keystore backed by a SQLite file.

    One table ``keys(kind, name, value)``; the file should be readable by
    its owner only.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self._path = str(path)
        if self._path == ":memory:":
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            # Enable WAL mode for better concurrent read/write performance
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        self._conn_lock = threading.Lock()
        with self._conn_lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS keys (
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (kind, name)
                )
                """
            )
            self._conn.commit()

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        """Close database connection."""
        with self._conn_lock:
            self._conn.close()

    def _get(self, kind: str, name: str) -> str | None:
        with self._conn_lock:
            row = self._conn.execute(
                "SELECT value FROM keys WHERE kind = ? AND name = ?", (kind, name)
            ).fetchone()
        return row["value"] if row else None

    def _put(self, kind: str, name: str, value: str) -> None:
        with self._conn_lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO keys (kind, name, value) VALUES (?, ?, ?)",
                (kind, name, value),
            )
            self._conn.commit()

    def _delete(self, kind: str, name: str) -> bool:
        with self._conn_lock:
            cursor = self._conn.execute(
                "DELETE FROM keys WHERE kind = ? AND name = ?", (kind, name)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def _names(self, kind: str) -> list[str]:
        with self._conn_lock:
            rows = self._conn.execute(
                "SELECT name FROM keys WHERE kind = ? ORDER BY name", (kind,)
            ).fetchall()
        return [row["name"] for row in rows]
