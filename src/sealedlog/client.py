"""Messenger: the per-user sealedlog client.

The Messenger ties a user's keystore to a record log and a public key
registry. The log (local SQLite, remote HTTP, or in-memory) is abstracted
away behind ``RecordLog``.

Usage:
    # Default local data directory
    alice = Messenger("0xaaaa...")

    # Explicit backends
    alice = Messenger.local("0xaaaa...", path="~/chats")
    alice = Messenger.remote("0xaaaa...", url="https://log.example.com")
    alice = Messenger.in_memory("0xaaaa...")

    # Two users sharing one log (tests)
    log = InMemoryRecordLog()
    alice = Messenger("0xaaaa...", log=log, keystore=InMemoryKeyStore())
    bob = Messenger("0xbbbb...", log=log, keystore=InMemoryKeyStore())

    alice.initialize()
    bob.initialize()
    alice.send_direct_message(bob.address, "hello")
    bob.read_conversation(alice.address)
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .addressing import (
    DIRECT_TAG,
    GROUP_TAG,
    ZERO_ID,
    conversation_id,
    group_id as derive_group_id,
    group_key_share_record_id,
    legacy_self_copy_record_id,
    message_record_id,
    normalize_address,
    self_copy_record_id,
)
from .crypto import (
    KeyPair,
    encrypt_for_recipient,
    encrypt_group_message,
    generate_group_key,
    generate_keypair,
    unwrap_group_key,
    wrap_group_key,
)
from .envelope import Envelope, parse_envelope
from .errors import (
    KeyAbsentError,
    MessageNotFoundError,
    PublicKeyNotFoundError,
    PublishError,
    SchemaError,
    SealedlogError,
)
from .keystore import InMemoryKeyStore, KeyStore, SqliteKeyStore
from .log import InMemoryRecordLog, LogRecord, RecordLog, RemoteRecordLog, SqliteRecordLog
from .options import MessengerOptions
from .polling import TranscriptPoller
from .records import (
    DirectMessageRecord,
    GroupKeyShareRecord,
    GroupMessageRecord,
    MessageType,
)
from .registry import LogPublicKeyRegistry, PublicKeyRegistry
from .schema import is_address
from .tasks import BackgroundTask, TaskRunner
from .transcript import (
    PublishedRecord,
    TranscriptEntry,
    assemble_conversation,
    assemble_group,
    own_conversation_records,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_nonce() -> str:
    return secrets.token_hex(8)


def _check_address(address: str) -> str:
    address = normalize_address(address)
    if not is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return address


@dataclass
class SentMessage:
    """Result of a send."""

    message_id: str
    timestamp: int
    conversation_id: str | None = None
    group_id: str | None = None
    self_copy: BackgroundTask | None = None
    """Background publish of the sender's own copy (direct messages only)."""


@dataclass
class ClearResult:
    """Outcome of a soft-delete pass; ids of records republished or not."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class GroupInfo:
    """A group created by this user."""

    group_id: str
    creator: str
    created_at: int


@dataclass
class GroupKeyShare:
    """A group key wrapped for one member."""

    group_id: str
    member: str
    distributor: str
    envelope: Envelope
    task: BackgroundTask | None = None
    """Background publish of the share record."""

    @property
    def content(self) -> str:
        return self.envelope.to_json()


class Messenger:
    """Client for one user's encrypted conversations.

    Provides a consistent interface regardless of whether the record log
    is a local SQLite file, a remote server, or in-memory.

    Args:
        address: The user's address (``0x`` + 40 hex)
        options: Configuration options; defaults to the local data directory
        log: Record log to use instead of the one ``options`` describes
        keystore: Keystore to use instead of the one ``options`` describes
        registry: Public key registry; defaults to one stored on ``log``
        clock: Millisecond clock (for tests)
    """

    def __init__(
        self,
        address: str,
        options: MessengerOptions | None = None,
        *,
        log: RecordLog | None = None,
        keystore: KeyStore | None = None,
        registry: PublicKeyRegistry | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self._address = _check_address(address)
        self._options = options or MessengerOptions()
        self._clock = clock or _now_ms
        self._owns_log = log is None
        self._owns_keystore = keystore is None
        self._log = log if log is not None else self._create_log()
        self._keystore = keystore if keystore is not None else self._create_keystore()
        self._registry = (
            registry if registry is not None else LogPublicKeyRegistry(self._log, self._clock)
        )
        self._tasks = TaskRunner()

        existing = self._keystore.get_key_pair(self._address)
        if existing is not None:
            self._authorize(existing)

    def _create_log(self) -> RecordLog:
        """Create the appropriate record log based on options."""
        opts = self._options
        if opts.is_in_memory():
            return InMemoryRecordLog()
        if opts.is_remote():
            assert opts.resolved_url is not None
            return RemoteRecordLog(opts.resolved_url, timeout=opts.publish_timeout)
        assert opts.resolved_path is not None
        return SqliteRecordLog(opts.resolved_path / "log.db")

    def _create_keystore(self) -> KeyStore:
        keys_path = self._options.resolved_keys_path
        if keys_path is None:
            return InMemoryKeyStore()
        return SqliteKeyStore(keys_path)

    # --- Factory Methods ---

    @classmethod
    def local(cls, address: str, path: str | Path | None = None, **kwargs: Any) -> "Messenger":
        """Create a messenger backed by a local data directory."""
        return cls(address, MessengerOptions.for_local(path, **kwargs))

    @classmethod
    def remote(cls, address: str, url: str, **kwargs: Any) -> "Messenger":
        """Create a messenger talking to a remote log server."""
        return cls(address, MessengerOptions.for_remote(url, **kwargs))

    @classmethod
    def in_memory(cls, address: str, **kwargs: Any) -> "Messenger":
        """Create a messenger with ephemeral log and keystore.

        Perfect for testing - no cleanup needed.
        """
        return cls(address, MessengerOptions.for_in_memory(**kwargs))

    # --- Properties ---

    @property
    def address(self) -> str:
        return self._address

    @property
    def options(self) -> MessengerOptions:
        return self._options

    @property
    def log(self) -> RecordLog:
        return self._log

    @property
    def keystore(self) -> KeyStore:
        return self._keystore

    @property
    def registry(self) -> PublicKeyRegistry:
        return self._registry

    @property
    def backend(self) -> str:
        """Log type: 'sqlite', 'remote', or 'in_memory'."""
        return self._log.get_info().log_type

    @property
    def location(self) -> str:
        """Log location: path, URL, or ':memory:'."""
        return self._log.get_info().location

    # --- Keys ---

    def initialize(self) -> KeyPair:
        """
        Ensure this user has a key pair and that it is registered.

        Generates and stores a key pair on first use; later calls return the
        same pair. Registration failures are logged, not raised.
        """
        key_pair, created = self._keystore.get_or_create_key_pair(self._address, generate_keypair)
        if created:
            logger.info("Generated key pair for %s", self._address)
        self._authorize(key_pair)

        try:
            registered = self._registry.fetch(self._address)
            if registered is None:
                self._registry.register(self._address, key_pair.public_key).wait(
                    self._options.publish_timeout
                )
            elif registered != key_pair.public_key:
                self._registry.update(self._address, key_pair.public_key).wait(
                    self._options.publish_timeout
                )
        except SealedlogError:
            logger.warning("Could not register public key for %s", self._address, exc_info=True)

        return key_pair

    def get_key_pair(self) -> KeyPair | None:
        return self._keystore.get_key_pair(self._address)

    def _require_key_pair(self) -> KeyPair:
        key_pair = self._keystore.get_key_pair(self._address)
        if key_pair is None:
            raise KeyAbsentError(f"No key pair for {self._address}; call initialize() first")
        self._authorize(key_pair)
        return key_pair

    def _authorize(self, key_pair: KeyPair) -> None:
        """Let the log accept publishes in this user's slot signed with ``key_pair``."""
        self._log.add_signer(self._address, key_pair.signing_key())

    def _require_group_key(self, group_id: str) -> bytes:
        key = self._keystore.get_group_key(group_id)
        if key is None:
            raise KeyAbsentError(f"No local key for group {group_id}")
        return key

    def _public_key_for(self, address: str, public_key: bytes | None = None) -> bytes:
        if public_key is not None:
            return public_key
        found = self._registry.fetch(address)
        if found is None:
            raise PublicKeyNotFoundError(f"No registered public key for {address}")
        return found

    def export_keys(self, passphrase: str | None = None) -> str:
        """Export this user's keys and all group keys as a backup bundle."""
        return self._keystore.export_bundle(self._address, passphrase)

    def import_keys(self, bundle: str, passphrase: str | None = None) -> str:
        """Restore keys from a backup bundle; returns the restored address."""
        restored = self._keystore.import_bundle(bundle, passphrase)
        if restored != self._address:
            logger.warning("Imported bundle belongs to %s, not %s", restored, self._address)
        else:
            self._require_key_pair()
        return restored

    # --- Publishing ---

    def _publish(self, records: list[LogRecord]) -> str:
        """Publish in this user's slot and wait for confirmation."""
        handle = self._log.publish(self._address, records)
        handle.wait(timeout=self._options.publish_timeout)
        return handle.tx_hash

    def _publish_with_retries(self, record: LogRecord, retries: int) -> bool:
        for attempt in range(retries + 1):
            try:
                self._publish([record])
                return True
            except PublishError:
                logger.warning(
                    "Publish of %s failed (attempt %d/%d)",
                    record.record_id,
                    attempt + 1,
                    retries + 1,
                    exc_info=True,
                )
        return False

    # --- Direct messages ---

    def send_direct_message(
        self,
        recipient: str,
        plaintext: str,
        *,
        recipient_public_key: bytes | None = None,
        message_type: MessageType | int = MessageType.TEXT,
        media_url: str = "",
        reply_to_message_id: str = ZERO_ID,
    ) -> SentMessage:
        """
        Encrypt and publish a direct message.

        The primary record (readable by the recipient) is published and
        confirmed before this returns. The sender's self-copy is published
        in the background; its outcome is on ``SentMessage.self_copy`` and
        a failure there never fails the send.

        Args:
            recipient: Recipient address
            plaintext: Message text
            recipient_public_key: Recipient's key; looked up in the registry if None
            message_type: Kind of content
            media_url: Optional attachment URL
            reply_to_message_id: Id of the message being replied to

        Returns:
            SentMessage with the primary record id

        Raises:
            KeyAbsentError: If this user has no key pair
            PublicKeyNotFoundError: If the recipient's key is unknown
            PublishError: If the primary record could not be published
        """
        key_pair = self._require_key_pair()
        recipient = _check_address(recipient)
        recipient_key = self._public_key_for(recipient, recipient_public_key)

        timestamp = self._clock()
        primary_id = message_record_id(self._address, timestamp, DIRECT_TAG, _new_nonce())
        conv_id = conversation_id(self._address, recipient)

        record = DirectMessageRecord(
            timestamp=timestamp,
            conversation_id=conv_id,
            content=encrypt_for_recipient(plaintext, recipient_key).to_json(),
            sender=self._address,
            recipient=recipient,
            message_type=message_type,
            media_url=media_url,
            reply_to_message_id=reply_to_message_id,
        )
        self._publish(
            [LogRecord(primary_id, DirectMessageRecord.SCHEMA.id, record.encode())]
        )
        logger.info("Sent message %s to %s", primary_id, recipient)

        self_copy = DirectMessageRecord(
            timestamp=timestamp,
            conversation_id=conv_id,
            content=encrypt_for_recipient(plaintext, key_pair.public_key).to_json(),
            sender=self._address,
            recipient=recipient,
            message_type=message_type,
            media_url=media_url,
            reply_to_message_id=reply_to_message_id,
        )
        copy_id = self_copy_record_id(primary_id)
        task = self._tasks.submit(
            f"self-copy {copy_id}",
            self._publish,
            [LogRecord(copy_id, DirectMessageRecord.SCHEMA.id, self_copy.encode())],
        )

        return SentMessage(
            message_id=primary_id,
            timestamp=timestamp,
            conversation_id=conv_id,
            self_copy=task,
        )

    def read_conversation(self, peer: str, limit: int | None = None) -> list[TranscriptEntry]:
        """
        Read the conversation with ``peer`` as this user sees it.

        Args:
            peer: The other participant
            limit: Most recent messages to return (default from options)

        Returns:
            Entries sorted ascending by timestamp

        Raises:
            KeyAbsentError: If this user has no key pair
        """
        key_pair = self._require_key_pair()
        peer = _check_address(peer)
        if limit is None:
            limit = self._options.transcript_limit
        return assemble_conversation(
            self._log,
            self._address,
            peer,
            key_pair.private_key,
            registry=self._registry,
            limit=limit,
        )

    def _soft_delete(self, records: list[PublishedRecord], retries: int) -> ClearResult:
        result = ClearResult()
        for published in records:
            deleted = published.record.mark_deleted()
            log_record = LogRecord(
                published.record_id, DirectMessageRecord.SCHEMA.id, deleted.encode()
            )
            if self._publish_with_retries(log_record, retries):
                result.succeeded.append(published.record_id)
            else:
                result.failed.append(published.record_id)
        return result

    def clear_chat(self, peer: str, retries: int | None = None) -> ClearResult:
        """
        Soft-delete every record this user published in the conversation.

        Only this user's own slot can be written, so the peer's messages
        remain visible to both sides. Each record is republished with
        ``is_deleted=True`` under its own record id.

        Args:
            peer: The other participant
            retries: Extra attempts per record (default from options)

        Returns:
            ClearResult listing record ids that were and were not deleted
        """
        peer = _check_address(peer)
        if retries is None:
            retries = self._options.clear_retries
        records = own_conversation_records(self._log, self._address, peer)
        result = self._soft_delete(records, retries)
        if result.failed:
            logger.warning(
                "Cleared chat with %s partially: %d deleted, %d failed",
                peer,
                len(result.succeeded),
                len(result.failed),
            )
        else:
            logger.info("Cleared chat with %s (%d records)", peer, len(result.succeeded))
        return result

    def delete_message(self, message_id: str, retries: int | None = None) -> ClearResult:
        """
        Soft-delete one of this user's messages and its self-copy.

        Raises:
            MessageNotFoundError: If this user has no live record with that id
        """
        if retries is None:
            retries = self._options.clear_retries
        message_id = message_id.lower()
        rows = self._log.read_all_by_publisher(DirectMessageRecord.SCHEMA.id, self._address)
        own: dict[str, PublishedRecord] = {}
        for row in rows:
            try:
                record = DirectMessageRecord.decode(row.data)
            except SchemaError:
                continue
            if not record.is_deleted:
                own[row.record_id] = PublishedRecord(self._address, row.record_id, record)

        primary = own.get(message_id)
        if primary is None:
            raise MessageNotFoundError(f"No message {message_id} from {self._address}")

        targets = [primary]
        for copy_id in (
            self_copy_record_id(message_id),
            legacy_self_copy_record_id(self._address, primary.record.timestamp),
        ):
            if copy_id in own:
                targets.append(own[copy_id])
                break
        return self._soft_delete(targets, retries)

    def conversation_poller(self, peer: str, limit: int | None = None) -> TranscriptPoller:
        """Poller that yields new entries of the conversation with ``peer``."""
        return TranscriptPoller(
            lambda: self.read_conversation(peer, limit),
            interval=self._options.poll_interval,
        )

    # --- Groups ---

    def create_group(self) -> GroupInfo:
        """
        Create a group with a fresh key held only by this user.

        Share the key with members via ``share_group_key``.
        """
        created_at = self._clock()
        gid = derive_group_id(self._address, created_at)
        self._keystore.save_group_key(gid, generate_group_key())
        logger.info("Created group %s", gid)
        return GroupInfo(group_id=gid, creator=self._address, created_at=created_at)

    def share_group_key(
        self,
        group_id: str,
        member: str,
        member_public_key: bytes | None = None,
    ) -> GroupKeyShare:
        """
        Wrap the group key for ``member`` and publish the share.

        The share record is published in the background; the returned
        share can also be handed to the member directly.

        Raises:
            KeyAbsentError: If this user does not hold the group key
            PublicKeyNotFoundError: If the member's key is unknown
        """
        group_key = self._require_group_key(group_id)
        member = _check_address(member)
        envelope = wrap_group_key(group_key, self._public_key_for(member, member_public_key))

        record = GroupKeyShareRecord(
            group_id=group_id.lower(),
            member=member,
            distributor=self._address,
            content=envelope.to_json(),
            timestamp=self._clock(),
        )
        record_id = group_key_share_record_id(group_id, member)
        task = self._tasks.submit(
            f"group key share {record_id}",
            self._publish,
            [LogRecord(record_id, GroupKeyShareRecord.SCHEMA.id, record.encode())],
        )
        logger.info("Shared key for group %s with %s", group_id, member)
        return GroupKeyShare(
            group_id=group_id.lower(),
            member=member,
            distributor=self._address,
            envelope=envelope,
            task=task,
        )

    def receive_group_key(self, group_id: str, share: GroupKeyShare | Envelope | str) -> bytes:
        """
        Unwrap a group key share addressed to this user and store the key.

        Raises:
            KeyAbsentError: If this user has no key pair
            DecryptError: If the share cannot be decrypted
        """
        key_pair = self._require_key_pair()
        if isinstance(share, GroupKeyShare):
            envelope = share.envelope
        elif isinstance(share, Envelope):
            envelope = share
        else:
            envelope = parse_envelope(share)
        key = unwrap_group_key(envelope, key_pair.private_key)
        self._keystore.save_group_key(group_id, key)
        logger.info("Received key for group %s", group_id)
        return key

    def fetch_group_key(self, group_id: str, distributor: str) -> bytes:
        """
        Find the share ``distributor`` published for this user and receive it.

        Raises:
            KeyAbsentError: If no share for this user exists, or no key pair
            DecryptError: If the share cannot be decrypted
        """
        self._require_key_pair()
        distributor = _check_address(distributor)
        wanted_id = group_key_share_record_id(group_id, self._address)
        latest = None
        for row in self._log.read_all_by_publisher(GroupKeyShareRecord.SCHEMA.id, distributor):
            if row.record_id != wanted_id:
                continue
            try:
                record = GroupKeyShareRecord.decode(row.data)
            except SchemaError:
                logger.warning("Skipping undecodable key share %s", row.record_id)
                continue
            if record.group_id == group_id.lower() and record.member == self._address:
                if latest is None or record.timestamp >= latest.timestamp:
                    latest = record
        if latest is None:
            raise KeyAbsentError(f"{distributor} has not shared group {group_id} with {self._address}")
        return self.receive_group_key(group_id, latest.content)

    def send_group_message(
        self,
        group_id: str,
        plaintext: str,
        *,
        message_type: MessageType | int = MessageType.TEXT,
        media_url: str = "",
        reply_to_message_id: str = ZERO_ID,
    ) -> SentMessage:
        """
        Encrypt with the group key and publish.

        Raises:
            KeyAbsentError: If this user does not hold the group key
            PublishError: If the record could not be published
        """
        group_key = self._require_group_key(group_id)
        timestamp = self._clock()
        record_id = message_record_id(self._address, timestamp, GROUP_TAG, _new_nonce())
        record = GroupMessageRecord(
            timestamp=timestamp,
            group_id=group_id.lower(),
            content=encrypt_group_message(plaintext, group_key).to_json(),
            sender=self._address,
            message_type=message_type,
            media_url=media_url,
            reply_to_message_id=reply_to_message_id,
        )
        self._publish([LogRecord(record_id, GroupMessageRecord.SCHEMA.id, record.encode())])
        logger.info("Sent group message %s to %s", record_id, group_id)
        return SentMessage(message_id=record_id, timestamp=timestamp, group_id=group_id.lower())

    def read_group_transcript(
        self,
        group_id: str,
        members: list[str],
        limit: int | None = None,
    ) -> list[TranscriptEntry]:
        """
        Read a group's messages from every member's slot.

        Args:
            group_id: Group id
            members: Member addresses (this user is always included)
            limit: Most recent messages to return (default from options)

        Raises:
            KeyAbsentError: If this user does not hold the group key
        """
        group_key = self._require_group_key(group_id)
        if limit is None:
            limit = self._options.transcript_limit
        everyone = [self._address] + [_check_address(m) for m in members]
        return assemble_group(self._log, self._address, group_id, everyone, group_key, limit)

    def group_poller(
        self,
        group_id: str,
        members: list[str],
        limit: int | None = None,
    ) -> TranscriptPoller:
        """Poller that yields new entries of a group transcript."""
        return TranscriptPoller(
            lambda: self.read_group_transcript(group_id, members, limit),
            interval=self._options.poll_interval,
        )

    # --- Lifecycle ---

    def wait_for_background(self, timeout: float | None = None) -> None:
        """Wait for pending background publishes."""
        self._tasks.wait(timeout)

    def close(self) -> None:
        """Wait for background publishes and release owned resources."""
        self._tasks.close()
        if self._owns_log:
            self._log.close()
        if self._owns_keystore:
            self._keystore.close()

    def __enter__(self) -> "Messenger":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
