"""Transcript assembly.

A two-party conversation lives in two publisher slots. The sender's slot
holds, per message, a primary record (encrypted to the recipient) and a
self-copy (encrypted to the sender), so a naive merge shows each message
twice. Assembly therefore:

1. reads each participant's slot once and decodes rows strictly,
2. keeps records of this conversation whose sender is the publisher,
3. pairs each primary with its self-copy,
4. drops logical messages whose primary is soft-deleted,
5. sorts by ``(timestamp, record_id)`` and keeps the newest ``limit``,
6. decrypts by role: the recipient reads the primary, the sender reads
   the self-copy.

Decryption failures become sentinel text; a message is never omitted
because it could not be decrypted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

from .addressing import (
    conversation_id,
    legacy_self_copy_record_id,
    normalize_address,
    self_copy_record_id,
)
from .crypto import decrypt_group_message
from .decryption import SENDER_COPY_UNAVAILABLE, UNABLE_TO_DECRYPT, decrypt_or_sentinel
from .envelope import GroupCiphertext
from .errors import DecryptError, SchemaError
from .log import RecordLog
from .records import DirectMessageRecord, GroupMessageRecord
from .registry import PublicKeyRegistry

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50

R = TypeVar("R", DirectMessageRecord, GroupMessageRecord)


@dataclass(frozen=True)
class PublishedRecord(Generic[R]):
    """A decoded record together with where it was read from."""

    publisher: str
    record_id: str
    record: R

    @property
    def key(self) -> tuple[str, str]:
        return (self.publisher, self.record_id)


@dataclass(frozen=True)
class LogicalMessage:
    """One direct message: its primary record and, if found, its self-copy."""

    primary: PublishedRecord
    self_copy: PublishedRecord | None = None

    @property
    def message_id(self) -> str:
        return self.primary.record_id

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.primary.record.timestamp, self.primary.record_id)


@dataclass
class TranscriptEntry:
    """A message as shown to one reader."""

    message_id: str
    sender: str
    timestamp: int
    text: str
    decrypted: bool
    outgoing: bool
    recipient: str | None = None
    message_type: int = 0
    media_url: str = ""
    reply_to_message_id: str = ""
    is_read: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "timestamp": self.timestamp,
            "text": self.text,
            "decrypted": self.decrypted,
            "outgoing": self.outgoing,
            "message_type": self.message_type,
            "media_url": self.media_url,
            "reply_to_message_id": self.reply_to_message_id,
            "is_read": self.is_read,
        }


# =============================================================================
# Reading and decoding
# =============================================================================


def _read_slot(log: RecordLog, record_cls, publisher: str) -> list[PublishedRecord]:
    """Read and strictly decode one publisher's rows; undecodable rows are skipped."""
    records = []
    for row in log.read_all_by_publisher(record_cls.SCHEMA.id, publisher):
        try:
            record = record_cls.decode(row.data)
        except SchemaError as e:
            logger.warning("Skipping undecodable row %s from %s: %s", row.record_id, publisher, e)
            continue
        if normalize_address(record.sender) != publisher:
            logger.debug("Ignoring row %s: sender is not the publisher", row.record_id)
            continue
        records.append(PublishedRecord(publisher=publisher, record_id=row.record_id, record=record))
    return records


def _unique(addresses) -> list[str]:
    seen: dict[str, None] = {}
    for address in addresses:
        seen.setdefault(normalize_address(address), None)
    return list(seen)


def _dedup(records: list[PublishedRecord]) -> list[PublishedRecord]:
    unique: dict[tuple[str, str], PublishedRecord] = {}
    for published in records:
        unique[published.key] = published
    return list(unique.values())


def fetch_conversation_records(
    log: RecordLog,
    address_a: str,
    address_b: str,
) -> list[PublishedRecord]:
    """
    Read every decodable record of the a-b conversation from both slots.

    Both slots are fetched independently; when ``a == b`` the slot is read
    once. Duplicates by ``(publisher, record_id)`` are removed.
    """
    target = conversation_id(address_a, address_b)
    records = []
    for publisher in _unique([address_a, address_b]):
        for published in _read_slot(log, DirectMessageRecord, publisher):
            if published.record.conversation_id == target:
                records.append(published)
    return _dedup(records)


def own_conversation_records(
    log: RecordLog,
    owner: str,
    peer: str,
) -> list[PublishedRecord]:
    """Records of the owner-peer conversation in the owner's slot that are not deleted."""
    owner = normalize_address(owner)
    target = conversation_id(owner, peer)
    return [
        published
        for published in _read_slot(log, DirectMessageRecord, owner)
        if published.record.conversation_id == target and not published.record.is_deleted
    ]


# =============================================================================
# Pairing, filtering and ordering
# =============================================================================


def pair_messages(records: list[PublishedRecord]) -> list[LogicalMessage]:
    """
    Group primaries with their self-copies.

    A record is a self-copy when its id is the self-copy id of another
    record from the same publisher, or the legacy self-copy id of its own
    ``(sender, timestamp)``.
    """
    by_key = {published.key: published for published in records}
    self_copy_keys: set[tuple[str, str]] = set()
    pairs: dict[tuple[str, str], tuple[str, str]] = {}

    for published in records:
        record = published.record
        legacy_id = legacy_self_copy_record_id(record.sender, record.timestamp)
        if published.record_id == legacy_id:
            self_copy_keys.add(published.key)
            continue
        for candidate in (self_copy_record_id(published.record_id), legacy_id):
            key = (published.publisher, candidate)
            if key in by_key:
                pairs[published.key] = key
                self_copy_keys.add(key)
                break

    messages = []
    for published in records:
        if published.key in self_copy_keys:
            continue
        copy_key = pairs.get(published.key)
        messages.append(
            LogicalMessage(primary=published, self_copy=by_key[copy_key] if copy_key else None)
        )
    return messages


def _truncate(items: list, limit: int | None) -> list:
    if limit is None:
        return items
    if limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")
    if limit == 0:
        return []
    return items[-limit:]


def select_messages(records: list[PublishedRecord], limit: int | None = DEFAULT_LIMIT) -> list[LogicalMessage]:
    """Pair, drop deleted, sort ascending and keep the newest ``limit``."""
    messages = [m for m in pair_messages(records) if not m.primary.record.is_deleted]
    messages.sort(key=lambda m: m.sort_key)
    return _truncate(messages, limit)


# =============================================================================
# Decryption by role
# =============================================================================


def decrypt_for_viewer(
    message: LogicalMessage,
    viewer: str,
    private_key: bytes,
    registry: PublicKeyRegistry | None,
) -> TranscriptEntry:
    """Decrypt the copy of a message the viewer can read."""
    viewer = normalize_address(viewer)
    record: DirectMessageRecord = message.primary.record
    outgoing = normalize_address(record.sender) == viewer

    if normalize_address(record.recipient) == viewer:
        text, decrypted = decrypt_or_sentinel(record.content, private_key, record.sender, registry)
    elif outgoing and message.self_copy is not None and not message.self_copy.record.is_deleted:
        text, decrypted = decrypt_or_sentinel(
            message.self_copy.record.content, private_key, record.sender, registry
        )
    elif outgoing:
        text, decrypted = SENDER_COPY_UNAVAILABLE, False
    else:
        text, decrypted = UNABLE_TO_DECRYPT, False

    return TranscriptEntry(
        message_id=message.message_id,
        sender=normalize_address(record.sender),
        recipient=normalize_address(record.recipient),
        timestamp=record.timestamp,
        text=text,
        decrypted=decrypted,
        outgoing=outgoing,
        message_type=int(record.message_type),
        media_url=record.media_url,
        reply_to_message_id=record.reply_to_message_id,
        is_read=record.is_read,
    )


def assemble_conversation(
    log: RecordLog,
    viewer: str,
    peer: str,
    private_key: bytes,
    registry: PublicKeyRegistry | None = None,
    limit: int | None = DEFAULT_LIMIT,
) -> list[TranscriptEntry]:
    """
    Build the viewer's transcript of the conversation with ``peer``.

    Returns:
        Entries sorted ascending by ``(timestamp, message_id)``
    """
    records = fetch_conversation_records(log, viewer, peer)
    messages = select_messages(records, limit)
    return [decrypt_for_viewer(m, viewer, private_key, registry) for m in messages]


# =============================================================================
# Groups
# =============================================================================


def assemble_group(
    log: RecordLog,
    viewer: str,
    group_id: str,
    members: list[str],
    group_key: bytes,
    limit: int | None = DEFAULT_LIMIT,
) -> list[TranscriptEntry]:
    """Merge all members' slots into the viewer's group transcript."""
    viewer = normalize_address(viewer)
    target = group_id.lower()
    records = []
    for publisher in _unique(members):
        for published in _read_slot(log, GroupMessageRecord, publisher):
            if published.record.group_id == target:
                records.append(published)

    live = [p for p in _dedup(records) if not p.record.is_deleted]
    live.sort(key=lambda p: (p.record.timestamp, p.record_id))

    entries = []
    for published in _truncate(live, limit):
        record: GroupMessageRecord = published.record
        try:
            text = decrypt_group_message(GroupCiphertext.from_json(record.content), group_key)
            decrypted = True
        except DecryptError as e:
            logger.debug("Cannot decrypt group message %s: %s", published.record_id, e)
            text, decrypted = UNABLE_TO_DECRYPT, False
        entries.append(
            TranscriptEntry(
                message_id=published.record_id,
                sender=published.publisher,
                timestamp=record.timestamp,
                text=text,
                decrypted=decrypted,
                outgoing=published.publisher == viewer,
                message_type=int(record.message_type),
                media_url=record.media_url,
                reply_to_message_id=record.reply_to_message_id,
            )
        )
    return entries
