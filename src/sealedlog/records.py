"""Typed record structs for every schema sealedlog publishes.

Each record type pairs a Schema with a dataclass. ``encode()`` produces the
bytes stored on the log and ``decode()`` validates and rebuilds the struct,
so no caller reads positional row fields directly.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import IntEnum
from typing import Any, ClassVar

from .addressing import ZERO_ID, normalize_address
from .schema import (
    DIRECT_MESSAGE_SCHEMA,
    GROUP_KEY_SHARE_SCHEMA,
    GROUP_MESSAGE_SCHEMA,
    PUBLIC_KEY_REGISTRY_SCHEMA,
    Schema,
)


class MessageType(IntEnum):
    """Kind of message content, stored as uint8."""

    TEXT = 0
    IMAGE = 1
    VIDEO = 2
    AUDIO = 3
    FILE = 4
    LINK = 5
    GIF = 6
    STICKER = 7
    LOCATION = 8
    CONTACT = 9
    POLL = 10
    NFT = 11
    TOKEN_TRANSFER = 12


@dataclass(frozen=True)
class DirectMessageRecord:
    """A direct message as published by its sender."""

    SCHEMA: ClassVar[Schema] = Schema(DIRECT_MESSAGE_SCHEMA)

    timestamp: int
    conversation_id: str
    content: str
    sender: str
    recipient: str
    message_type: MessageType | int = MessageType.TEXT
    media_url: str = ""
    reply_to_message_id: str = ZERO_ID
    is_read: bool = False
    is_deleted: bool = False

    def to_values(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "conversationId": self.conversation_id,
            "content": self.content,
            "sender": self.sender,
            "recipient": self.recipient,
            "messageType": int(self.message_type),
            "mediaUrl": self.media_url,
            "replyToMessageId": self.reply_to_message_id,
            "isRead": self.is_read,
            "isDeleted": self.is_deleted,
        }

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "DirectMessageRecord":
        return cls(
            timestamp=values["timestamp"],
            conversation_id=values["conversationId"],
            content=values["content"],
            sender=values["sender"],
            recipient=values["recipient"],
            message_type=_message_type(values["messageType"]),
            media_url=values["mediaUrl"],
            reply_to_message_id=values["replyToMessageId"],
            is_read=values["isRead"],
            is_deleted=values["isDeleted"],
        )

    def encode(self) -> bytes:
        return self.SCHEMA.encode(self.to_values())

    @classmethod
    def decode(cls, data: bytes) -> "DirectMessageRecord":
        return cls.from_values(cls.SCHEMA.decode(data))

    def mark_deleted(self) -> "DirectMessageRecord":
        """Copy of this record with is_deleted set; everything else unchanged."""
        return replace(self, is_deleted=True)

    def is_between(self, address_a: str, address_b: str) -> bool:
        participants = {normalize_address(self.sender), normalize_address(self.recipient)}
        return participants == {normalize_address(address_a), normalize_address(address_b)}


@dataclass(frozen=True)
class GroupMessageRecord:
    """A group message as published by its sender."""

    SCHEMA: ClassVar[Schema] = Schema(GROUP_MESSAGE_SCHEMA)

    timestamp: int
    group_id: str
    content: str
    sender: str
    message_type: MessageType | int = MessageType.TEXT
    media_url: str = ""
    reply_to_message_id: str = ZERO_ID
    is_deleted: bool = False

    def to_values(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "groupId": self.group_id,
            "content": self.content,
            "sender": self.sender,
            "messageType": int(self.message_type),
            "mediaUrl": self.media_url,
            "replyToMessageId": self.reply_to_message_id,
            "isDeleted": self.is_deleted,
        }

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "GroupMessageRecord":
        return cls(
            timestamp=values["timestamp"],
            group_id=values["groupId"],
            content=values["content"],
            sender=values["sender"],
            message_type=_message_type(values["messageType"]),
            media_url=values["mediaUrl"],
            reply_to_message_id=values["replyToMessageId"],
            is_deleted=values["isDeleted"],
        )

    def encode(self) -> bytes:
        return self.SCHEMA.encode(self.to_values())

    @classmethod
    def decode(cls, data: bytes) -> "GroupMessageRecord":
        return cls.from_values(cls.SCHEMA.decode(data))

    def mark_deleted(self) -> "GroupMessageRecord":
        return replace(self, is_deleted=True)


@dataclass(frozen=True)
class GroupKeyShareRecord:
    """A group key wrapped for one member, published by the distributor."""

    SCHEMA: ClassVar[Schema] = Schema(GROUP_KEY_SHARE_SCHEMA)

    group_id: str
    member: str
    distributor: str
    content: str
    timestamp: int

    def to_values(self) -> dict[str, Any]:
        return {
            "groupId": self.group_id,
            "member": self.member,
            "distributor": self.distributor,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "GroupKeyShareRecord":
        return cls(
            group_id=values["groupId"],
            member=values["member"],
            distributor=values["distributor"],
            content=values["content"],
            timestamp=values["timestamp"],
        )

    def encode(self) -> bytes:
        return self.SCHEMA.encode(self.to_values())

    @classmethod
    def decode(cls, data: bytes) -> "GroupKeyShareRecord":
        return cls.from_values(cls.SCHEMA.decode(data))


@dataclass(frozen=True)
class PublicKeyRecord:
    """A public key registry entry, published by its owner."""

    SCHEMA: ClassVar[Schema] = Schema(PUBLIC_KEY_REGISTRY_SCHEMA)

    user: str
    public_key: str
    registered_at: int
    updated_at: int

    def to_values(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "publicKey": self.public_key,
            "registeredAt": self.registered_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "PublicKeyRecord":
        return cls(
            user=values["user"],
            public_key=values["publicKey"],
            registered_at=values["registeredAt"],
            updated_at=values["updatedAt"],
        )

    def encode(self) -> bytes:
        return self.SCHEMA.encode(self.to_values())

    @classmethod
    def decode(cls, data: bytes) -> "PublicKeyRecord":
        return cls.from_values(cls.SCHEMA.decode(data))


def _message_type(value: int) -> MessageType | int:
    # Types added by newer clients stay plain ints so a soft-delete
    # republish writes back the same value.
    try:
        return MessageType(value)
    except ValueError:
        return value


def record_to_dict(record: Any) -> dict[str, Any]:
    """Plain dict view of a record dataclass (for JSON output)."""
    data = asdict(record)
    if "message_type" in data:
        data["message_type"] = int(data["message_type"])
    return data
