"""sealedlog - End-to-end encrypted messages over a public append-only log.

Usage:
    from sealedlog import Messenger, MessengerOptions

    # Default local data directory
    alice = Messenger("0xaaaa...")

    # Explicit backends
    alice = Messenger.local("0xaaaa...", path="~/chats")
    alice = Messenger.remote("0xaaaa...", url="https://log.example.com")
    alice = Messenger.in_memory("0xaaaa...")

    # Full workflow
    alice.initialize()
    alice.send_direct_message("0xbbbb...", "Hello!")
    for entry in alice.read_conversation("0xbbbb..."):
        print(entry.sender, entry.text)

    group = alice.create_group()
    alice.share_group_key(group.group_id, "0xbbbb...")
    alice.send_group_message(group.group_id, "Hi all")
"""

from sealedlog._version import __version__
from sealedlog.addressing import conversation_id
from sealedlog.client import ClearResult, GroupInfo, GroupKeyShare, Messenger, SentMessage
from sealedlog.decryption import SENDER_COPY_UNAVAILABLE, UNABLE_TO_DECRYPT
from sealedlog.errors import (
    DecryptError,
    KeyAbsentError,
    KeyBundleError,
    LogReadError,
    MessageNotFoundError,
    PublicKeyNotFoundError,
    PublishError,
    RegistryMissError,
    SchemaError,
    SealedlogError,
)
from sealedlog.keystore import InMemoryKeyStore, KeyStore, SqliteKeyStore
from sealedlog.log import InMemoryRecordLog, RecordLog, RemoteRecordLog, SqliteRecordLog
from sealedlog.options import ConfigError, MessengerOptions
from sealedlog.records import MessageType
from sealedlog.transcript import TranscriptEntry

__all__ = [
    "__version__",
    "Messenger",
    "MessengerOptions",
    "SentMessage",
    "ClearResult",
    "GroupInfo",
    "GroupKeyShare",
    "TranscriptEntry",
    "MessageType",
    "conversation_id",
    "KeyStore",
    "InMemoryKeyStore",
    "SqliteKeyStore",
    "RecordLog",
    "InMemoryRecordLog",
    "SqliteRecordLog",
    "RemoteRecordLog",
    "UNABLE_TO_DECRYPT",
    "SENDER_COPY_UNAVAILABLE",
    "SealedlogError",
    "ConfigError",
    "KeyAbsentError",
    "DecryptError",
    "RegistryMissError",
    "PublishError",
    "LogReadError",
    "SchemaError",
    "KeyBundleError",
    "PublicKeyNotFoundError",
    "MessageNotFoundError",
]
