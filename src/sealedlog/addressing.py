"""Deterministic identifiers for conversations, groups, records and schemas.

All identifiers are 32-byte SHA-256 digests rendered as ``0x``-prefixed hex,
so they fit the ``bytes32`` fields of the record schemas.
"""

import hashlib

ZERO_ID = "0x" + "00" * 32

DIRECT_TAG = "dm"
SELF_COPY_TAG = "dm-sender"
GROUP_TAG = "group"


def normalize_address(address: str) -> str:
    """Lower-case an address so every participant derives the same ids."""
    return address.strip().lower()


def hash_id(value: str) -> str:
    """SHA-256 a UTF-8 string into a bytes32 hex id."""
    return "0x" + hashlib.sha256(value.encode("utf-8")).hexdigest()


def conversation_id(address_a: str, address_b: str) -> str:
    """
    Compute the canonical id of a two-party conversation.

    Addresses are lower-cased and sorted before hashing, so
    ``conversation_id(a, b) == conversation_id(b, a)``.

    Args:
        address_a: One participant's address
        address_b: The other participant's address

    Returns:
        ``0x``-prefixed 64-character hex id
    """
    first, second = sorted([normalize_address(address_a), normalize_address(address_b)])
    return hash_id(f"{first}-{second}")


def group_id(creator: str, timestamp: int) -> str:
    """Compute a group id from its creator and creation time (ms)."""
    return hash_id(f"{GROUP_TAG}-{normalize_address(creator)}-{timestamp}")


def message_record_id(
    sender: str,
    timestamp: int,
    tag: str = DIRECT_TAG,
    nonce: str | None = None,
) -> str:
    """
    Derive the record id a message is published under.

    Without a nonce this is the id older clients used, which collides when
    one sender publishes twice in the same millisecond. New messages carry
    a random per-message nonce; retrying the same message reuses it.

    Args:
        sender: Publisher address
        timestamp: Message timestamp in milliseconds
        tag: Purpose tag ("dm", "dm-sender", "group", ...)
        nonce: Optional per-message random hex string

    Returns:
        ``0x``-prefixed bytes32 hex id
    """
    parts = [tag, normalize_address(sender), str(timestamp)]
    if nonce:
        parts.append(nonce)
    return hash_id("-".join(parts))


def self_copy_record_id(primary_record_id: str) -> str:
    """Derive the self-copy record id from its primary record id."""
    return hash_id(f"{SELF_COPY_TAG}-{primary_record_id.lower()}")


def legacy_self_copy_record_id(sender: str, timestamp: int) -> str:
    """Self-copy id written by clients that predate per-message nonces."""
    return message_record_id(sender, timestamp, SELF_COPY_TAG)


def group_key_share_record_id(group: str, member: str) -> str:
    """Record id for a group key share; re-sharing to a member overwrites it."""
    return hash_id(f"group-key-{group.lower()}-{normalize_address(member)}")


def public_key_record_id(address: str) -> str:
    """Record id for an address's registry entry; updates overwrite it."""
    return hash_id(f"pubkey-{normalize_address(address)}")


def schema_id(schema: str) -> str:
    """Compute a schema id from its canonical schema string."""
    return hash_id(schema)
