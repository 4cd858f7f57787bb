"""Schema strings and the ABI-style record codec.

A schema is a comma-separated list of ``<type> <name>`` pairs, e.g.
``"uint64 timestamp, bytes32 conversationId, string content"``. Field order
is part of the wire format.

Encoding is head/tail, one 32-byte word per static field:
- uintN: big-endian, right-aligned
- address: 20 bytes, right-aligned
- bool: 0 or 1
- bytes32: as-is
- string: offset into the tail; the tail holds length || utf-8, zero padded

The decoder is strict: it checks field count, word alignment, value ranges,
bool encoding and string bounds, and raises SchemaError on any mismatch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .addressing import schema_id
from .errors import SchemaError

WORD = 32

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_UINT_RE = re.compile(r"^uint(\d+)$")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DIRECT_MESSAGE_SCHEMA = (
    "uint64 timestamp, bytes32 conversationId, string content, address sender, "
    "address recipient, uint8 messageType, string mediaUrl, bytes32 replyToMessageId, "
    "bool isRead, bool isDeleted"
)

GROUP_MESSAGE_SCHEMA = (
    "uint64 timestamp, bytes32 groupId, string content, address sender, "
    "uint8 messageType, string mediaUrl, bytes32 replyToMessageId, bool isDeleted"
)

GROUP_KEY_SHARE_SCHEMA = (
    "bytes32 groupId, address member, address distributor, string content, uint64 timestamp"
)

PUBLIC_KEY_REGISTRY_SCHEMA = (
    "address user, string publicKey, uint64 registeredAt, uint64 updatedAt"
)


def is_address(value: Any) -> bool:
    """True if value is a 0x-prefixed 20-byte hex address."""
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


@dataclass(frozen=True)
class SchemaField:
    """One typed field of a schema."""

    type: str
    name: str

    @property
    def is_dynamic(self) -> bool:
        return self.type == "string"


def _check_type(type_name: str) -> None:
    if type_name in ("address", "bool", "bytes32", "string"):
        return
    match = _UINT_RE.match(type_name)
    if match:
        bits = int(match.group(1))
        if bits % 8 == 0 and 8 <= bits <= 256:
            return
    raise SchemaError(f"Unsupported field type: {type_name}")


class Schema:
    """A parsed record schema with a strict encoder and decoder."""

    def __init__(self, definition: str):
        fields = []
        seen: set[str] = set()
        for part in definition.split(","):
            tokens = part.split()
            if len(tokens) != 2:
                raise SchemaError(f"Invalid schema field: {part.strip()!r}")
            type_name, name = tokens
            _check_type(type_name)
            if not _NAME_RE.match(name):
                raise SchemaError(f"Invalid field name: {name!r}")
            if name in seen:
                raise SchemaError(f"Duplicate field name: {name}")
            seen.add(name)
            fields.append(SchemaField(type=type_name, name=name))

        self.fields: tuple[SchemaField, ...] = tuple(fields)
        self.definition = ", ".join(f"{f.type} {f.name}" for f in self.fields)
        self.id = schema_id(self.definition)

    def __repr__(self) -> str:
        return f"Schema({self.definition!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Schema) and other.definition == self.definition

    def __hash__(self) -> int:
        return hash(self.definition)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    # --- Encoding ---

    def encode(self, values: dict[str, Any]) -> bytes:
        """
        Encode a mapping of field name to value.

        Args:
            values: Exactly one value per schema field

        Returns:
            Encoded record bytes

        Raises:
            SchemaError: If fields are missing/extra or a value is invalid
        """
        missing = [n for n in self.field_names if n not in values]
        extra = [n for n in values if n not in self.field_names]
        if missing or extra:
            raise SchemaError(f"Field mismatch: missing={missing} extra={extra}")

        head_size = WORD * len(self.fields)
        head = b""
        tail = b""
        for f in self.fields:
            value = values[f.name]
            if f.is_dynamic:
                if not isinstance(value, str):
                    raise SchemaError(f"{f.name}: expected str, got {type(value).__name__}")
                head += (head_size + len(tail)).to_bytes(WORD, "big")
                tail += _encode_string(value)
            else:
                head += _encode_static(f, value)
        return head + tail

    # --- Decoding ---

    def decode(self, data: bytes) -> dict[str, Any]:
        """
        Decode record bytes into a mapping of field name to value.

        Raises:
            SchemaError: If the data does not match the schema
        """
        head_size = WORD * len(self.fields)
        if len(data) % WORD != 0:
            raise SchemaError(f"Data length {len(data)} is not word aligned")
        if len(data) < head_size:
            raise SchemaError(
                f"Data has {len(data) // WORD} words, schema needs at least {len(self.fields)}"
            )

        values: dict[str, Any] = {}
        for index, f in enumerate(self.fields):
            word = data[index * WORD : (index + 1) * WORD]
            if f.is_dynamic:
                offset = int.from_bytes(word, "big")
                values[f.name] = _decode_string(f, data, offset, head_size)
            else:
                values[f.name] = _decode_static(f, word)
        return values


def _encode_static(f: SchemaField, value: Any) -> bytes:
    if f.type == "bool":
        if not isinstance(value, bool):
            raise SchemaError(f"{f.name}: expected bool, got {type(value).__name__}")
        return int(value).to_bytes(WORD, "big")

    if f.type == "address":
        if not is_address(value):
            raise SchemaError(f"{f.name}: invalid address {value!r}")
        return bytes(12) + bytes.fromhex(value[2:])

    if f.type == "bytes32":
        if isinstance(value, bytes) and len(value) == WORD:
            return value
        if isinstance(value, str) and _BYTES32_RE.match(value):
            return bytes.fromhex(value[2:])
        raise SchemaError(f"{f.name}: invalid bytes32 {value!r}")

    # uintN
    bits = int(f.type[4:])
    if isinstance(value, bool) or not isinstance(value, int):
        raise SchemaError(f"{f.name}: expected int, got {type(value).__name__}")
    if value < 0 or value >= 2**bits:
        raise SchemaError(f"{f.name}: {value} out of range for {f.type}")
    return value.to_bytes(WORD, "big")


def _decode_static(f: SchemaField, word: bytes) -> Any:
    if f.type == "bool":
        number = int.from_bytes(word, "big")
        if number not in (0, 1):
            raise SchemaError(f"{f.name}: invalid bool encoding")
        return bool(number)

    if f.type == "address":
        if any(word[:12]):
            raise SchemaError(f"{f.name}: address has non-zero padding")
        return "0x" + word[12:].hex()

    if f.type == "bytes32":
        return "0x" + word.hex()

    bits = int(f.type[4:])
    number = int.from_bytes(word, "big")
    if number >= 2**bits:
        raise SchemaError(f"{f.name}: {number} out of range for {f.type}")
    return number


def _encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    padding = (-len(raw)) % WORD
    return len(raw).to_bytes(WORD, "big") + raw + bytes(padding)


def _decode_string(f: SchemaField, data: bytes, offset: int, head_size: int) -> str:
    if offset % WORD != 0 or offset < head_size or offset + WORD > len(data):
        raise SchemaError(f"{f.name}: string offset {offset} out of bounds")
    length = int.from_bytes(data[offset : offset + WORD], "big")
    start = offset + WORD
    if start + length > len(data):
        raise SchemaError(f"{f.name}: string length {length} out of bounds")
    try:
        return data[start : start + length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise SchemaError(f"{f.name}: invalid utf-8") from e
