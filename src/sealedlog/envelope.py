"""Ciphertext envelopes stored in a record's ``content`` field.

Two direct-message formats exist on the log:

- EPHEMERAL: ``{ephemeralPublicKey, ciphertext, iv, authTag}``. The
  recipient redoes the key agreement with the embedded ephemeral key.
- LEGACY: ``{ciphertext, iv, authTag}``. Decryption needs the sender's
  long-term public key from the registry.

The format is decided once in ``parse_envelope``; decrypt code dispatches
on ``Envelope.format`` and never inspects fields.

Records written by older clients may omit ``authTag``; the GCM tag is then
the last 16 bytes of ``ciphertext``.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum

from .errors import DecryptError

TAG_SIZE = 16


def bytes_to_base64url(data: bytes) -> str:
    """Encode bytes to base64url (URL-safe, no padding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_to_bytes(s: str) -> bytes:
    """Decode base64url string to bytes (handles missing padding)."""
    # Add padding if needed
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s)


def _decode_field(data: dict, name: str) -> bytes:
    value = data.get(name)
    if not isinstance(value, str):
        raise DecryptError(f"Envelope field {name!r} missing or not a string")
    try:
        # Older clients wrote standard base64; urlsafe decoding rejects '+' and '/'.
        normalized = value.replace("+", "-").replace("/", "_").rstrip("=")
        return base64url_to_bytes(normalized)
    except (binascii.Error, ValueError) as e:
        raise DecryptError(f"Envelope field {name!r} is not valid base64") from e


class EnvelopeFormat(Enum):
    EPHEMERAL = "ephemeral"
    LEGACY = "legacy"


@dataclass(frozen=True)
class Envelope:
    """A parsed direct-message envelope."""

    format: EnvelopeFormat
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    ephemeral_public_key: bytes | None = None

    def __post_init__(self) -> None:
        if self.format is EnvelopeFormat.EPHEMERAL and self.ephemeral_public_key is None:
            raise ValueError("EPHEMERAL envelope requires an ephemeral public key")
        if self.format is EnvelopeFormat.LEGACY and self.ephemeral_public_key is not None:
            raise ValueError("LEGACY envelope cannot carry an ephemeral public key")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {}
        if self.ephemeral_public_key is not None:
            data["ephemeralPublicKey"] = bytes_to_base64url(self.ephemeral_public_key)
        data["ciphertext"] = bytes_to_base64url(self.ciphertext)
        data["iv"] = bytes_to_base64url(self.iv)
        data["authTag"] = bytes_to_base64url(self.auth_tag)
        return data

    def to_json(self) -> str:
        """Serialize to the string stored in a record's content field."""
        return json.dumps(self.to_dict(), separators=(",", ":"))


def parse_envelope(content: str) -> Envelope:
    """
    Parse a record's content string into an Envelope.

    Args:
        content: JSON envelope as stored on the log

    Returns:
        Envelope tagged EPHEMERAL or LEGACY

    Raises:
        DecryptError: If the content is not a well-formed envelope
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError) as e:
        raise DecryptError("Envelope is not valid JSON") from e
    if not isinstance(data, dict):
        raise DecryptError("Envelope is not a JSON object")

    ciphertext = _decode_field(data, "ciphertext")
    iv = _decode_field(data, "iv")
    if data.get("authTag"):
        auth_tag = _decode_field(data, "authTag")
    else:
        if len(ciphertext) < TAG_SIZE:
            raise DecryptError("Ciphertext too short to contain an auth tag")
        ciphertext, auth_tag = ciphertext[:-TAG_SIZE], ciphertext[-TAG_SIZE:]

    if data.get("ephemeralPublicKey"):
        return Envelope(
            format=EnvelopeFormat.EPHEMERAL,
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=auth_tag,
            ephemeral_public_key=_decode_field(data, "ephemeralPublicKey"),
        )
    return Envelope(
        format=EnvelopeFormat.LEGACY,
        ciphertext=ciphertext,
        iv=iv,
        auth_tag=auth_tag,
    )


@dataclass(frozen=True)
class GroupCiphertext:
    """A group message body: AES-GCM ciphertext (tag appended) and its IV."""

    ciphertext: bytes
    iv: bytes

    def to_dict(self) -> dict:
        return {
            "ciphertext": bytes_to_base64url(self.ciphertext),
            "iv": bytes_to_base64url(self.iv),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, content: str) -> "GroupCiphertext":
        """Parse a group message content string.

        Raises:
            DecryptError: If the content is malformed
        """
        try:
            data = json.loads(content)
        except (json.JSONDecodeError, TypeError) as e:
            raise DecryptError("Group ciphertext is not valid JSON") from e
        if not isinstance(data, dict):
            raise DecryptError("Group ciphertext is not a JSON object")
        return cls(ciphertext=_decode_field(data, "ciphertext"), iv=_decode_field(data, "iv"))
