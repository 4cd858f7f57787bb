"""Cryptographic primitives for sealedlog.

Includes:
- X25519 key pairs (NaCl) for every user
- Ephemeral-key direct-message encryption (X25519 + HKDF-SHA256 + AES-256-GCM)
- Legacy static-key encryption, kept to produce and read old-format envelopes
- AES-256-GCM group encryption and group key wrapping
- Passphrase sealing (scrypt + AES-256-GCM) for key backups
- Ed25519 publish signatures, with the signing key derived from the X25519 key
"""

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.signing import SigningKey, VerifyKey

from .envelope import (
    Envelope,
    EnvelopeFormat,
    GroupCiphertext,
    base64url_to_bytes,
    bytes_to_base64url,
)
from .errors import DecryptError, KeyBundleError

KEY_SIZE = 32
IV_SIZE = 12

DIRECT_INFO = b"sealedlog-dm-v1"
LEGACY_INFO = b"sealedlog-dm-legacy-v1"
SIGNING_INFO = b"sealedlog-signing-v1"

SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1

__all__ = [
    "KeyPair",
    "generate_keypair",
    "generate_key",
    "generate_group_key",
    "encrypt_for_recipient",
    "encrypt_legacy",
    "decrypt_envelope",
    "encrypt_group_message",
    "decrypt_group_message",
    "wrap_group_key",
    "unwrap_group_key",
    "seal_with_passphrase",
    "open_with_passphrase",
    "sign_message",
    "verify_signature",
    "bytes_to_base64url",
    "base64url_to_bytes",
]


def generate_key() -> bytes:
    """Generate a random 256-bit key."""
    return os.urandom(KEY_SIZE)


def generate_group_key() -> bytes:
    """Generate a fresh symmetric key for a new group."""
    return generate_key()


@dataclass(frozen=True)
class KeyPair:
    """Container for a user's X25519 key pair."""

    private_key: bytes  # 32 bytes
    public_key: bytes  # 32 bytes

    @property
    def private_key_base64(self) -> str:
        """Base64url-encoded private key for storage."""
        return bytes_to_base64url(self.private_key)

    @property
    def public_key_base64(self) -> str:
        """Base64url-encoded public key for the registry."""
        return bytes_to_base64url(self.public_key)

    @classmethod
    def from_private_key(cls, private_key: bytes) -> "KeyPair":
        """Rebuild a key pair from its 32-byte private key."""
        nacl_private = PrivateKey(private_key)
        return cls(private_key=private_key, public_key=bytes(nacl_private.public_key))

    @classmethod
    def from_private_key_base64(cls, private_key_base64: str) -> "KeyPair":
        """Reconstruct keypair from stored private key."""
        return cls.from_private_key(base64url_to_bytes(private_key_base64))

    def signing_key(self) -> SigningKey:
        """Ed25519 key for signing publishes, derived from the private key."""
        hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=SIGNING_INFO)
        return SigningKey(hkdf.derive(self.private_key))

    @property
    def verify_key(self) -> bytes:
        """32-byte Ed25519 public key matching ``signing_key()``."""
        return bytes(self.signing_key().verify_key)

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key_base64!r})"


def generate_keypair() -> KeyPair:
    """Generate a new X25519 key pair."""
    nacl_private = PrivateKey.generate()
    return KeyPair(
        private_key=bytes(nacl_private),
        public_key=bytes(nacl_private.public_key),
    )


def _derive_key(private_key: bytes, public_key: bytes, info: bytes) -> bytes:
    """X25519 agreement followed by HKDF-SHA256 to a 32-byte AES key."""
    shared = Box(PrivateKey(private_key), PublicKey(public_key)).shared_key()
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=info,
    )
    return hkdf.derive(shared)


def _seal(key: bytes, plaintext: bytes) -> tuple[bytes, bytes, bytes]:
    """AES-256-GCM encrypt; returns (iv, ciphertext, tag)."""
    iv = os.urandom(IV_SIZE)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return iv, sealed[:-16], sealed[-16:]


# =============================================================================
# Direct messages
# =============================================================================


def encrypt_for_recipient(plaintext: str, recipient_public_key: bytes) -> Envelope:
    """
    Encrypt a message so only the holder of the recipient's private key can read it.

    A fresh ephemeral key pair is generated per call and its public half is
    embedded in the envelope, so decryption needs nothing but the
    recipient's private key. Encrypting the same plaintext twice yields
    different envelopes.

    Args:
        plaintext: Message to encrypt
        recipient_public_key: 32-byte X25519 public key of the recipient

    Returns:
        EPHEMERAL envelope
    """
    ephemeral = PrivateKey.generate()
    key = _derive_key(bytes(ephemeral), recipient_public_key, DIRECT_INFO)
    iv, ciphertext, tag = _seal(key, plaintext.encode("utf-8"))
    return Envelope(
        format=EnvelopeFormat.EPHEMERAL,
        ciphertext=ciphertext,
        iv=iv,
        auth_tag=tag,
        ephemeral_public_key=bytes(ephemeral.public_key),
    )


def encrypt_legacy(
    plaintext: str,
    recipient_public_key: bytes,
    sender_private_key: bytes,
) -> Envelope:
    """
    Encrypt with the sender's long-term key (old envelope format).

    Readers need the sender's registered public key to decrypt. Only used
    to produce fixtures and by migration tooling; new messages use
    ``encrypt_for_recipient``.
    """
    key = _derive_key(sender_private_key, recipient_public_key, LEGACY_INFO)
    iv, ciphertext, tag = _seal(key, plaintext.encode("utf-8"))
    return Envelope(
        format=EnvelopeFormat.LEGACY,
        ciphertext=ciphertext,
        iv=iv,
        auth_tag=tag,
    )


def decrypt_envelope(
    envelope: Envelope,
    own_private_key: bytes,
    sender_public_key: bytes | None = None,
) -> str:
    """
    Decrypt a direct-message envelope.

    Args:
        envelope: Parsed envelope
        own_private_key: 32-byte private key of the reader
        sender_public_key: Sender's long-term public key (LEGACY only)

    Returns:
        Decrypted plaintext string

    Raises:
        DecryptError: On a wrong key, tampered data, or a LEGACY envelope
            without a sender public key
    """
    if envelope.format is EnvelopeFormat.EPHEMERAL:
        peer_key = envelope.ephemeral_public_key
        info = DIRECT_INFO
    elif envelope.format is EnvelopeFormat.LEGACY:
        if sender_public_key is None:
            raise DecryptError("Legacy envelope requires the sender's public key")
        peer_key = sender_public_key
        info = LEGACY_INFO
    else:
        raise DecryptError(f"Unknown envelope format: {envelope.format}")

    try:
        key = _derive_key(own_private_key, peer_key, info)
        plaintext = AESGCM(key).decrypt(
            envelope.iv, envelope.ciphertext + envelope.auth_tag, None
        )
        return plaintext.decode("utf-8")
    except InvalidTag as e:
        raise DecryptError("Authentication failed (wrong key or tampered data)") from e
    except (CryptoError, ValueError, TypeError) as e:
        raise DecryptError(f"Cannot decrypt envelope: {e}") from e


# =============================================================================
# Groups
# =============================================================================


def encrypt_group_message(plaintext: str, group_key: bytes) -> GroupCiphertext:
    """Encrypt a group message with the shared group key."""
    iv = os.urandom(IV_SIZE)
    ciphertext = AESGCM(group_key).encrypt(iv, plaintext.encode("utf-8"), None)
    return GroupCiphertext(ciphertext=ciphertext, iv=iv)


def decrypt_group_message(encrypted: GroupCiphertext, group_key: bytes) -> str:
    """
    Decrypt a group message.

    Raises:
        DecryptError: If the key is wrong or the data was tampered with
    """
    try:
        plaintext = AESGCM(group_key).decrypt(encrypted.iv, encrypted.ciphertext, None)
        return plaintext.decode("utf-8")
    except InvalidTag as e:
        raise DecryptError("Group message authentication failed") from e
    except ValueError as e:
        raise DecryptError(f"Cannot decrypt group message: {e}") from e


def wrap_group_key(group_key: bytes, member_public_key: bytes) -> Envelope:
    """Wrap a group key for one member (EPHEMERAL envelope of its base64url form)."""
    return encrypt_for_recipient(bytes_to_base64url(group_key), member_public_key)


def unwrap_group_key(envelope: Envelope, member_private_key: bytes) -> bytes:
    """
    Recover a group key from a share addressed to this member.

    Raises:
        DecryptError: If the share is not EPHEMERAL, cannot be decrypted,
            or does not contain a 32-byte key
    """
    if envelope.format is not EnvelopeFormat.EPHEMERAL:
        raise DecryptError("Group key shares must use the ephemeral envelope format")
    encoded = decrypt_envelope(envelope, member_private_key)
    try:
        key = base64url_to_bytes(encoded)
    except ValueError as e:
        raise DecryptError("Group key share does not contain a valid key") from e
    if len(key) != KEY_SIZE:
        raise DecryptError(f"Group key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


# =============================================================================
# Publish signatures (Ed25519)
# =============================================================================


def sign_message(message: bytes, signing_key: SigningKey) -> bytes:
    """Sign ``message``; returns the 64-byte signature."""
    return bytes(signing_key.sign(message).signature)


def verify_signature(message: bytes, signature: bytes, verify_key: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Returns:
        True if signature is valid, False otherwise (including malformed keys)
    """
    try:
        VerifyKey(verify_key).verify(message, signature)
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


# =============================================================================
# Passphrase sealing (key backups)
# =============================================================================


def _passphrase_key(passphrase: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(passphrase.encode("utf-8"))


def seal_with_passphrase(plaintext: bytes, passphrase: str) -> dict:
    """
    Encrypt data under a passphrase.

    Returns:
        Dict with base64url ``salt``, ``iv`` and ``ciphertext`` (tag appended)
    """
    salt = os.urandom(16)
    iv = os.urandom(IV_SIZE)
    ciphertext = AESGCM(_passphrase_key(passphrase, salt)).encrypt(iv, plaintext, None)
    return {
        "kdf": "scrypt",
        "salt": bytes_to_base64url(salt),
        "iv": bytes_to_base64url(iv),
        "ciphertext": bytes_to_base64url(ciphertext),
    }


def open_with_passphrase(sealed: dict, passphrase: str) -> bytes:
    """
    Decrypt data produced by ``seal_with_passphrase``.

    Raises:
        KeyBundleError: If the passphrase is wrong or the data is corrupt
    """
    if sealed.get("kdf") != "scrypt":
        raise KeyBundleError(f"Unsupported key derivation: {sealed.get('kdf')!r}")
    try:
        salt = base64url_to_bytes(sealed["salt"])
        iv = base64url_to_bytes(sealed["iv"])
        ciphertext = base64url_to_bytes(sealed["ciphertext"])
        return AESGCM(_passphrase_key(passphrase, salt)).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise KeyBundleError("Wrong passphrase or corrupt bundle") from e
    except (KeyError, TypeError, ValueError) as e:
        raise KeyBundleError(f"Malformed sealed bundle: {e}") from e
