"""Backward-compatible decryption of direct-message content.

The envelope format is decided once by ``parse_envelope``; this module
dispatches on it. EPHEMERAL envelopes need only the reader's private key.
LEGACY envelopes need the sender's long-term key from the registry, and a
registry miss raises ``RegistryMissError``.
"""

import logging

from .crypto import decrypt_envelope
from .envelope import EnvelopeFormat, parse_envelope
from .errors import DecryptError, RegistryMissError
from .registry import PublicKeyRegistry

logger = logging.getLogger(__name__)

UNABLE_TO_DECRYPT = "[Encrypted Message - Unable to Decrypt]"
SENDER_COPY_UNAVAILABLE = "[Your encrypted message - visible to recipient only]"


def decrypt_direct_content(
    content: str,
    own_private_key: bytes,
    sender: str,
    registry: PublicKeyRegistry | None,
) -> str:
    """
    Decrypt a direct message's content field.

    Args:
        content: Serialized envelope from the record
        own_private_key: Reader's private key
        sender: Sender address (used for the LEGACY lookup)
        registry: Public key registry; may be None if only EPHEMERAL
            envelopes are expected

    Returns:
        Plaintext

    Raises:
        DecryptError: If the envelope is malformed or fails to decrypt
        RegistryMissError: If a LEGACY envelope's sender key is unknown
    """
    envelope = parse_envelope(content)

    if envelope.format is EnvelopeFormat.EPHEMERAL:
        return decrypt_envelope(envelope, own_private_key)

    if envelope.format is EnvelopeFormat.LEGACY:
        sender_key = registry.fetch(sender) if registry is not None else None
        if sender_key is None:
            raise RegistryMissError(f"No registered public key for {sender}")
        logger.debug("Decrypting legacy envelope from %s", sender)
        return decrypt_envelope(envelope, own_private_key, sender_public_key=sender_key)

    raise DecryptError(f"Unhandled envelope format: {envelope.format}")


def decrypt_or_sentinel(
    content: str,
    own_private_key: bytes,
    sender: str,
    registry: PublicKeyRegistry | None,
) -> tuple[str, bool]:
    """
    Decrypt for display.

    Returns:
        (text, decrypted): the plaintext and True, or the
        ``UNABLE_TO_DECRYPT`` sentinel and False
    """
    try:
        return decrypt_direct_content(content, own_private_key, sender, registry), True
    except DecryptError as e:
        logger.debug("Cannot decrypt message from %s: %s", sender, e)
        return UNABLE_TO_DECRYPT, False
