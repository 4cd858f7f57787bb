"""Exception types for sealedlog.

Hierarchy:
    SealedlogError
    ├── KeyAbsentError          no local key pair or group key
    ├── DecryptError            envelope cannot be decrypted
    │   └── RegistryMissError   legacy envelope, sender key not registered
    ├── PublishError            the record log rejected or timed out a write
    ├── LogReadError            the record log could not be read
    ├── SchemaError             record bytes do not match the schema
    ├── KeyBundleError          backup bundle cannot be read
    └── PublicKeyNotFoundError  recipient has no registered public key
"""


class SealedlogError(Exception):
    """Base class for all sealedlog errors."""

    pass


class KeyAbsentError(SealedlogError):
    """Raised when a key pair or group key is missing from the local keystore."""

    pass


class DecryptError(SealedlogError):
    """Raised when an envelope is malformed or fails authentication."""

    pass


class RegistryMissError(DecryptError):
    """Raised when a legacy envelope's sender has no registered public key."""

    pass


class PublishError(SealedlogError):
    """Raised when a record could not be written to the log."""

    pass


class LogReadError(SealedlogError):
    """Raised when rows cannot be read from the log."""

    pass


class SchemaError(SealedlogError):
    """Raised when encoded record data does not match its schema."""

    pass


class KeyBundleError(SealedlogError):
    """Raised when a key backup bundle is corrupt or the passphrase is wrong."""

    pass


class PublicKeyNotFoundError(SealedlogError):
    """Raised when a recipient's public key cannot be found in the registry."""

    pass


class MessageNotFoundError(SealedlogError):
    """Raised when a message id does not name one of the caller's live messages."""

    pass
