"""Tests for envelope parsing."""

import base64
import json

import pytest

from sealedlog.crypto import decrypt_envelope, encrypt_for_recipient, generate_keypair
from sealedlog.envelope import (
    TAG_SIZE,
    Envelope,
    EnvelopeFormat,
    GroupCiphertext,
    base64url_to_bytes,
    bytes_to_base64url,
    parse_envelope,
)
from sealedlog.errors import DecryptError


@pytest.fixture
def keypair():
    return generate_keypair()


class TestBase64:
    def test_no_padding(self):
        assert "=" not in bytes_to_base64url(b"\x00\x01")

    def test_roundtrip_with_missing_padding(self):
        for size in range(0, 8):
            data = bytes(range(size))
            assert base64url_to_bytes(bytes_to_base64url(data)) == data


class TestParseEnvelope:
    """Tests for parse_envelope."""

    def test_ephemeral(self, keypair):
        envelope = encrypt_for_recipient("hi", keypair.public_key)
        parsed = parse_envelope(envelope.to_json())
        assert parsed == envelope
        assert parsed.format is EnvelopeFormat.EPHEMERAL

    def test_legacy_without_ephemeral_key(self, keypair):
        envelope = encrypt_for_recipient("hi", keypair.public_key)
        data = envelope.to_dict()
        del data["ephemeralPublicKey"]
        parsed = parse_envelope(json.dumps(data))
        assert parsed.format is EnvelopeFormat.LEGACY
        assert parsed.ephemeral_public_key is None

    def test_tag_appended_to_ciphertext(self, keypair):
        """Envelopes without authTag carry the tag as the last 16 bytes."""
        envelope = encrypt_for_recipient("hi", keypair.public_key)
        data = {
            "ephemeralPublicKey": bytes_to_base64url(envelope.ephemeral_public_key),
            "ciphertext": bytes_to_base64url(envelope.ciphertext + envelope.auth_tag),
            "iv": bytes_to_base64url(envelope.iv),
        }
        parsed = parse_envelope(json.dumps(data))
        assert len(parsed.auth_tag) == TAG_SIZE
        assert decrypt_envelope(parsed, keypair.private_key) == "hi"

    def test_standard_base64_accepted(self, keypair):
        envelope = encrypt_for_recipient("hi", keypair.public_key)
        data = {
            "ephemeralPublicKey": base64.b64encode(envelope.ephemeral_public_key).decode(),
            "ciphertext": base64.b64encode(envelope.ciphertext).decode(),
            "iv": base64.b64encode(envelope.iv).decode(),
            "authTag": base64.b64encode(envelope.auth_tag).decode(),
        }
        parsed = parse_envelope(json.dumps(data))
        assert decrypt_envelope(parsed, keypair.private_key) == "hi"

    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            "[]",
            "42",
            json.dumps({"iv": "AAAA", "authTag": "AAAA"}),
            json.dumps({"ciphertext": "AAAA", "authTag": "AAAA"}),
            json.dumps({"ciphertext": 5, "iv": "AAAA"}),
            json.dumps({"ciphertext": "AAAA", "iv": "AAAA"}),
        ],
    )
    def test_malformed_rejected(self, content):
        with pytest.raises(DecryptError):
            parse_envelope(content)


class TestEnvelope:
    def test_ephemeral_requires_key(self):
        with pytest.raises(ValueError):
            Envelope(format=EnvelopeFormat.EPHEMERAL, ciphertext=b"x", iv=b"y", auth_tag=b"z")

    def test_legacy_rejects_key(self):
        with pytest.raises(ValueError):
            Envelope(
                format=EnvelopeFormat.LEGACY,
                ciphertext=b"x",
                iv=b"y",
                auth_tag=b"z",
                ephemeral_public_key=b"k",
            )

    def test_legacy_dict_has_no_ephemeral_key(self):
        envelope = Envelope(format=EnvelopeFormat.LEGACY, ciphertext=b"x", iv=b"y", auth_tag=b"z")
        assert "ephemeralPublicKey" not in envelope.to_dict()


class TestGroupCiphertext:
    def test_malformed(self):
        with pytest.raises(DecryptError):
            GroupCiphertext.from_json("nope")
        with pytest.raises(DecryptError):
            GroupCiphertext.from_json(json.dumps({"ciphertext": "AAAA"}))
