"""
Unit tests for the invite token codec.

These tests cover:
- Encode/decode round trip
- Tamper detection on both halves of the token
- Structural failures (separator, encoding, nonce length)
- Payload shape validation
- The opaque InviteToken type
"""

import base64
import hashlib
import json
import os
import string
from datetime import UTC, datetime
from uuid import uuid4

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.exceptions import InvalidTokenError
from app.modules.invites.models import InviteRole
from app.modules.invites.tokens import (
    ASSOCIATED_DATA,
    InviteToken,
    TokenCodec,
    TokenPayload,
)

SECRET = "test-invite-token-secret"
B64URL_ALPHABET = string.ascii_letters + string.digits + "-_"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _seal(plaintext: bytes, secret: str = SECRET, nonce: bytes | None = None) -> str:
    """Encrypt arbitrary bytes the way the codec does, to craft bad payloads."""
    key = hashlib.sha256(secret.encode()).digest()
    nonce = nonce or os.urandom(12)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, ASSOCIATED_DATA)
    return f"{_b64(nonce)}:{_b64(ciphertext)}"


@pytest.fixture
def payload():
    return TokenPayload.for_invite(
        uuid4(),
        "new.teacher@school.edu",
        InviteRole.TEACHER,
        datetime(2026, 3, 9, 9, 0, tzinfo=UTC),
    )


class TestRoundTrip:
    """Tests for encode followed by decode."""

    def test_decode_returns_original_payload(self, codec, payload):
        """Decoding an encoded payload yields an equal payload."""
        token = codec.encode(payload)
        assert codec.decode(token) == payload

    def test_decode_accepts_plain_string(self, codec, payload):
        """Tokens read from a request body arrive as strings."""
        token = codec.encode(payload)
        assert codec.decode(token.value) == payload

    def test_each_encode_uses_fresh_nonce(self, codec, payload):
        """Encoding the same payload twice produces different tokens."""
        first = codec.encode(payload).value
        second = codec.encode(payload).value
        assert first != second
        assert first.split(":")[0] != second.split(":")[0]

    def test_token_is_url_safe(self, codec, payload):
        """Tokens contain only base64url characters and one separator."""
        value = codec.encode(payload).value
        assert value.count(":") == 1
        assert set(value.replace(":", "")) <= set(B64URL_ALPHABET)

    def test_expiry_is_stored_as_epoch_seconds(self, payload):
        assert payload.expires_at_epoch == int(datetime(2026, 3, 9, 9, 0, tzinfo=UTC).timestamp())


class TestTamperDetection:
    """Changing any single character must fail with InvalidTokenError."""

    def test_every_single_character_change_is_rejected(self, codec, payload):
        value = codec.encode(payload).value

        for position, char in enumerate(value):
            if char == ":":
                continue
            replacement = "A" if char != "A" else "B"
            tampered = value[:position] + replacement + value[position + 1 :]
            with pytest.raises(InvalidTokenError):
                codec.decode(tampered)

    def test_wrong_key_is_rejected(self, codec, payload):
        """A token from another deployment's key does not decode."""
        other = TokenCodec.from_secret("a-different-secret")
        with pytest.raises(InvalidTokenError):
            other.decode(codec.encode(payload))

    def test_swapped_nonce_is_rejected(self, codec, payload):
        """Reusing the ciphertext half with another token's nonce fails."""
        first = codec.encode(payload).value
        second = codec.encode(payload).value
        mixed = first.split(":")[0] + ":" + second.split(":")[1]
        with pytest.raises(InvalidTokenError):
            codec.decode(mixed)


class TestStructuralFailures:
    """Malformed token strings."""

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "no-separator-here",
            ":",
            "abc:",
            ":abc",
            "a:b:c",
            "not base64!:also not",
            "ünïcödé:ünïcödé",
        ],
    )
    def test_malformed_strings_are_rejected(self, codec, value):
        with pytest.raises(InvalidTokenError):
            codec.decode(value)

    def test_short_nonce_is_rejected(self, codec, payload):
        value = codec.encode(payload).value
        _, ciphertext = value.split(":")
        with pytest.raises(InvalidTokenError):
            codec.decode(f"{_b64(os.urandom(8))}:{ciphertext}")

    def test_padded_base64_is_rejected(self, codec, payload):
        """Only the canonical unpadded encoding is accepted."""
        value = codec.encode(payload).value
        with pytest.raises(InvalidTokenError):
            codec.decode(value + "==")

    def test_non_string_is_rejected(self, codec):
        with pytest.raises(InvalidTokenError):
            codec.decode(12345)  # type: ignore[arg-type]


class TestPayloadValidation:
    """Decrypted bytes that are not a well-formed payload."""

    def _valid_fields(self) -> dict:
        return {
            "id": str(uuid4()),
            "email": "student@school.edu",
            "role": "student",
            "exp": 1_900_000_000,
        }

    def test_well_formed_crafted_payload_decodes(self, codec):
        fields = self._valid_fields()
        decoded = codec.decode(_seal(json.dumps(fields).encode()))
        assert decoded.email == "student@school.edu"
        assert decoded.role == InviteRole.STUDENT

    @pytest.mark.parametrize("missing", ["id", "email", "role", "exp"])
    def test_missing_field_is_rejected(self, codec, missing):
        fields = self._valid_fields()
        del fields[missing]
        with pytest.raises(InvalidTokenError):
            codec.decode(_seal(json.dumps(fields).encode()))

    @pytest.mark.parametrize(
        "field,value",
        [
            ("id", "not-a-uuid"),
            ("id", 42),
            ("email", ""),
            ("email", None),
            ("role", "admin"),
            ("role", "parent"),
            ("exp", "1900000000"),
            ("exp", True),
            ("exp", 1.5),
        ],
    )
    def test_wrong_shape_is_rejected(self, codec, field, value):
        fields = self._valid_fields()
        fields[field] = value
        with pytest.raises(InvalidTokenError):
            codec.decode(_seal(json.dumps(fields).encode()))

    @pytest.mark.parametrize(
        "plaintext", [b"[1, 2, 3]", b'"just a string"', b"not json", b"\xff\xfe"]
    )
    def test_non_object_plaintext_is_rejected(self, codec, plaintext):
        with pytest.raises(InvalidTokenError):
            codec.decode(_seal(plaintext))


class TestInviteToken:
    """Tests for the opaque token type."""

    def test_direct_construction_is_refused(self):
        with pytest.raises(TypeError):
            InviteToken("forged")

    def test_restore_wraps_stored_value(self, codec, payload):
        token = codec.encode(payload)
        assert InviteToken.restore(token.value) == token
        assert hash(InviteToken.restore(token.value)) == hash(token)

    def test_repr_hides_value(self, codec, payload):
        token = codec.encode(payload)
        assert token.value not in repr(token)
        assert str(token) == token.value


class TestTokenCodecConstruction:
    def test_key_must_be_32_bytes(self):
        with pytest.raises(ValueError):
            TokenCodec(b"short")

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenCodec.from_secret("")
