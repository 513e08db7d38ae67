"""
Invite Token Codec

Turns a ``TokenPayload`` into an opaque, tamper-evident bearer string and back.

Format: ``b64url(nonce) + ":" + b64url(ciphertext)`` where the ciphertext is
AES-256-GCM over the payload's canonical JSON. GCM authenticates the data, so
any modification of either half fails decryption.

Every decode failure raises the same ``InvalidTokenError``. Callers cannot
tell a wrong key from a malformed string; the invite service layers expiry
and status checks on top using the stored invite, which is authoritative.
"""

import base64
import binascii
import hashlib
import json
import os
import uuid
from dataclasses import dataclass
from datetime import datetime

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.exceptions import InvalidTokenError
from app.modules.invites.models import InviteRole

SEPARATOR = ":"
NONCE_LENGTH = 12  # 96-bit nonce required for AES-GCM
ASSOCIATED_DATA = b"school-portal:invite-token:v1"

_MINT_KEY = object()


class InviteToken:
    """
    Opaque invite token.

    Only ``TokenCodec.encode`` mints new tokens, so a raw string can never be
    passed where an issued token is expected.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str, *, _mint_key: object = None):
        if _mint_key is not _MINT_KEY:
            raise TypeError("InviteToken can only be created by TokenCodec.encode")
        self._value = value

    @classmethod
    def restore(cls, value: str) -> "InviteToken":
        """Rewrap a token previously minted by the codec and read back from storage."""
        return cls(value, _mint_key=_MINT_KEY)

    @property
    def value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        # Never print the credential itself
        return "InviteToken(***)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, InviteToken):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)


@dataclass(frozen=True)
class TokenPayload:
    """The structure embedded in an invite token."""

    id: str
    email: str
    role: InviteRole
    expires_at_epoch: int

    @classmethod
    def for_invite(
        cls, invite_id: uuid.UUID, email: str, role: InviteRole, expires_at: datetime
    ) -> "TokenPayload":
        return cls(
            id=str(invite_id),
            email=email,
            role=InviteRole(role),
            expires_at_epoch=int(expires_at.timestamp()),
        )

    def to_bytes(self) -> bytes:
        data = {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "exp": self.expires_at_epoch,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "TokenPayload":
        """
        Parse decrypted bytes.

        Raises:
            InvalidTokenError: If the structure or any field is malformed
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidTokenError() from e

        if not isinstance(data, dict):
            raise InvalidTokenError()

        token_id = data.get("id")
        email = data.get("email")
        role = data.get("role")
        exp = data.get("exp")

        if not isinstance(token_id, str) or not isinstance(email, str) or not email:
            raise InvalidTokenError()
        # bool is an int subclass; reject it explicitly
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise InvalidTokenError()
        try:
            uuid.UUID(token_id)
            parsed_role = InviteRole(role)
        except (ValueError, TypeError) as e:
            raise InvalidTokenError() from e

        return cls(id=token_id, email=email, role=parsed_role, expires_at_epoch=exp)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    """Strict base64url decoding: the input must be the canonical encoding."""
    try:
        padded = text + "=" * (-len(text) % 4)
        data = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise InvalidTokenError() from e
    # Rejects stray characters and altered padding bits that decode to the same bytes
    if _b64encode(data) != text:
        raise InvalidTokenError()
    return data


class TokenCodec:
    """
    AES-256-GCM invite token codec.

    Args:
        key: 32-byte AES key
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("TokenCodec key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "TokenCodec":
        """Derive the AES key from a configured secret string."""
        if not secret:
            raise ValueError("Invite token secret must not be empty")
        return cls(hashlib.sha256(secret.encode("utf-8")).digest())

    def encode(self, payload: TokenPayload) -> InviteToken:
        """Encrypt ``payload`` with a fresh random nonce."""
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aead.encrypt(nonce, payload.to_bytes(), ASSOCIATED_DATA)
        return InviteToken(
            f"{_b64encode(nonce)}{SEPARATOR}{_b64encode(ciphertext)}", _mint_key=_MINT_KEY
        )

    def decode(self, token: "InviteToken | str") -> TokenPayload:
        """
        Decrypt and parse a token.

        Raises:
            InvalidTokenError: On any malformed, tampered, or undecryptable token
        """
        raw = token.value if isinstance(token, InviteToken) else token
        if not isinstance(raw, str) or raw.count(SEPARATOR) != 1:
            raise InvalidTokenError()

        nonce_text, ciphertext_text = raw.split(SEPARATOR)
        if not nonce_text or not ciphertext_text:
            raise InvalidTokenError()

        nonce = _b64decode(nonce_text)
        ciphertext = _b64decode(ciphertext_text)

        if len(nonce) != NONCE_LENGTH:
            raise InvalidTokenError()

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, ASSOCIATED_DATA)
        except (InvalidTag, ValueError) as e:
            raise InvalidTokenError() from e

        return TokenPayload.from_bytes(plaintext)


__all__ = ["InviteToken", "TokenPayload", "TokenCodec"]
