from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import struct
from typing import Optional, Union

from .errors import ClockUnavailable, InvalidSecret


CODE_ALPHABET = "23456789BCDFGHJKMNPQRTVWXY"
CODE_LENGTH = 5
CODE_PERIOD = 30

# The platform only mixes the first 32 bytes of a tag into the key.
MAX_TAG_LENGTH = 32

SecretLike = Union[str, bytes]


def decode_secret(secret: Optional[SecretLike]) -> bytes:
    """
    Turn a stored base64 secret into raw key bytes.

    Raw bytes are passed through. Empty input or invalid base64 raises
    InvalidSecret.
    """
    if secret is None:
        raise InvalidSecret("secret is missing")
    if isinstance(secret, (bytes, bytearray)):
        raw = bytes(secret)
    else:
        text = secret.strip()
        if not text:
            raise InvalidSecret("secret is empty")
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidSecret("secret is not valid base64") from exc
    if not raw:
        raise InvalidSecret("secret decodes to zero bytes")
    return raw


def generate_login_code(shared_secret: SecretLike, timestamp: int) -> str:
    """
    Five-character login code for the 30-second window containing `timestamp`.

    HMAC-SHA1 keyed by the shared secret over the big-endian window counter;
    dynamic truncation to 31 bits; then base-26 digits, least significant
    first, from CODE_ALPHABET.
    """
    key = decode_secret(shared_secret)
    counter = struct.pack(">Q", int(timestamp) // CODE_PERIOD)
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF

    chars = []
    for _ in range(CODE_LENGTH):
        value, idx = divmod(value, len(CODE_ALPHABET))
        chars.append(CODE_ALPHABET[idx])
    return "".join(chars)


def generate_confirmation_key(identity_secret: SecretLike, timestamp: int, tag: str) -> str:
    """Base64 HMAC-SHA1 over (8-byte big-endian time || tag) keyed by the identity secret."""
    if not tag:
        raise ValueError("tag is required")
    key = decode_secret(identity_secret)
    buf = struct.pack(">Q", int(timestamp)) + tag.encode("ascii")[:MAX_TAG_LENGTH]
    digest = hmac.new(key, buf, hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_login_approval_signature(
    shared_secret: SecretLike, *, version: int, client_id: int, steam_id: int
) -> bytes:
    """HMAC-SHA256 the mobile app attaches when approving a QR login."""
    key = decode_secret(shared_secret)
    buf = struct.pack("<HQQ", version, client_id, steam_id)
    return hmac.new(key, buf, hashlib.sha256).digest()


def generate_device_id(steam_id: int) -> str:
    """Stable android-style device identity derived from the account's id."""
    h = hashlib.sha1(str(steam_id).encode("ascii")).hexdigest()
    return f"android:{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


class CodeGenerator:
    """
    Binds the pure generators to a TimeSource.

    Every method takes an optional explicit `timestamp`; without one the
    adjusted time comes from the time source, and ClockUnavailable is raised
    when there is none.
    """

    def __init__(self, time_source=None) -> None:
        self._time_source = time_source

    def _time(self, timestamp: Optional[int]) -> int:
        if timestamp is not None:
            return int(timestamp)
        if self._time_source is None:
            raise ClockUnavailable("no time source established")
        return self._time_source.now()

    def resync(self) -> int:
        """Re-query the platform clock; returns the new drift."""
        if self._time_source is None:
            raise ClockUnavailable("no time source established")
        self._time_source.resync()
        return self._time_source.drift

    def login_code(self, shared_secret: Optional[SecretLike], timestamp: Optional[int] = None) -> str:
        if not shared_secret:
            raise InvalidSecret("account has no shared secret")
        return generate_login_code(shared_secret, self._time(timestamp))

    def confirmation_key(
        self,
        identity_secret: Optional[SecretLike],
        tag: str,
        timestamp: Optional[int] = None,
    ) -> tuple[str, int]:
        """Return `(key, time)`; the platform needs the exact time the key was made for."""
        if not identity_secret:
            raise InvalidSecret("account has no identity secret")
        t = self._time(timestamp)
        return generate_confirmation_key(identity_secret, t, tag), t


__all__ = [
    "CODE_ALPHABET",
    "CodeGenerator",
    "decode_secret",
    "generate_login_code",
    "generate_confirmation_key",
    "generate_login_approval_signature",
    "generate_device_id",
]
