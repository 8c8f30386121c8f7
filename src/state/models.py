from __future__ import annotations

import base64
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer, field_validator, model_validator


DEFAULT_SESSION_TTL = 24 * 3600
RECORD_VERSION = 1


def _jwt_claims(token: str) -> Dict[str, Any]:
    """Best-effort read of a JWT payload; the signature is not checked."""
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


class Session(BaseModel):
    """
    Live platform session for one account.

    Tokens are SecretStr so they never show up in reprs or logs; they are
    dumped in clear only when the record is serialized for encryption.
    """

    model_config = ConfigDict(frozen=True)

    account_id: int
    access_token: SecretStr
    refresh_token: SecretStr
    issued_at: int
    expires_at: int

    @field_serializer("access_token", "refresh_token")
    def _reveal(self, v: SecretStr) -> str:
        return v.get_secret_value()

    @model_validator(mode="after")
    def validate_window(self) -> "Session":
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be after issued_at")
        return self

    @classmethod
    def from_tokens(cls, *, account_id: int, access_token: str, refresh_token: str, now: int) -> "Session":
        """Build a session, taking iat/exp from the access token when it carries them."""
        claims = _jwt_claims(access_token)
        issued = claims.get("iat")
        expires = claims.get("exp")
        issued_at = int(issued) if isinstance(issued, (int, float)) else int(now)
        if isinstance(expires, (int, float)) and int(expires) > issued_at:
            expires_at = int(expires)
        else:
            expires_at = issued_at + DEFAULT_SESSION_TTL
        return cls(
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def expires_within(self, seconds: int, *, now: int) -> bool:
        return now + seconds >= self.expires_at


_SECRET_FIELDS = ("shared_secret", "identity_secret", "revocation_code", "uri", "secret_1")


class AccountSecret(BaseModel):
    """
    Authenticator material for one account plus its last session.

    Frozen: the secrets never change once set. A session update produces a
    new instance through `with_session`.
    """

    model_config = ConfigDict(frozen=True)

    account_name: str
    steam_id: int = 0
    shared_secret: Optional[SecretStr] = None
    identity_secret: Optional[SecretStr] = None
    device_id: str = ""
    serial_number: str = ""
    revocation_code: Optional[SecretStr] = None
    uri: Optional[SecretStr] = None
    token_gid: str = ""
    secret_1: Optional[SecretStr] = None
    server_time: int = 0
    fully_enrolled: bool = False
    session: Optional[Session] = None

    @field_validator("account_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("account_name is required")
        if "/" in v or "\\" in v or v.startswith("."):
            raise ValueError("account_name contains path characters")
        return v

    @field_serializer(*_SECRET_FIELDS)
    def _reveal(self, v: Optional[SecretStr]) -> Optional[str]:
        return v.get_secret_value() if v is not None else None

    def secret(self, name: str) -> Optional[str]:
        if name not in _SECRET_FIELDS:
            raise KeyError(name)
        v = getattr(self, name)
        return v.get_secret_value() if v is not None else None

    @property
    def key(self) -> str:
        """Storage key; names are case-insensitive on the platform."""
        return self.account_name.lower()

    def with_session(self, session: Optional[Session]) -> "AccountSecret":
        return self.model_copy(update={"session": session})


class LegacyKdf(BaseModel):
    """PBKDF2-HMAC-SHA1; kept so records from older tools still open."""

    scheme: Literal["pbkdf2-sha1"] = "pbkdf2-sha1"
    salt: str
    iterations: int = Field(default=50000, ge=1)


class StrongKdf(BaseModel):
    """Argon2id; `memory` is in KiB."""

    scheme: Literal["argon2id"] = "argon2id"
    salt: str
    memory: int = Field(default=19456, ge=8)
    iterations: int = Field(default=2, ge=1)
    parallelism: int = Field(default=1, ge=1)


KdfParams = Annotated[Union[LegacyKdf, StrongKdf], Field(discriminator="scheme")]


class EncryptedBlob(BaseModel):
    """Cipher text plus everything needed to regenerate its key. Binary fields are base64."""

    cipher_text: str
    initialization_vector: str
    key_derivation_params: KdfParams
    mac: Optional[str] = None


class RecordMetadata(BaseModel):
    account_name: str
    steam_id: int = 0
    created_at: int = 0
    updated_at: int = 0


class AccountRecord(BaseModel):
    """What gets persisted per account: clear metadata and the encrypted AccountSecret."""

    version: int = RECORD_VERSION
    metadata: RecordMetadata
    blob: EncryptedBlob


__all__ = [
    "AccountSecret",
    "Session",
    "LegacyKdf",
    "StrongKdf",
    "KdfParams",
    "EncryptedBlob",
    "RecordMetadata",
    "AccountRecord",
]
