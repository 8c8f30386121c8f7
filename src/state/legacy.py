"""
Readers for Steam Desktop Authenticator (SDA) data.

SDA keeps one `.maFile` per account next to a `manifest.json`:

    {"encrypted": true,
     "entries": [{"filename": "1234.maFile", "steamid": 1234,
                  "encryption_iv": "<b64>", "encryption_salt": "<b64>"}]}

Encrypted maFiles hold a bare base64 cipher text produced with the legacy
PBKDF2-SHA1 scheme; the IV and salt live in the manifest entry.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from common.errors import ConfigurationError

from .models import AccountSecret, EncryptedBlob, LegacyKdf


logger = logging.getLogger("steamguard.store")

SDA_PBKDF2_ITERATIONS = 50000


class SdaManifestEntry(BaseModel):
    filename: str
    steamid: int = 0
    encryption_iv: Optional[str] = None
    encryption_salt: Optional[str] = None


class SdaManifest(BaseModel):
    encrypted: bool = False
    entries: List[SdaManifestEntry] = Field(default_factory=list)


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def account_from_sda(data: Dict[str, Any]) -> AccountSecret:
    """Map an SDA maFile object onto AccountSecret. Web-session cookies are dropped."""
    session = data.get("Session") or {}
    steam_id = _int(data.get("steam_id") or session.get("SteamID"))
    try:
        return AccountSecret(
            account_name=data.get("account_name") or "",
            steam_id=steam_id,
            shared_secret=data.get("shared_secret") or None,
            identity_secret=data.get("identity_secret") or None,
            device_id=data.get("device_id") or "",
            serial_number=str(data.get("serial_number") or ""),
            revocation_code=data.get("revocation_code") or None,
            uri=data.get("uri") or None,
            token_gid=data.get("token_gid") or "",
            secret_1=data.get("secret_1") or None,
            server_time=_int(data.get("server_time")),
            fully_enrolled=bool(data.get("fully_enrolled", False)),
        )
    except ValidationError as ve:
        raise ConfigurationError(f"maFile is not a usable account: {ve.error_count()} invalid field(s)") from ve


def read_mafile(path: Path) -> AccountSecret:
    """Plaintext maFile -> AccountSecret."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read maFile {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"maFile {path} is not a JSON object")
    return account_from_sda(data)


def read_manifest(path: Path) -> SdaManifest:
    try:
        return SdaManifest.model_validate_json(Path(path).read_bytes())
    except OSError as exc:
        raise ConfigurationError(f"cannot read manifest {path}: {exc}") from exc
    except ValidationError as ve:
        raise ConfigurationError(f"manifest {path} is malformed") from ve


def entry_blob(entry: SdaManifestEntry, cipher_text: str) -> Optional[EncryptedBlob]:
    """Legacy blob for an encrypted entry, or None if the entry is plaintext."""
    if not entry.encryption_iv or not entry.encryption_salt:
        return None
    return EncryptedBlob(
        cipher_text=cipher_text.strip(),
        initialization_vector=entry.encryption_iv,
        key_derivation_params=LegacyKdf(salt=entry.encryption_salt, iterations=SDA_PBKDF2_ITERATIONS),
    )


__all__ = [
    "SdaManifest",
    "SdaManifestEntry",
    "account_from_sda",
    "read_mafile",
    "read_manifest",
    "entry_blob",
]
