"""
Runtime configuration read from environment variables.

Variables (all optional):
    GUARD_DATA_DIR              directory of account records
    GUARD_STATE_BUCKET          S3 bucket; when set, records live in S3
    GUARD_STATE_PREFIX          key prefix inside the bucket (default "accounts/")
    GUARD_API_BASE              RPC host
    GUARD_COMMUNITY_BASE        community host used for confirmations
    GUARD_HTTP_TIMEOUT          per-call timeout in seconds
    GUARD_MAX_ATTEMPTS          transport attempts per logical call
    GUARD_REQUESTS_PER_MINUTE   local throttle per host
    GUARD_CONFIRM_PARALLELISM   concurrent confirmation calls per account
    GUARD_ACCOUNT_WORKERS       accounts processed concurrently
    GUARD_AUTO_ACCEPT           comma list of confirmation types to accept
    GUARD_AUTO_DENY             comma list of confirmation types to deny
    GUARD_KDF_MEMORY / GUARD_KDF_ITERATIONS / GUARD_KDF_PARALLELISM
                                Argon2id parameters for newly written records
    GUARD_PASSKEY               passphrase for the records
    GUARD_PASSKEY_PARAM         SSM parameter name holding the passphrase

Never log passphrase values; only whether one was found and where from.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError


DEFAULT_DATA_DIR = Path("~/.config/steamguard-bot/accounts")
DEFAULT_API_BASE = "https://api.steampowered.com"
DEFAULT_COMMUNITY_BASE = "https://steamcommunity.com"

CONFIRMATION_TYPES = ("trade", "market", "unknown")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise ConfigurationError(f"Missing required configuration: {what}")
    return v


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    norm = raw.replace("\n", ",").replace(" ", ",")
    return [t.strip().lower() for t in norm.split(",") if t.strip()]


class GuardConfig(BaseModel):
    """Validated runtime settings."""

    data_dir: Path = Field(default=DEFAULT_DATA_DIR)
    state_bucket: Optional[str] = None
    state_prefix: str = "accounts/"
    api_base: str = DEFAULT_API_BASE
    community_base: str = DEFAULT_COMMUNITY_BASE
    http_timeout: float = Field(default=15.0, gt=0, le=120)
    max_attempts: int = Field(default=5, ge=1, le=10)
    requests_per_minute: int = Field(default=60, ge=1)
    confirm_parallelism: int = Field(default=4, ge=1, le=16)
    account_workers: int = Field(default=4, ge=1, le=64)
    auto_accept: List[str] = Field(default_factory=list)
    auto_deny: List[str] = Field(default_factory=list)
    kdf_memory: int = Field(default=19456, ge=8)
    kdf_iterations: int = Field(default=2, ge=1)
    kdf_parallelism: int = Field(default=1, ge=1, le=16)
    passkey_param: Optional[str] = None

    @field_validator("auto_accept", "auto_deny")
    @classmethod
    def validate_types(cls, v: List[str]) -> List[str]:
        unknown = [t for t in v if t not in CONFIRMATION_TYPES]
        if unknown:
            raise ValueError(f"Unsupported confirmation type(s): {', '.join(unknown)}")
        return v

    @model_validator(mode="after")
    def validate_disjoint(self) -> "GuardConfig":
        both = set(self.auto_accept) & set(self.auto_deny)
        if both:
            raise ValueError(f"Types both accepted and denied: {', '.join(sorted(both))}")
        if self.kdf_memory < 8 * self.kdf_parallelism:
            raise ValueError("kdf_memory must be at least 8 KiB per lane")
        return self

    @property
    def records_path(self) -> Path:
        return self.data_dir.expanduser()

    @classmethod
    def from_env(cls) -> "GuardConfig":
        values = {
            "data_dir": _getenv("GUARD_DATA_DIR"),
            "state_bucket": _getenv("GUARD_STATE_BUCKET"),
            "state_prefix": _getenv("GUARD_STATE_PREFIX"),
            "api_base": _getenv("GUARD_API_BASE"),
            "community_base": _getenv("GUARD_COMMUNITY_BASE"),
            "http_timeout": _getenv("GUARD_HTTP_TIMEOUT"),
            "max_attempts": _getenv("GUARD_MAX_ATTEMPTS"),
            "requests_per_minute": _getenv("GUARD_REQUESTS_PER_MINUTE"),
            "confirm_parallelism": _getenv("GUARD_CONFIRM_PARALLELISM"),
            "account_workers": _getenv("GUARD_ACCOUNT_WORKERS"),
            "kdf_memory": _getenv("GUARD_KDF_MEMORY"),
            "kdf_iterations": _getenv("GUARD_KDF_ITERATIONS"),
            "kdf_parallelism": _getenv("GUARD_KDF_PARALLELISM"),
            "passkey_param": _getenv("GUARD_PASSKEY_PARAM"),
        }
        # Unset variables fall back to field defaults
        kwargs = {k: v for k, v in values.items() if v is not None}
        kwargs["auto_accept"] = _split_csv(_getenv("GUARD_AUTO_ACCEPT"))
        kwargs["auto_deny"] = _split_csv(_getenv("GUARD_AUTO_DENY"))
        try:
            return cls(**kwargs)
        except ValidationError as ve:
            raise ConfigurationError(f"Invalid configuration: {ve}") from ve


__all__ = ["GuardConfig", "CONFIRMATION_TYPES"]
