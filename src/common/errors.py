from __future__ import annotations

from typing import Optional


class GuardError(RuntimeError):
    """Base error for the authenticator core."""


class ConfigurationError(GuardError):
    """Missing or malformed configuration or secret material."""


class InvalidSecret(ConfigurationError):
    """A shared/identity secret is empty or not valid base64."""


class ClockUnavailable(GuardError):
    """No time source is established and no explicit time was given."""


class CryptoError(GuardError):
    """Decryption or authentication of stored material failed."""


class WrongPassphraseOrCorrupt(CryptoError):
    """Wrong passphrase or corrupted blob. The two are never distinguished."""

    def __init__(self, message: str = "wrong passphrase or corrupted record") -> None:
        super().__init__(message)


class NetworkError(GuardError):
    """Transient network failure that outlived the retry budget."""


class TimeSyncUnavailable(NetworkError):
    """The platform time endpoint could not be reached."""


class RateLimitError(GuardError):
    """The local throttle could not grant a slot within its timeout."""


class ProtocolError(GuardError):
    """The platform answered with an unexpected status."""

    def __init__(self, message: str, *, eresult: Optional[int] = None) -> None:
        super().__init__(message)
        self.eresult = eresult


class AuthorizationError(ProtocolError):
    """Access token missing, expired or rejected (HTTP 401/403, needauth)."""


class AuthExpired(GuardError):
    """Refresh token rejected; the operator has to log in again."""


class AuthFailed(GuardError):
    """Credentials rejected or challenge attempts exhausted."""


class ChallengeRequired(GuardError):
    """Login needs an answer to a challenge (expected branch, not a failure)."""

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message or f"login challenge required: {kind}")
        self.kind = kind


__all__ = [
    "GuardError",
    "ConfigurationError",
    "InvalidSecret",
    "ClockUnavailable",
    "CryptoError",
    "WrongPassphraseOrCorrupt",
    "NetworkError",
    "TimeSyncUnavailable",
    "RateLimitError",
    "ProtocolError",
    "AuthorizationError",
    "AuthExpired",
    "AuthFailed",
    "ChallengeRequired",
]
