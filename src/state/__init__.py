"""
Account persistence: models, at-rest encryption and record storage.

Records are JSON (`AccountRecord`) whose payload is an `EncryptedBlob`
produced by `SecretCodec`; they live in a directory or an S3 bucket.
"""

from .codec import KdfSettings, SecretCodec
from .models import AccountRecord, AccountSecret, EncryptedBlob, Session
from .store import AccountNotFound, AccountStore, FileBackend, OptimisticLockError

__all__ = [
    "AccountRecord",
    "AccountSecret",
    "AccountNotFound",
    "AccountStore",
    "EncryptedBlob",
    "FileBackend",
    "KdfSettings",
    "OptimisticLockError",
    "SecretCodec",
    "Session",
]
