from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from common.errors import ConfigurationError, GuardError, WrongPassphraseOrCorrupt

from .codec import KdfSettings, Passphrase, SecretCodec
from .legacy import account_from_sda, entry_blob, read_mafile, read_manifest
from .models import AccountRecord, AccountSecret, RecordMetadata


logger = logging.getLogger("steamguard.store")

RECORD_SUFFIX = ".json"


class OptimisticLockError(GuardError):
    """Raised when a conditional write finds the record changed underneath it."""


class AccountNotFound(ConfigurationError):
    """No record exists for the requested account."""


class RecordBackend(Protocol):
    """
    Byte storage for records, keyed by lowercase account name.

    `read` returns `(data, version)` or None; `write` returns the new version.
    `if_match` makes the write conditional on the version last read.
    """

    def read(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]: ...

    def write(self, key: str, data: bytes, *, if_match: Optional[str] = None) -> Optional[str]: ...

    def delete(self, key: str) -> bool: ...

    def list_keys(self) -> List[str]: ...


class FileBackend:
    """
    One `<dir>/<key>.json` per account.

    Writes go to a temp file in the same directory, are fsynced, then
    `os.replace`d over the record, so a crash leaves the old or the new
    record and never a torn one. The version is the file's mtime_ns.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}{RECORD_SUFFIX}"

    def read(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]:
        path = self._path(key)
        try:
            data = path.read_bytes()
            version = str(path.stat().st_mtime_ns)
        except FileNotFoundError:
            return None
        return data, version

    def write(self, key: str, data: bytes, *, if_match: Optional[str] = None) -> Optional[str]:
        path = self._path(key)
        self._dir.mkdir(parents=True, exist_ok=True)
        if if_match is not None:
            current = self.read(key)
            if current is None or current[1] != if_match:
                raise OptimisticLockError(f"record {key} changed since it was read")

        fd, tmp = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self._dir)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
        return str(path.stat().st_mtime_ns)

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return False
        return True

    def list_keys(self) -> List[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.name[: -len(RECORD_SUFFIX)] for p in self._dir.glob(f"*{RECORD_SUFFIX}") if not p.name.startswith("."))


def _dump_account_json(account: AccountSecret) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(account.model_dump(mode="json"), separators=(",", ":"), sort_keys=True).encode("utf-8")


def _load_account_json(plaintext: bytes) -> AccountSecret:
    try:
        raw = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise WrongPassphraseOrCorrupt() from None
    if not isinstance(raw, dict):
        raise WrongPassphraseOrCorrupt()
    # Records written by older tools carry the SDA layout
    if "steam_id" not in raw:
        return account_from_sda(raw)
    try:
        return AccountSecret.model_validate(raw)
    except ValidationError as ve:
        raise ConfigurationError(f"decrypted record is malformed: {ve.error_count()} invalid field(s)") from ve


_IMMUTABLE_SECRETS = ("shared_secret", "identity_secret")


def _check_secrets_kept(current: AccountSecret, updated: AccountSecret) -> None:
    """Once set, an account's shared and identity secrets never change."""
    for field in _IMMUTABLE_SECRETS:
        old = current.secret(field)
        if old and updated.secret(field) != old:
            raise ConfigurationError(f"{field} of account {current.account_name} cannot change")


def _key(name: str) -> str:
    key = name.strip().lower()
    if not key or "/" in key or "\\" in key or key.startswith("."):
        raise ConfigurationError(f"invalid account name: {name!r}")
    return key


class AccountStore:
    """
    Encrypted per-account records on a pluggable backend.

    Usage
    - `add/save/load/remove/names` are the plain CRUD surface.
    - `lock_for(name)` hands out the account's re-entrant lock; every
      read-modify-write here runs under it, and SessionManager takes the
      same lock for its transitions.
    - `update(name, passphrase, fn)` decrypts, applies `fn`, re-encrypts and
      writes conditionally on the version read.
    - Records are always written with the codec's current KDF; legacy blobs
      are read and upgraded on the next write.
    """

    def __init__(
        self,
        backend: RecordBackend,
        codec: Optional[SecretCodec] = None,
        *,
        kdf: Optional[KdfSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._codec = codec or SecretCodec(kdf)
        self._clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def codec(self) -> SecretCodec:
        return self._codec

    # -------- Locks --------
    def lock_for(self, name: str) -> threading.RLock:
        key = _key(name)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    # -------- Records --------
    def names(self) -> List[str]:
        return self._backend.list_keys()

    def exists(self, name: str) -> bool:
        return self._backend.read(_key(name)) is not None

    def read_record(self, name: str) -> Tuple[AccountRecord, Optional[str]]:
        found = self._backend.read(_key(name))
        if found is None:
            raise AccountNotFound(f"no account named {name}")
        data, version = found
        try:
            return AccountRecord.model_validate_json(data), version
        except ValidationError:
            raise WrongPassphraseOrCorrupt("record is unreadable") from None

    def _decrypt(self, record: AccountRecord, passphrase: Passphrase) -> AccountSecret:
        return _load_account_json(self._codec.decrypt(record.blob, passphrase))

    def _write(
        self,
        account: AccountSecret,
        passphrase: Passphrase,
        *,
        created_at: Optional[int] = None,
        if_match: Optional[str] = None,
    ) -> None:
        now = int(self._clock())
        record = AccountRecord(
            metadata=RecordMetadata(
                account_name=account.account_name,
                steam_id=account.steam_id,
                created_at=created_at or now,
                updated_at=now,
            ),
            blob=self._codec.encrypt(_dump_account_json(account), passphrase),
        )
        self._backend.write(account.key, record.model_dump_json().encode("utf-8"), if_match=if_match)

    def add(self, account: AccountSecret, passphrase: Passphrase) -> None:
        with self.lock_for(account.account_name):
            if self.exists(account.account_name):
                raise ConfigurationError(f"account {account.account_name} already exists")
            self._write(account, passphrase)
        logger.info("account added: %s", account.account_name)

    def load(self, name: str, passphrase: Passphrase) -> AccountSecret:
        with self.lock_for(name):
            record, _ = self.read_record(name)
            return self._decrypt(record, passphrase)

    def save(self, account: AccountSecret, passphrase: Passphrase) -> None:
        """Write `account`, keeping the original created_at if a record exists."""
        with self.lock_for(account.account_name):
            created_at: Optional[int] = None
            version: Optional[str] = None
            found = self._backend.read(account.key)
            if found is not None:
                version = found[1]
                try:
                    created_at = AccountRecord.model_validate_json(found[0]).metadata.created_at
                except ValidationError:
                    logger.warning("overwriting unreadable record for %s", account.account_name)
            self._write(account, passphrase, created_at=created_at, if_match=version)
        logger.debug("account saved: %s", account.account_name)

    def remove(self, name: str) -> bool:
        with self.lock_for(name):
            removed = self._backend.delete(_key(name))
        if removed:
            logger.info("account removed: %s", name)
        return removed

    def update(
        self,
        name: str,
        passphrase: Passphrase,
        fn: Callable[[AccountSecret], AccountSecret],
    ) -> AccountSecret:
        """Read-modify-write under the account lock; returns the stored account."""
        with self.lock_for(name):
            record, version = self.read_record(name)
            current = self._decrypt(record, passphrase)
            updated = fn(current)
            if updated.key != current.key:
                raise ConfigurationError("update must not rename the account")
            _check_secrets_kept(current, updated)
            self._write(updated, passphrase, created_at=record.metadata.created_at, if_match=version)
            return updated

    def rekey(self, name: str, old: Passphrase, new: Passphrase) -> None:
        with self.lock_for(name):
            record, version = self.read_record(name)
            account = self._decrypt(record, old)
            self._write(account, new, created_at=record.metadata.created_at, if_match=version)
        logger.info("account re-keyed: %s", name)

    def needs_upgrade(self, name: str) -> bool:
        record, _ = self.read_record(name)
        return self._codec.needs_upgrade(record.blob)

    # -------- Imports --------
    def _save_import(self, account: AccountSecret, passphrase: Passphrase, overwrite: bool) -> None:
        with self.lock_for(account.account_name):
            if not overwrite and self.exists(account.account_name):
                record, _ = self.read_record(account.account_name)
                _check_secrets_kept(self._decrypt(record, passphrase), account)
            self.save(account, passphrase)

    def import_mafile(self, path: Path, passphrase: Passphrase, *, overwrite: bool = False) -> AccountSecret:
        """
        Import a plaintext SDA maFile.

        An existing record is replaced only if its secrets match, unless
        `overwrite` is set.
        """
        account = read_mafile(Path(path))
        self._save_import(account, passphrase, overwrite)
        logger.info("imported maFile for %s", account.account_name)
        return account

    def import_sda_manifest(
        self,
        path: Path,
        passphrase: Passphrase,
        *,
        new_passphrase: Optional[Passphrase] = None,
        overwrite: bool = False,
    ) -> List[str]:
        """
        Import every account listed in an SDA manifest.

        Encrypted entries are opened with `passphrase` (legacy scheme); all
        accounts are stored under `new_passphrase`, or `passphrase` if None.
        Existing records follow the same rule as `import_mafile`.
        Returns the imported account names.
        """
        manifest_path = Path(path)
        manifest = read_manifest(manifest_path)
        target = passphrase if new_passphrase is None else new_passphrase
        imported: List[str] = []
        for entry in manifest.entries:
            file_path = manifest_path.parent / entry.filename
            try:
                text = file_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigurationError(f"cannot read {file_path}: {exc}") from exc
            blob = entry_blob(entry, text) if manifest.encrypted else None
            if blob is not None:
                account = _load_account_json(self._codec.decrypt(blob, passphrase))
            else:
                account = read_mafile(file_path)
            if not account.steam_id and entry.steamid:
                account = account.model_copy(update={"steam_id": entry.steamid})
            self._save_import(account, target, overwrite)
            imported.append(account.account_name)
        logger.info("imported %d account(s) from %s", len(imported), manifest_path.name)
        return imported


def backend_from_config(config) -> RecordBackend:
    """S3 when a state bucket is configured, else the local directory."""
    if config.state_bucket:
        from .s3_store import S3Backend

        return S3Backend(bucket=config.state_bucket, prefix=config.state_prefix)
    return FileBackend(config.records_path)


def store_from_config(config) -> AccountStore:
    kdf = KdfSettings(
        memory=config.kdf_memory,
        iterations=config.kdf_iterations,
        parallelism=config.kdf_parallelism,
    )
    return AccountStore(backend_from_config(config), SecretCodec(kdf))


__all__ = [
    "AccountStore",
    "AccountNotFound",
    "FileBackend",
    "OptimisticLockError",
    "RecordBackend",
    "backend_from_config",
    "store_from_config",
]
