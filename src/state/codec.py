"""
SecretCodec: at-rest encryption of account records.

New blobs:  Argon2id(passphrase, salt) -> 64 bytes = AES-256 key || HMAC key
            AES-256-CBC + PKCS7, random IV, HMAC-SHA256 over params|IV|ciphertext
Legacy:     PBKDF2-HMAC-SHA1(passphrase, salt, 50000) -> AES-256 key, CBC + PKCS7,
            no tag; decrypt only.

Decryption dispatches on the scheme stored in the blob. Any failure (bad
tag, bad padding, undecodable fields, non-JSON legacy plaintext) surfaces as
WrongPassphraseOrCorrupt so callers cannot tell a wrong passphrase from a
damaged record.

Security Note:
    Passphrase bytes and derived keys are held in bytearrays and zeroed on
    every exit path. Copies made inside the crypto backend are out of reach.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from common.errors import ConfigurationError, WrongPassphraseOrCorrupt

from .models import EncryptedBlob, KdfParams, LegacyKdf, StrongKdf


logger = logging.getLogger("steamguard.codec")

KEY_LENGTH = 32  # AES-256
MAC_KEY_LENGTH = 32
IV_SIZE = 16
SALT_SIZE = 16
BLOCK_BITS = 128
MAC_DOMAIN = b"steamguard-bot/v1"

# Upper bounds on stored Argon2 parameters; a tampered blob must not be able
# to make decryption allocate unbounded memory.
MAX_MEMORY_KIB = 4 * 1024 * 1024
MAX_ITERATIONS = 64
MAX_PARALLELISM = 16

Passphrase = Union[str, bytes, bytearray]


@dataclass(frozen=True)
class KdfSettings:
    memory: int = 19456
    iterations: int = 2
    parallelism: int = 1


def _wipe(buf: Optional[bytearray]) -> None:
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def _to_buffer(passphrase: Optional[Passphrase]) -> bytearray:
    if passphrase is None:
        raise ConfigurationError("passphrase is required")
    if isinstance(passphrase, str):
        return bytearray(passphrase.encode("utf-8"))
    return bytearray(passphrase)


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def _derive(params: KdfParams, secret: bytearray) -> bytearray:
    salt = _b64d(params.salt)
    if isinstance(params, StrongKdf):
        if (
            params.memory > MAX_MEMORY_KIB
            or params.iterations > MAX_ITERATIONS
            or params.parallelism > MAX_PARALLELISM
        ):
            raise ValueError("kdf parameters out of range")
        kdf = Argon2id(
            salt=salt,
            length=KEY_LENGTH + MAC_KEY_LENGTH,
            iterations=params.iterations,
            lanes=params.parallelism,
            memory_cost=params.memory,
        )
    else:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA1(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=params.iterations,
        )
    return bytearray(kdf.derive(secret))


def _mac_input(params: KdfParams, iv: bytes, cipher_text: bytes) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    encoded = json.dumps(params.model_dump(), separators=(",", ":"), sort_keys=True).encode("utf-8")
    return MAC_DOMAIN + len(encoded).to_bytes(4, "big") + encoded + iv + cipher_text


def _cbc_encrypt(key: bytearray, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytearray, iv: bytes, cipher_text: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(cipher_text) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


class SecretCodec:
    """Encrypts/decrypts record plaintext under a passphrase."""

    def __init__(self, settings: Optional[KdfSettings] = None) -> None:
        self._settings = settings or KdfSettings()

    @property
    def settings(self) -> KdfSettings:
        return self._settings

    def encrypt(self, plaintext: bytes, passphrase: Passphrase) -> EncryptedBlob:
        secret = _to_buffer(passphrase)
        keys: Optional[bytearray] = None
        enc_key: Optional[bytearray] = None
        mac_key: Optional[bytearray] = None
        try:
            params = StrongKdf(
                salt=_b64e(os.urandom(SALT_SIZE)),
                memory=self._settings.memory,
                iterations=self._settings.iterations,
                parallelism=self._settings.parallelism,
            )
            iv = os.urandom(IV_SIZE)
            keys = _derive(params, secret)
            enc_key = bytearray(keys[:KEY_LENGTH])
            mac_key = bytearray(keys[KEY_LENGTH:])
            cipher_text = _cbc_encrypt(enc_key, iv, plaintext)
            tagger = hmac.HMAC(mac_key, hashes.SHA256())
            tagger.update(_mac_input(params, iv, cipher_text))
            return EncryptedBlob(
                cipher_text=_b64e(cipher_text),
                initialization_vector=_b64e(iv),
                key_derivation_params=params,
                mac=_b64e(tagger.finalize()),
            )
        finally:
            _wipe(secret)
            _wipe(keys)
            _wipe(enc_key)
            _wipe(mac_key)

    def decrypt(self, blob: EncryptedBlob, passphrase: Passphrase) -> bytes:
        secret = _to_buffer(passphrase)
        keys: Optional[bytearray] = None
        enc_key: Optional[bytearray] = None
        mac_key: Optional[bytearray] = None
        params = blob.key_derivation_params
        try:
            iv = _b64d(blob.initialization_vector)
            cipher_text = _b64d(blob.cipher_text)
            if len(iv) != IV_SIZE or not cipher_text or len(cipher_text) % (BLOCK_BITS // 8):
                raise ValueError("malformed blob")

            keys = _derive(params, secret)
            if isinstance(params, StrongKdf):
                if not blob.mac:
                    raise ValueError("missing tag")
                enc_key = bytearray(keys[:KEY_LENGTH])
                mac_key = bytearray(keys[KEY_LENGTH:])
                verifier = hmac.HMAC(mac_key, hashes.SHA256())
                verifier.update(_mac_input(params, iv, cipher_text))
                verifier.verify(_b64d(blob.mac))
            else:
                enc_key = bytearray(keys)

            plaintext = _cbc_decrypt(enc_key, iv, cipher_text)
            if isinstance(params, LegacyKdf):
                # No tag on legacy blobs; the plaintext has to be a JSON object.
                if not isinstance(json.loads(plaintext.decode("utf-8")), dict):
                    raise ValueError("legacy plaintext is not an object")
            return plaintext
        except (InvalidSignature, ValueError, TypeError, binascii.Error, UnicodeDecodeError) as exc:
            logger.debug("decrypt failed (scheme=%s): %s", params.scheme, type(exc).__name__)
            raise WrongPassphraseOrCorrupt() from None
        finally:
            _wipe(secret)
            _wipe(keys)
            _wipe(enc_key)
            _wipe(mac_key)

    def needs_upgrade(self, blob: EncryptedBlob) -> bool:
        """True when the blob should be re-encrypted with the current settings."""
        params = blob.key_derivation_params
        if not isinstance(params, StrongKdf):
            return True
        return (
            params.memory < self._settings.memory
            or params.iterations < self._settings.iterations
            or not blob.mac
        )


def legacy_encrypt(plaintext: bytes, passphrase: Passphrase, *, salt: bytes, iv: bytes, iterations: int = 50000) -> EncryptedBlob:
    """Produce a legacy-scheme blob; used to build compatibility fixtures and re-exports."""
    secret = _to_buffer(passphrase)
    key: Optional[bytearray] = None
    params = LegacyKdf(salt=_b64e(salt), iterations=iterations)
    try:
        key = _derive(params, secret)
        return EncryptedBlob(
            cipher_text=_b64e(_cbc_encrypt(key, iv, plaintext)),
            initialization_vector=_b64e(iv),
            key_derivation_params=params,
        )
    finally:
        _wipe(secret)
        _wipe(key)


__all__ = ["SecretCodec", "KdfSettings", "legacy_encrypt"]
