"""Authenticated encryption for credentials and session material at rest.

Blob layout (base64 of): salt(32) || iv(16) || tag(16) || ciphertext.
The AES-256-GCM key is derived per call from the master key and a fresh
salt with scrypt, so the same plaintext never encrypts to the same blob.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

log = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH

# scrypt cost parameters (N, r, p)
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


class EncryptionError(Exception):
    """Base class for all encryption and decryption failures."""
    pass


class MissingMasterKeyError(EncryptionError):
    pass


class InvalidFormatError(EncryptionError):
    pass


class DecryptionFailedError(EncryptionError):
    """Authentication failed: wrong master key or tampered blob."""
    pass


def _derive_key(master_key: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(master_key.encode("utf-8"))


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value, validate=True)


def encrypt_value(value: str, master_key: str) -> str:
    if not master_key:
        raise MissingMasterKeyError("Master key is required for encryption")

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_derive_key(master_key, salt)).encrypt(iv, value.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt_value(encrypted: str, master_key: str) -> str:
    if not master_key:
        raise MissingMasterKeyError("Master key is required for decryption")

    try:
        combined = _b64decode(encrypted)
    except (binascii.Error, ValueError) as e:
        raise InvalidFormatError("Invalid encrypted value format") from e
    if len(combined) < HEADER_LENGTH:
        raise InvalidFormatError("Invalid encrypted value format")

    salt = combined[:SALT_LENGTH]
    iv = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    tag = combined[SALT_LENGTH + IV_LENGTH:HEADER_LENGTH]
    ciphertext = combined[HEADER_LENGTH:]

    try:
        plaintext = AESGCM(_derive_key(master_key, salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionFailedError("Decryption failed: wrong key or corrupted data") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailedError("Decryption failed: plaintext is not UTF-8") from e


def is_encrypted(value: str) -> bool:
    """Heuristic: strict base64 and long enough to hold the fixed header."""
    if not value:
        return False
    try:
        return len(_b64decode(value)) >= HEADER_LENGTH
    except (binascii.Error, ValueError):
        return False


def decrypt_with_fallback(value: str, master_key: str) -> str:
    """Decrypt a value that may predate encryption; plain values pass through."""
    if not is_encrypted(value):
        return value
    try:
        return decrypt_value(value, master_key)
    except EncryptionError as e:
        log.warning("Failed to decrypt value, assuming it is unencrypted: %s", e)
        return value


def encrypt_environment_variables(variables: dict[str, str], master_key: str) -> dict[str, str]:
    return {key: encrypt_value(value, master_key) for key, value in variables.items()}


def decrypt_environment_variables(variables: dict[str, str], master_key: str) -> dict[str, str]:
    """Decrypt a whole batch; any failure fails the batch without naming the key."""
    decrypted = {}
    for key, value in variables.items():
        try:
            decrypted[key] = decrypt_value(value, master_key)
        except EncryptionError as e:
            log.error("Failed to decrypt environment variable: %s", type(e).__name__)
            raise EncryptionError("Failed to decrypt environment variables") from None
    return decrypted


def encrypt_file(path: str | Path, master_key: str) -> str:
    """Encrypt a text file (e.g. a session transcript) into one blob."""
    return encrypt_value(Path(path).read_text(encoding="utf-8"), master_key)


def decrypt_file_contents(blob: str, master_key: str, dest: str | Path | None = None) -> str:
    """Decrypt a file blob, optionally writing the plaintext to `dest`."""
    text = decrypt_value(blob, master_key)
    if dest is not None:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(text, encoding="utf-8")
    return text
