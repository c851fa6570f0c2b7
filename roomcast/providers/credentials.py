"""Encrypted provider credentials.

Blob layout (compatible with existing rows): iv(16) || tag(16) || ciphertext,
AES-256-GCM with a key derived by scrypt from ENCRYPTION_SECRET.
"""

import json
import os
from functools import lru_cache
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from roomcast.config import get_settings

IV_LENGTH = 16
TAG_LENGTH = 16
_KEY_SALT = b"roomcast-credential-salt"


class CredentialsError(Exception):
    """Credentials cannot be encrypted or decrypted."""


@lru_cache(maxsize=4)
def _derive_key(secret: str) -> bytes:
    # scrypt defaults: N=16384, r=8, p=1
    kdf = Scrypt(salt=_KEY_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def _get_key(secret: Optional[str]) -> bytes:
    secret = secret if secret is not None else get_settings().ENCRYPTION_SECRET
    if not secret:
        raise CredentialsError("ENCRYPTION_SECRET environment variable is required")
    return _derive_key(secret)


def encrypt(plaintext: str, secret: Optional[str] = None) -> bytes:
    key = _get_key(secret)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return iv + tag + ciphertext


def decrypt(data: bytes, secret: Optional[str] = None) -> str:
    key = _get_key(secret)
    if len(data) < IV_LENGTH + TAG_LENGTH:
        raise CredentialsError("Encrypted credentials are truncated")
    iv = data[:IV_LENGTH]
    tag = data[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
    ciphertext = data[IV_LENGTH + TAG_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise CredentialsError("Credentials could not be decrypted (wrong secret or corrupted data)") from e
    return plaintext.decode("utf-8")


def encrypt_credentials(credentials: dict[str, Any], secret: Optional[str] = None) -> bytes:
    return encrypt(json.dumps(credentials), secret=secret)


def decrypt_credentials(data: Optional[bytes], secret: Optional[str] = None) -> dict[str, Any]:
    """Decrypt a calendar's credential blob. Missing credentials decode to {}."""
    if not data:
        return {}
    return json.loads(decrypt(bytes(data), secret=secret))
