"""AES-256-GCM encryption for credentials at rest.

The 256-bit key is derived from ``ENCRYPTION_KEY`` with scrypt and a fixed
salt, so every stored secret shares one derived key; the random 96-bit IV is
the only per-secret randomness.  The key is re-derived on every call.

All three stored values (ciphertext, IV, auth tag) are base64 text so they
fit plain ``TEXT`` columns.
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.core.exceptions import EncryptionKeyMissingError, SecretDecryptionError

KDF_SALT = b"fixrelay-salt-v1"
KEY_LENGTH = 32
IV_LENGTH = 12
AUTH_TAG_LENGTH = 16

# scrypt cost parameters (N, r, p).
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1


@dataclass(frozen=True)
class EncryptedSecret:
    """Ciphertext plus the IV and GCM tag needed to open it."""

    ciphertext: str
    iv: str
    auth_tag: str


def _derive_key(master_key: str) -> bytes:
    if not master_key:
        raise EncryptionKeyMissingError("ENCRYPTION_KEY is not configured")
    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt_secret(plaintext: str, master_key: str) -> EncryptedSecret:
    """Encrypt ``plaintext`` under a key derived from ``master_key``.

    Raises:
        EncryptionKeyMissingError: If ``master_key`` is empty.
    """
    key = _derive_key(master_key)
    iv = os.urandom(IV_LENGTH)

    # AESGCM appends the 16-byte tag to the ciphertext.
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

    return EncryptedSecret(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
        auth_tag=base64.b64encode(auth_tag).decode("ascii"),
    )


def decrypt_secret(ciphertext: str, iv: str, auth_tag: str, master_key: str) -> str:
    """Decrypt a value produced by :func:`encrypt_secret`.

    Raises:
        EncryptionKeyMissingError: If ``master_key`` is empty.
        SecretDecryptionError: If the tag does not verify or the stored
            values are not valid base64.
    """
    key = _derive_key(master_key)
    try:
        raw_ciphertext = base64.b64decode(ciphertext, validate=True)
        raw_iv = base64.b64decode(iv, validate=True)
        raw_tag = base64.b64decode(auth_tag, validate=True)
    except ValueError as exc:
        raise SecretDecryptionError("Stored secret is not valid base64") from exc

    if len(raw_tag) != AUTH_TAG_LENGTH:
        raise SecretDecryptionError("Authentication tag has the wrong length")

    try:
        plaintext = AESGCM(key).decrypt(raw_iv, raw_ciphertext + raw_tag, None)
    except (InvalidTag, ValueError) as exc:
        raise SecretDecryptionError("Secret failed authentication: tampered or wrong key") from exc

    return plaintext.decode("utf-8")


def display_prefix(secret: str) -> str:
    """Return a short, non-reversible display prefix such as ``sk-ant-api03...``.

    At most 12 characters and never more than a third of the secret are shown.
    """
    visible = min(12, len(secret) // 3)
    return f"{secret[:visible]}..."
