"""Encryption of bearer credentials at rest."""

import base64
import os
import secrets
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class DecryptionError(ValueError):
    """Raised when a stored value cannot be decrypted with the current key."""


class CredentialCipher:
    """AES-256-GCM cipher for stored access tokens.

    Ciphertexts are ``nonce + ciphertext``. An optional context string is bound
    as associated data, so a token copied onto another user's row fails to
    decrypt instead of silently authenticating that user.
    """

    def __init__(self, key: bytes):
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def encrypt(self, plaintext: Union[str, bytes], context: Optional[str] = None) -> bytes:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, _associated_data(context))

    def decrypt(self, encrypted: bytes, context: Optional[str] = None) -> str:
        if len(encrypted) <= NONCE_SIZE:
            raise DecryptionError("Invalid encrypted data: too short")
        nonce, ciphertext = encrypted[:NONCE_SIZE], encrypted[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, _associated_data(context))
        except InvalidTag as e:
            raise DecryptionError("Stored value failed authentication") from e
        return plaintext.decode("utf-8")


def _associated_data(context: Optional[str]) -> Optional[bytes]:
    return context.encode("utf-8") if context else None


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


def key_to_base64(key: bytes) -> str:
    return base64.b64encode(key).decode("ascii")


def key_from_base64(key_base64: str) -> bytes:
    return base64.b64decode(key_base64)
