"""
AES-256-GCM encryption for OAuth tokens at rest.

Stored format (base64): salt(64) | iv(16) | tag(16) | ciphertext.
The key is derived per token with PBKDF2-HMAC-SHA512 (100k iterations)
from OAUTH_ENCRYPTION_KEY and the random salt.
"""
from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KDF_ITERATIONS = 100_000
TAG_POSITION = SALT_LENGTH + IV_LENGTH
ENCRYPTED_POSITION = TAG_POSITION + TAG_LENGTH


class TokenDecryptionError(Exception):
    """Stored token could not be decrypted (wrong key, truncated or tampered payload)."""


class TokenCodec:
    def __init__(self, secret: str, *, iterations: int = KDF_ITERATIONS) -> None:
        if not secret:
            raise ValueError("OAUTH_ENCRYPTION_KEY is not set")
        self._secret = secret.encode("utf-8")
        self._iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=32,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret)

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt)
        # AESGCM appends the tag to the ciphertext; the stored layout keeps it in front.
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, payload: str) -> str:
        try:
            data = base64.b64decode(payload.encode("ascii"), validate=True)
        except (ValueError, UnicodeEncodeError) as exc:
            raise TokenDecryptionError("payload is not valid base64") from exc
        if len(data) < ENCRYPTED_POSITION:
            raise TokenDecryptionError("payload is truncated")

        salt = data[:SALT_LENGTH]
        iv = data[SALT_LENGTH:TAG_POSITION]
        tag = data[TAG_POSITION:ENCRYPTED_POSITION]
        ciphertext = data[ENCRYPTED_POSITION:]

        key = self._derive_key(salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise TokenDecryptionError("authentication tag mismatch") from exc
        return plaintext.decode("utf-8")
