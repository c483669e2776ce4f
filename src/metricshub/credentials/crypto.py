"""Secret encryption at rest.

AES-256-GCM with a per-value scrypt-derived key. Stored format (hex):

    iv:tag:salt:ciphertext
"""

from __future__ import annotations

import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_IV_BYTES = 16
_SALT_BYTES = 32
_TAG_BYTES = 16


class SecretDecryptionError(ValueError):
    """Stored value is malformed or was encrypted with a different key."""


class SecretCipher:
    """Encrypts and decrypts secret values with a master passphrase."""

    def __init__(self, master_key: str) -> None:
        if not master_key:
            raise ValueError("An encryption key is required (METRICSHUB_ENCRYPTION_KEY)")
        self._master_key = master_key.encode("utf-8")

    def _derive(self, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
        return kdf.derive(self._master_key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        salt = os.urandom(_SALT_BYTES)
        sealed = AESGCM(self._derive(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return ":".join(part.hex() for part in (iv, tag, salt, ciphertext))

    def decrypt(self, stored: str) -> str:
        try:
            iv, tag, salt, ciphertext = (bytes.fromhex(p) for p in stored.split(":"))
        except ValueError as e:
            raise SecretDecryptionError("Malformed encrypted value") from e
        try:
            plain = AESGCM(self._derive(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise SecretDecryptionError("Secret could not be decrypted") from e
        return plain.decode("utf-8")

    def encrypt_json(self, payload: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":")))

    def decrypt_json(self, stored: str) -> dict[str, Any]:
        value = self.decrypt(stored)
        try:
            payload = json.loads(value)
        except ValueError:
            # Plain API keys are stored as bare strings
            return {"access_token": value}
        if not isinstance(payload, dict):
            return {"access_token": str(payload)}
        return payload
