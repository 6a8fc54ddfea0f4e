"""
Application-layer encryption for PHI fields.

- Fernet (AES-CBC + HMAC) for data at rest
- Key comes from PHI_ENCRYPTION_KEY, never hardcoded
- JSON helpers for structured payloads such as lab result parameters
"""

import json
from typing import Any

from cryptography.fernet import Fernet

from app.config import settings


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI fields."""

    def __init__(self, key: str | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: ciphertext will not survive a process restart.
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext back to plaintext."""
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def encrypt_json(self, payload: Any) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":")))

    def decrypt_json(self, ciphertext: str, default: Any = None) -> Any:
        plaintext = self.decrypt(ciphertext)
        if not plaintext:
            return default
        return json.loads(plaintext)


# Shared instance: every PHI column must be readable by every module.
phi_cipher = EncryptionService()
