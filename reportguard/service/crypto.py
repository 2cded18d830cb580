from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from reportguard.logging import get_logger
from reportguard.service.errors import ServerError

logger = get_logger(__name__)


class SecretCipher:
    """Symmetric encryption for secrets that must be read back (TOTP seeds, backup codes)."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            # key rotated or row tampered with; callers must deny, never skip the check
            logger.error("secret_decrypt_failed")
            raise ServerError("stored secret could not be decrypted") from exc
