from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from typing import Optional, Tuple

from argon2 import Type
from argon2.exceptions import HashingError
from argon2.low_level import hash_secret_raw

from reportguard.config import Settings
from reportguard.logging import get_logger
from reportguard.storage.models import Credential

logger = get_logger(__name__)

ARGON2ID_ALGO = "argon2id-peppered"
# Unsalted SHA-256 from the previous platform. Technical debt: accepted only for
# accounts that have not logged in since the migration and never written.
LEGACY_SHA256_ALGO = "sha256-legacy"

_MIN_SALT_BYTES = 16


class PasswordHasher:
    """Salted, peppered Argon2id password hashing.

    The digest is computed over ``password || pepper`` with a per-credential
    random salt; hash and salt are stored base64 encoded. Verification
    recomputes the digest and compares it in constant time.
    """

    algorithm = ARGON2ID_ALGO

    def __init__(
        self,
        pepper: str,
        *,
        time_cost: int = 4,
        memory_cost_kib: int = 64 * 1024,
        parallelism: int = 4,
        hash_length: int = 32,
        salt_length: int = 16,
    ) -> None:
        if not pepper:
            raise ValueError("pepper is required")
        if salt_length < _MIN_SALT_BYTES:
            raise ValueError("salt must be at least 16 bytes")
        self._pepper = pepper.encode("utf-8")
        self.time_cost = time_cost
        self.memory_cost_kib = memory_cost_kib
        self.parallelism = parallelism
        self.hash_length = hash_length
        self.salt_length = salt_length
        # used to burn the same CPU time when the account does not exist
        self._dummy_salt = base64.b64encode(secrets.token_bytes(salt_length)).decode()
        self._dummy_hash = self._derive(b"dummy-password", base64.b64decode(self._dummy_salt))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            settings.password_pepper,
            time_cost=settings.argon2_time_cost,
            memory_cost_kib=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
            hash_length=settings.argon2_hash_length,
            salt_length=settings.argon2_salt_length,
        )

    def _derive(self, password: bytes, salt: bytes) -> str:
        digest = hash_secret_raw(
            password + self._pepper,
            salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost_kib,
            parallelism=self.parallelism,
            hash_len=self.hash_length,
            type=Type.ID,
        )
        return base64.b64encode(digest).decode()

    def hash(self, password: str) -> Tuple[str, str]:
        """Return ``(hash, salt)`` for a new credential, both base64 encoded."""
        salt = secrets.token_bytes(self.salt_length)
        return self._derive(password.encode("utf-8"), salt), base64.b64encode(salt).decode()

    def hash_with_salt(self, password: str, salt: str) -> str:
        return self._derive(password.encode("utf-8"), base64.b64decode(salt, validate=True))

    def verify(self, password: str, password_hash: str, salt: str) -> bool:
        try:
            raw_salt = base64.b64decode(salt, validate=True)
            if len(raw_salt) < _MIN_SALT_BYTES:
                raise ValueError("salt too short")
            candidate = self._derive(password.encode("utf-8"), raw_salt)
        except (binascii.Error, ValueError, TypeError, HashingError) as exc:
            # indistinguishable from a wrong password to the caller
            logger.warning("password_salt_invalid", error_type=type(exc).__name__)
            return False
        return hmac.compare_digest(candidate.encode(), password_hash.encode())

    def burn(self, password: str) -> None:
        """Spend one verification worth of work without a stored credential."""
        self.verify(password, self._dummy_hash, self._dummy_salt)

    @staticmethod
    def verify_legacy(password: str, legacy_hash: str) -> bool:
        digest = base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest()).decode()
        return hmac.compare_digest(digest.encode(), legacy_hash.encode())

    def verify_credential(
        self, record: Optional[Credential], password: str, *, allow_legacy: bool = False
    ) -> bool:
        """Check ``password`` against a stored credential of any supported algorithm."""
        if record is None:
            self.burn(password)
            return False
        if record.password_algo == ARGON2ID_ALGO:
            if not record.salt:
                logger.warning("password_salt_missing", user_id=record.user_id)
                return False
            return self.verify(password, record.password_hash, record.salt)
        if record.password_algo == LEGACY_SHA256_ALGO:
            if not allow_legacy:
                logger.warning("legacy_password_rejected", user_id=record.user_id)
                self.burn(password)
                return False
            return self.verify_legacy(password, record.password_hash)
        logger.warning("password_algo_unknown", user_id=record.user_id, algo=record.password_algo)
        return False
