from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Protocol
from urllib.parse import quote, urlencode

from reportguard.config import Settings
from reportguard.logging import get_logger
from reportguard.service.audit import SecurityAuditor, Severity
from reportguard.service.clock import Clock, SystemClock
from reportguard.service.crypto import SecretCipher
from reportguard.service.errors import (
    InvalidCredentialsError,
    MfaInvalidCodeError,
    MfaLockedError,
    MfaStateError,
)
from reportguard.service.passwords import PasswordHasher
from reportguard.storage.models import Credential, MfaEnrollment

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


class MfaStore(Protocol):
    def get_mfa_enrollment(self, user_id: str) -> Optional[MfaEnrollment]: ...

    def save_pending_mfa(self, enrollment: MfaEnrollment) -> bool: ...

    def enable_mfa(self, user_id: str, enabled_at: datetime) -> bool: ...

    def record_mfa_failure(
        self, user_id: str, *, now: datetime, threshold: int, lockout: timedelta
    ) -> Optional[MfaEnrollment]: ...

    def reset_mfa_failures(self, user_id: str) -> None: ...

    def consume_backup_code(self, user_id: str, encrypted_code: str) -> Optional[int]: ...

    def replace_backup_codes(self, user_id: str, encrypted_codes: List[str]) -> bool: ...

    def delete_mfa_enrollment(self, user_id: str) -> bool: ...

    def get_password_record(self, user_id: str) -> Optional[Credential]: ...


class MfaState(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"
    LOCKED = "locked"


@dataclass
class MfaSetup:
    """Plaintext enrollment material, returned exactly once."""

    secret: str
    provisioning_uri: str
    backup_codes: List[str]


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL_SECONDS, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: datetime,
    window: int = 1,
    interval: int = TOTP_INTERVAL_SECONDS,
    digits: int = TOTP_DIGITS,
) -> bool:
    candidate = (code or "").replace(" ", "").strip()
    if len(candidate) != digits or not candidate.isdigit():
        return False
    timestamp = at.timestamp()
    matched = False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval, digits=digits)
        # keep scanning after a hit so timing does not reveal the matching step
        if generated and hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").strip().lower() if ch not in "- ")


class TotpMfaManager:
    """TOTP enrollment, verification, backup codes and lockout.

    States run NotEnrolled -> PendingSetup -> Enabled, with Locked as a
    sub-state of Enabled while ``locked_until`` is in the future. Only
    verification during authentication counts toward the lockout.
    """

    def __init__(
        self,
        store: MfaStore,
        settings: Settings,
        *,
        cipher: SecretCipher,
        hasher: PasswordHasher,
        auditor: Optional[SecurityAuditor] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cipher = cipher
        self.hasher = hasher
        self.auditor = auditor or SecurityAuditor()
        self.clock = clock or SystemClock()
        self.logger = logger

    # state
    def status(self, user_id: str) -> MfaState:
        enrollment = self.store.get_mfa_enrollment(user_id)
        if enrollment is None:
            return MfaState.NOT_ENROLLED
        if not enrollment.is_enabled:
            return MfaState.PENDING_SETUP
        if enrollment.is_locked(self.clock.now()):
            return MfaState.LOCKED
        return MfaState.ENABLED

    def is_enabled(self, user_id: str) -> bool:
        return self.status(user_id) in (MfaState.ENABLED, MfaState.LOCKED)

    def remaining_backup_codes(self, user_id: str) -> int:
        enrollment = self.store.get_mfa_enrollment(user_id)
        return len(enrollment.encrypted_backup_codes) if enrollment else 0

    def _require_enabled(self, user_id: str) -> MfaEnrollment:
        enrollment = self.store.get_mfa_enrollment(user_id)
        if enrollment is None or not enrollment.is_enabled:
            raise MfaStateError("multi-factor authentication is not enabled")
        return enrollment

    def _new_backup_codes(self) -> List[str]:
        return [
            secrets.token_hex(BACKUP_CODE_BYTES)
            for _ in range(self.settings.mfa_backup_code_count)
        ]

    def _provisioning_uri(self, secret: str, account_name: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account_name}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL_SECONDS,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    # setup
    async def generate_setup(
        self, user_id: str, account_name: str, *, ip_address: Optional[str] = None
    ) -> MfaSetup:
        """Create a pending enrollment and return its plaintext material once.

        A pending enrollment that was never confirmed is replaced; an enabled
        one must be disabled first.
        """
        existing = self.store.get_mfa_enrollment(user_id)
        if existing is not None and existing.is_enabled:
            raise MfaStateError("multi-factor authentication is already enabled")

        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")
        backup_codes = self._new_backup_codes()
        enrollment = MfaEnrollment(
            user_id=user_id,
            encrypted_secret=self.cipher.encrypt(secret),
            encrypted_backup_codes=[self.cipher.encrypt(code) for code in backup_codes],
            created_at=self.clock.now(),
        )
        if not self.store.save_pending_mfa(enrollment):
            raise MfaStateError("multi-factor authentication is already enabled")
        await self.auditor.record(
            "MFA_SETUP_GENERATED", "MFA", user_id=user_id, ip_address=ip_address
        )
        return MfaSetup(
            secret=secret,
            provisioning_uri=self._provisioning_uri(secret, account_name),
            backup_codes=backup_codes,
        )

    async def enable(self, user_id: str, code: str, *, ip_address: Optional[str] = None) -> bool:
        enrollment = self.store.get_mfa_enrollment(user_id)
        if enrollment is None:
            raise MfaStateError("multi-factor authentication setup has not been started")
        if enrollment.is_enabled:
            raise MfaStateError("multi-factor authentication is already enabled")

        now = self.clock.now()
        secret = self.cipher.decrypt(enrollment.encrypted_secret)
        if not verify_totp(secret, code, at=now, window=self.settings.mfa_totp_window):
            await self.auditor.record(
                "MFA_ENABLE_FAILED",
                "MFA",
                user_id=user_id,
                success=False,
                failure_reason="Invalid verification code",
                ip_address=ip_address,
            )
            return False
        if not self.store.enable_mfa(user_id, now):
            raise MfaStateError("multi-factor authentication is already enabled")
        await self.auditor.record("MFA_ENABLED", "MFA", user_id=user_id, ip_address=ip_address)
        self.logger.info("mfa_enabled", user_id=user_id)
        return True

    # verification
    async def _check_not_locked(
        self, enrollment: MfaEnrollment, now: datetime, ip_address: Optional[str]
    ) -> None:
        if enrollment.is_locked(now):
            await self.auditor.record(
                "MFA_VERIFY_BLOCKED",
                "MFA",
                user_id=enrollment.user_id,
                success=False,
                failure_reason="Account temporarily locked",
                details={"locked_until": enrollment.locked_until.isoformat()},
                ip_address=ip_address,
                severity=Severity.MEDIUM,
            )
            raise MfaLockedError(
                "Too many failed verification attempts. Try again later.",
                locked_until=enrollment.locked_until,
            )

    async def _record_failure(
        self, user_id: str, now: datetime, action: str, ip_address: Optional[str]
    ) -> None:
        updated = self.store.record_mfa_failure(
            user_id,
            now=now,
            threshold=self.settings.mfa_lockout_threshold,
            lockout=timedelta(minutes=self.settings.mfa_lockout_minutes),
        )
        attempts = updated.failed_attempts if updated else None
        locked = updated is not None and updated.is_locked(now)
        await self.auditor.record(
            action,
            "MFA",
            user_id=user_id,
            success=False,
            failure_reason="Invalid code",
            details={"failed_attempts": attempts, "locked": locked},
            ip_address=ip_address,
            severity=Severity.HIGH if locked else Severity.LOW,
        )
        if locked:
            self.logger.warning(
                "mfa_lockout_triggered",
                user_id=user_id,
                attempts=attempts,
                locked_until=updated.locked_until.isoformat(),
            )

    async def verify_totp(
        self, user_id: str, code: str, *, ip_address: Optional[str] = None
    ) -> bool:
        """Check an authenticator code. Raises ``MfaLockedError`` while locked."""
        enrollment = self._require_enabled(user_id)
        now = self.clock.now()
        await self._check_not_locked(enrollment, now, ip_address)

        secret = self.cipher.decrypt(enrollment.encrypted_secret)
        if verify_totp(secret, code, at=now, window=self.settings.mfa_totp_window):
            self.store.reset_mfa_failures(user_id)
            await self.auditor.record(
                "MFA_VERIFY_SUCCESS", "MFA", user_id=user_id, ip_address=ip_address
            )
            return True
        await self._record_failure(user_id, now, "MFA_VERIFY_FAILED", ip_address)
        return False

    async def verify_backup_code(
        self, user_id: str, code: str, *, ip_address: Optional[str] = None
    ) -> bool:
        """Check and consume a single-use backup code. Raises ``MfaLockedError`` while locked."""
        enrollment = self._require_enabled(user_id)
        now = self.clock.now()
        await self._check_not_locked(enrollment, now, ip_address)

        candidate = normalize_backup_code(code)
        matched_ciphertext: Optional[str] = None
        if candidate:
            for ciphertext in enrollment.encrypted_backup_codes:
                stored = self.cipher.decrypt(ciphertext)
                if hmac.compare_digest(stored.encode(), candidate.encode()):
                    matched_ciphertext = ciphertext

        remaining = None
        if matched_ciphertext is not None:
            # None here means a concurrent request consumed the same code first
            remaining = self.store.consume_backup_code(user_id, matched_ciphertext)

        if remaining is not None:
            self.store.reset_mfa_failures(user_id)
            await self.auditor.record(
                "MFA_BACKUP_CODE_USED",
                "MFA",
                user_id=user_id,
                details={"remaining_codes": remaining},
                ip_address=ip_address,
            )
            if remaining <= 2:
                self.logger.info("mfa_backup_codes_low", user_id=user_id, remaining=remaining)
            return True
        await self._record_failure(user_id, now, "MFA_BACKUP_CODE_FAILED", ip_address)
        return False

    async def verify_any(
        self, user_id: str, code: str, *, ip_address: Optional[str] = None
    ) -> bool:
        """Accept either an authenticator code or a backup code."""
        candidate = (code or "").replace(" ", "").strip()
        if len(candidate) == TOTP_DIGITS and candidate.isdigit():
            return await self.verify_totp(user_id, candidate, ip_address=ip_address)
        return await self.verify_backup_code(user_id, code, ip_address=ip_address)

    # maintenance
    async def regenerate_backup_codes(
        self, user_id: str, *, ip_address: Optional[str] = None
    ) -> List[str]:
        self._require_enabled(user_id)
        codes = self._new_backup_codes()
        if not self.store.replace_backup_codes(user_id, [self.cipher.encrypt(c) for c in codes]):
            raise MfaStateError("multi-factor authentication is not enabled")
        await self.auditor.record(
            "MFA_BACKUP_CODES_REGENERATED",
            "MFA",
            user_id=user_id,
            details={"count": len(codes)},
            ip_address=ip_address,
        )
        return codes

    async def disable(
        self,
        user_id: str,
        current_password: str,
        mfa_code: str,
        *,
        ip_address: Optional[str] = None,
    ) -> None:
        """Wipe the enrollment after re-checking both factors."""
        self._require_enabled(user_id)
        record = self.store.get_password_record(user_id)
        if not self.hasher.verify_credential(
            record, current_password, allow_legacy=self.settings.allow_legacy_password_hashes
        ):
            await self.auditor.record(
                "MFA_DISABLE_FAILED",
                "MFA",
                user_id=user_id,
                success=False,
                failure_reason="Re-authentication failed",
                ip_address=ip_address,
                severity=Severity.MEDIUM,
            )
            raise InvalidCredentialsError("Verification failed")
        if not await self.verify_any(user_id, mfa_code, ip_address=ip_address):
            await self.auditor.record(
                "MFA_DISABLE_FAILED",
                "MFA",
                user_id=user_id,
                success=False,
                failure_reason="Re-authentication failed",
                ip_address=ip_address,
                severity=Severity.MEDIUM,
            )
            raise MfaInvalidCodeError("Verification failed")
        self.store.delete_mfa_enrollment(user_id)
        await self.auditor.record(
            "MFA_DISABLED", "MFA", user_id=user_id, ip_address=ip_address, severity=Severity.MEDIUM
        )
        self.logger.info("mfa_disabled", user_id=user_id)
