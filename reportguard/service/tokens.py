from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol, Tuple

from reportguard.config import Settings
from reportguard.logging import get_logger
from reportguard.service.audit import SecurityAuditor, Severity
from reportguard.service.clock import Clock, SystemClock
from reportguard.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    ServerError,
    TokenExpiredError,
    TokenReuseDetectedError,
    TokenRevokedError,
)
from reportguard.storage.errors import ConstraintViolation
from reportguard.storage.models import RefreshToken, User
from reportguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64
REASON_ROTATED = "Token refresh"
REASON_REUSE = "Token reuse detected"
REASON_DEFAULT = "Revoked without reason specified"
REASON_USER_INACTIVE = "User not found or inactive"
# forensic walks stop here even if the data were corrupted into a loop
_MAX_CHAIN_LENGTH = 10_000


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def add_refresh_token(self, record: RefreshToken) -> None: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_token: str,
        new_record: RefreshToken,
        *,
        revoked_at: datetime,
        revoked_by_ip: Optional[str],
        reason: str,
    ) -> bool: ...

    def revoke_refresh_token(
        self,
        token: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: Optional[str],
        reason: str,
    ) -> bool: ...

    def list_refresh_tokens(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[RefreshToken]: ...

    def purge_refresh_tokens(self, expired_before: datetime) -> int: ...


@dataclass
class AccessClaims:
    user_id: str
    username: str
    role: str
    department_id: Optional[str]
    jti: str
    issued_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"


class TokenService:
    """Signed access tokens and rotating opaque refresh tokens.

    Access tokens are HS256 JWTs validated with zero clock skew. Refresh tokens
    are persisted; every refresh revokes the presented token, links it to its
    successor through ``replaced_by_token`` and issues a new one, so each
    rotation lineage has exactly one active token.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        auditor: Optional[SecurityAuditor] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.auditor = auditor or SecurityAuditor()
        self.clock = clock or SystemClock()
        self.logger = logger

    # JWT encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Invalid access token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid access token")
        # reject alg confusion ("none", RS256 with the HMAC key, ...)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None
            )
            raise InvalidTokenError("Invalid access token")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("Invalid access token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid access token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid access token")
        return payload

    # access tokens
    def issue_access_token(
        self, user: User, *, session_id: Optional[str] = None
    ) -> Tuple[str, AccessClaims]:
        # JWT times are whole seconds
        now = self.clock.now().replace(microsecond=0)
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        claims = AccessClaims(
            user_id=user.id,
            username=user.username,
            role=user.role,
            department_id=user.department_id,
            jti=str(uuid.uuid4()),
            issued_at=now,
            expires_at=expires_at,
            session_id=session_id,
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "role": user.role,
            "department_id": user.department_id,
            "sid": session_id,
            "token_type": "access",
            "jti": claims.jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), claims

    def decode_access_token(self, token: str) -> AccessClaims:
        """Verify signature, issuer, audience and expiry; no clock skew allowance."""
        payload = self._decode_jwt(token)
        if payload.get("token_type") != "access":
            raise InvalidTokenError("Invalid access token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid access token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Invalid access token")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid access token")
        if exp_ts <= self.clock.now().timestamp():
            raise TokenExpiredError("Access token expired")
        if not payload.get("sub") or not payload.get("jti"):
            raise InvalidTokenError("Invalid access token")
        return AccessClaims(
            user_id=payload["sub"],
            username=payload.get("username", ""),
            role=payload.get("role", ""),
            department_id=payload.get("department_id"),
            jti=payload["jti"],
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            session_id=payload.get("sid"),
        )

    async def validate_access_token(self, token: str) -> AccessClaims:
        claims = self.decode_access_token(token)
        if self.cache:
            try:
                denylisted = await self.cache.is_access_token_denylisted(claims.jti)
            except Exception as exc:
                # cannot prove the token is still valid, so deny
                logger.warning("access_denylist_check_failed", jti=claims.jti, error=str(exc))
                raise ServerError("Token status unavailable") from exc
            if denylisted:
                raise TokenRevokedError("Access token revoked")
        return claims

    async def revoke_access_token(self, claims: AccessClaims) -> bool:
        if not self.cache:
            logger.info("access_denylist_unavailable", jti=claims.jti)
            return False
        ttl = int((claims.expires_at - self.clock.now()).total_seconds())
        try:
            await self.cache.denylist_access_token(claims.jti, ttl)
        except Exception as exc:
            logger.warning("access_denylist_write_failed", jti=claims.jti, error=str(exc))
            return False
        return True

    # refresh tokens
    def _new_refresh_record(
        self, user_id: str, *, ip_address: Optional[str], session_id: Optional[str]
    ) -> RefreshToken:
        now = self.clock.now()
        return RefreshToken(
            token=secrets.token_urlsafe(REFRESH_TOKEN_BYTES),
            user_id=user_id,
            issued_at=now,
            expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
            created_by_ip=ip_address,
            session_id=session_id,
        )

    def _pair(self, user: User, record: RefreshToken) -> TokenPair:
        access_token, claims = self.issue_access_token(user, session_id=record.session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=record.token,
            access_expires_at=claims.expires_at,
            refresh_expires_at=record.expires_at,
        )

    def issue_pair(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        record = self._new_refresh_record(user.id, ip_address=ip_address, session_id=session_id)
        try:
            self.store.add_refresh_token(record)
        except ConstraintViolation as exc:
            raise ServerError("Unable to issue tokens") from exc
        return self._pair(user, record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        return self.store.get_refresh_token(token)

    async def refresh(
        self,
        old_token: str,
        *,
        ip_address: Optional[str] = None,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Tuple[User, TokenPair]:
        """Rotate ``old_token`` into a new pair.

        Raises ``TokenReuseDetectedError`` (after revoking the whole lineage) when
        an already-rotated token is presented. Storage failures propagate as
        ``ServerError``; nothing is issued unless the rotation committed.
        ``before_commit`` runs just before the rotation is written and may raise
        to abandon it.
        """
        now = self.clock.now()
        try:
            record = self.store.get_refresh_token(old_token)
        except Exception as exc:
            logger.error("refresh_token_lookup_failed", error=str(exc), error_type=type(exc).__name__)
            raise ServerError("Unable to refresh session") from exc

        if record is None:
            await self.auditor.record(
                "TOKEN_REFRESH_FAILED",
                "RefreshToken",
                success=False,
                failure_reason="Unknown token",
                ip_address=ip_address,
            )
            raise InvalidTokenError("Invalid refresh token")
        if record.revoked:
            if record.replaced_by_token:
                await self._handle_reuse(record, ip_address)
                raise TokenReuseDetectedError("Refresh token reuse detected")
            await self.auditor.record(
                "TOKEN_REFRESH_FAILED",
                "RefreshToken",
                user_id=record.user_id,
                success=False,
                failure_reason="Token revoked",
                ip_address=ip_address,
            )
            raise TokenRevokedError("Refresh token revoked")
        if record.is_expired(now):
            raise TokenExpiredError("Refresh token expired")

        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            self.store.revoke_refresh_token(
                old_token, revoked_at=now, revoked_by_ip=ip_address, reason=REASON_USER_INACTIVE
            )
            await self.auditor.record(
                "TOKEN_REFRESH_FAILED",
                "RefreshToken",
                user_id=record.user_id,
                success=False,
                failure_reason=REASON_USER_INACTIVE,
                ip_address=ip_address,
            )
            raise InvalidCredentialsError("Account unavailable")

        new_record = self._new_refresh_record(
            user.id, ip_address=ip_address, session_id=record.session_id
        )
        if before_commit is not None:
            before_commit()
        try:
            rotated = self.store.rotate_refresh_token(
                old_token,
                new_record,
                revoked_at=now,
                revoked_by_ip=ip_address,
                reason=REASON_ROTATED,
            )
        except Exception as exc:
            logger.error(
                "refresh_token_rotation_failed",
                user_id=user.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ServerError("Unable to refresh session") from exc
        if not rotated:
            # lost a race with another rotation of the same token
            current = self.store.get_refresh_token(old_token)
            if current is not None and current.replaced_by_token:
                await self._handle_reuse(current, ip_address)
                raise TokenReuseDetectedError("Refresh token reuse detected")
            raise TokenRevokedError("Refresh token revoked")

        await self.auditor.record(
            "TOKEN_REFRESHED", "RefreshToken", user_id=user.id, ip_address=ip_address
        )
        return user, self._pair(user, new_record)

    async def _handle_reuse(self, record: RefreshToken, ip_address: Optional[str]) -> int:
        now = self.clock.now()
        revoked = 0
        for link in self.get_chain(record.token)[1:]:
            if self.store.revoke_refresh_token(
                link.token, revoked_at=now, revoked_by_ip=ip_address, reason=REASON_REUSE
            ):
                revoked += 1
        self.logger.error(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            session_id=record.session_id,
            revoked_descendants=revoked,
            ip_address=ip_address,
        )
        await self.auditor.record(
            "REFRESH_TOKEN_REUSE_DETECTED",
            "RefreshToken",
            user_id=record.user_id,
            success=False,
            failure_reason="Rotated refresh token presented again",
            details={
                "session_id": record.session_id,
                "revoked_descendants": revoked,
                "original_ip": record.created_by_ip,
            },
            ip_address=ip_address,
            severity=Severity.CRITICAL,
        )
        return revoked

    def get_chain(self, token: str) -> List[RefreshToken]:
        """Walk ``replaced_by_token`` links forward from ``token`` (forensics only)."""
        chain: List[RefreshToken] = []
        seen: set[str] = set()
        current = self.store.get_refresh_token(token)
        while current is not None and current.token not in seen and len(chain) < _MAX_CHAIN_LENGTH:
            chain.append(current)
            seen.add(current.token)
            if not current.replaced_by_token:
                break
            current = self.store.get_refresh_token(current.replaced_by_token)
        return chain

    async def revoke(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Revoke one refresh token; False if it is unknown or already revoked."""
        record = self.store.get_refresh_token(token)
        if record is None:
            return False
        revoked = self.store.revoke_refresh_token(
            token,
            revoked_at=self.clock.now(),
            revoked_by_ip=ip_address,
            reason=reason or REASON_DEFAULT,
        )
        if revoked:
            await self.auditor.record(
                "TOKEN_REVOKED",
                "RefreshToken",
                user_id=record.user_id,
                details={"reason": reason or REASON_DEFAULT},
                ip_address=ip_address,
            )
        return revoked

    def _revoke_many(
        self, records: List[RefreshToken], *, ip_address: Optional[str], reason: str
    ) -> int:
        now = self.clock.now()
        count = 0
        for record in records:
            if self.store.revoke_refresh_token(
                record.token, revoked_at=now, revoked_by_ip=ip_address, reason=reason
            ):
                count += 1
        return count

    async def revoke_all_for_user(
        self, user_id: str, *, ip_address: Optional[str] = None, reason: str = REASON_DEFAULT
    ) -> int:
        count = self._revoke_many(
            self.store.list_refresh_tokens(user_id=user_id), ip_address=ip_address, reason=reason
        )
        if count:
            await self.auditor.record(
                "ALL_TOKENS_REVOKED",
                "RefreshToken",
                user_id=user_id,
                details={"count": count, "reason": reason},
                ip_address=ip_address,
            )
        return count

    def revoke_for_session(
        self, session_id: str, *, ip_address: Optional[str] = None, reason: str = REASON_DEFAULT
    ) -> int:
        return self._revoke_many(
            self.store.list_refresh_tokens(session_id=session_id),
            ip_address=ip_address,
            reason=reason,
        )

    def cleanup_expired_tokens(self) -> int:
        """Delete refresh tokens that expired longer ago than the retention window."""
        cutoff = self.clock.now() - timedelta(days=self.settings.refresh_token_retention_days)
        purged = self.store.purge_refresh_tokens(cutoff)
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged, cutoff=cutoff.isoformat())
        return purged
