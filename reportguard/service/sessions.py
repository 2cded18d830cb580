from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from reportguard.config import Settings
from reportguard.logging import get_logger
from reportguard.service.audit import SecurityAuditor, Severity
from reportguard.service.clock import Clock, SystemClock
from reportguard.service.devices import (
    DeviceSignals,
    browser_family,
    classify_device_type,
    derive_fingerprint,
    describe_device,
)
from reportguard.service.errors import DeviceBlockedError, NotFoundError
from reportguard.service.geo import UNKNOWN_LOCATION, IpGeolocator
from reportguard.service.tokens import TokenService
from reportguard.storage.models import DeviceFingerprint, Session, User

logger = get_logger(__name__)

REASON_LOGOUT = "User logout"
REASON_EXPIRED = "Session expired"
REASON_LIMIT = "Session limit exceeded"
REASON_SUSPICIOUS = "Suspicious activity - forced logout"
_CLEANUP_BATCH_SIZE = 500


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def add_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]: ...

    def list_expired_active_sessions(self, now: datetime, limit: int = 500) -> List[Session]: ...

    def list_suspicious_sessions(self) -> List[Session]: ...

    def revoke_session(self, session_id: str, *, reason: str, revoked_at: datetime) -> bool: ...

    def touch_session(
        self,
        session_id: str,
        *,
        last_accessed_at: datetime,
        expires_at: datetime,
        is_suspicious: bool,
        suspicious_reason: Optional[str],
    ) -> bool: ...

    def set_session_mfa_verified(self, session_id: str, at: datetime) -> bool: ...

    def get_device(self, user_id: str, fingerprint: str) -> Optional[DeviceFingerprint]: ...

    def touch_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        seen_at: datetime,
        device_name: Optional[str] = None,
        device_type: str = "Unknown",
    ) -> DeviceFingerprint: ...

    def set_device_flags(
        self,
        user_id: str,
        fingerprint: str,
        *,
        is_trusted: Optional[bool] = None,
        is_blocked: Optional[bool] = None,
        blocked_reason: Optional[str] = None,
    ) -> Optional[DeviceFingerprint]: ...

    def list_devices(self, user_id: str) -> List[DeviceFingerprint]: ...


@dataclass
class SessionStatistics:
    active_sessions: int = 0
    suspicious_sessions: int = 0
    trusted_devices: int = 0
    blocked_devices: int = 0
    device_types: Dict[str, int] = field(default_factory=dict)
    most_recent_access: Optional[datetime] = None


class SessionManager:
    """Session lifecycle: creation with LRU eviction, validation, termination.

    A session is Active until it is revoked or passes ``expires_at``; both are
    absorbing. Every mutation goes through a store call that re-checks the
    session is still active, so request-driven validation and the cleanup
    sweep can race without double-processing a row.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        tokens: Optional[TokenService] = None,
        auditor: Optional[SecurityAuditor] = None,
        clock: Optional[Clock] = None,
        geolocator: Optional[IpGeolocator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.auditor = auditor or SecurityAuditor()
        self.clock = clock or SystemClock()
        self.geolocator = geolocator
        self.logger = logger

    def _timeout_minutes(self, remember_me: bool) -> int:
        if remember_me:
            return self.settings.remember_me_timeout_minutes
        return self.settings.session_timeout_minutes

    def _session_limit(self, user: User) -> int:
        return user.max_concurrent_sessions or self.settings.max_concurrent_sessions

    # creation
    async def create_session(
        self,
        user_id: str,
        *,
        fingerprint: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        remember_me: bool = False,
        mfa_verified: bool = False,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Session:
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found or inactive")
        now = self.clock.now()

        if fingerprint:
            device = self.store.get_device(user_id, fingerprint)
            if device is not None and device.is_blocked:
                await self.auditor.record(
                    "SESSION_CREATE_BLOCKED",
                    "Session",
                    user_id=user_id,
                    success=False,
                    failure_reason="Device blocked",
                    details={"fingerprint": fingerprint},
                    ip_address=ip_address,
                    severity=Severity.HIGH,
                )
                raise DeviceBlockedError("This device has been blocked. Contact an administrator.")

        device_type = classify_device_type(user_agent)
        device_name = describe_device(user_agent)
        location = (
            await self.geolocator.resolve(ip_address) if self.geolocator else UNKNOWN_LOCATION
        )

        # nothing has been written yet; eviction is the first state change
        if before_commit is not None:
            before_commit()
        await self._enforce_session_limit(user, now, ip_address)
        session = Session.new(
            user_id,
            now,
            self._timeout_minutes(remember_me),
            device_fingerprint=fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
            device_name=device_name,
            location=location,
            remember_me=remember_me,
            mfa_verified=mfa_verified,
        )
        self.store.add_session(session)
        if fingerprint:
            self.store.touch_device(
                user_id, fingerprint, seen_at=now, device_name=device_name, device_type=device_type
            )
        await self.auditor.record(
            "SESSION_CREATED",
            "Session",
            user_id=user_id,
            details={
                "session_id": session.id,
                "device_type": device_type,
                "location": location,
                "remember_me": remember_me,
            },
            ip_address=ip_address,
        )
        return session

    async def _enforce_session_limit(self, user: User, now: datetime, ip_address: Optional[str]) -> None:
        """Make room for one more session by evicting least-recently-used ones."""
        live: List[Session] = []
        for session in self.store.list_sessions(user.id):
            if session.expires_at <= now:
                await self._terminate(session, REASON_EXPIRED, ip_address, action="SESSION_EXPIRED")
            else:
                live.append(session)
        excess = len(live) - self._session_limit(user) + 1
        if excess <= 0:
            return
        live.sort(key=lambda s: s.last_accessed_at)
        for victim in live[:excess]:
            await self._terminate(victim, REASON_LIMIT, ip_address, severity=Severity.LOW)
            self.logger.info(
                "session_evicted_lru",
                user_id=user.id,
                session_id=victim.id,
                last_accessed_at=victim.last_accessed_at.isoformat(),
            )

    # validation
    async def validate_session(
        self,
        session_id: Optional[str],
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[Session]:
        """Return the refreshed session, or None if it is absent, revoked or expired.

        A changed IP address or browser family flags the session as suspicious
        without ending it; mobile networks change IPs routinely.
        """
        session = self.store.get_session(session_id) if session_id else None
        if session is None or session.is_revoked or not session.is_active:
            return None
        now = self.clock.now()
        if session.expires_at <= now:
            await self._terminate(session, REASON_EXPIRED, ip_address, action="SESSION_EXPIRED")
            return None

        if session.device_fingerprint:
            device = self.store.get_device(session.user_id, session.device_fingerprint)
            if device is not None and device.is_blocked:
                await self._terminate(
                    session,
                    f"Device blocked: {device.blocked_reason or 'unspecified'}",
                    ip_address,
                    severity=Severity.HIGH,
                )
                return None

        anomalies: List[str] = []
        if ip_address and session.ip_address and ip_address != session.ip_address:
            anomalies.append("IP address changed")
        if (
            user_agent
            and session.user_agent
            and user_agent != session.user_agent
            and browser_family(user_agent) != browser_family(session.user_agent)
        ):
            anomalies.append("Browser changed")
        is_suspicious = session.is_suspicious or bool(anomalies)
        suspicious_reason = "; ".join(anomalies) if anomalies else session.suspicious_reason

        expires_at = session.expires_at
        extended = False
        if expires_at - now < timedelta(minutes=self.settings.session_sliding_window_minutes):
            expires_at = now + timedelta(minutes=self._timeout_minutes(session.remember_me))
            extended = True

        if not self.store.touch_session(
            session.id,
            last_accessed_at=now,
            expires_at=expires_at,
            is_suspicious=is_suspicious,
            suspicious_reason=suspicious_reason,
        ):
            # terminated between the read and the write
            return None

        if anomalies:
            self.logger.warning(
                "suspicious_session_detected",
                user_id=session.user_id,
                session_id=session.id,
                reasons=anomalies,
            )
            await self.auditor.record(
                "SUSPICIOUS_SESSION_DETECTED",
                "Session",
                user_id=session.user_id,
                success=False,
                failure_reason=suspicious_reason,
                details={
                    "session_id": session.id,
                    "original_ip": session.ip_address,
                    "original_browser": browser_family(session.user_agent),
                    "current_browser": browser_family(user_agent),
                },
                ip_address=ip_address,
                severity=Severity.HIGH,
            )
        if extended:
            await self.auditor.record(
                "SESSION_EXTENDED",
                "Session",
                user_id=session.user_id,
                details={"session_id": session.id, "expires_at": expires_at.isoformat()},
                ip_address=ip_address,
            )
        return replace(
            session,
            last_accessed_at=now,
            expires_at=expires_at,
            is_suspicious=is_suspicious,
            suspicious_reason=suspicious_reason,
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def list_active_sessions(self, user_id: str) -> List[Session]:
        now = self.clock.now()
        sessions = [s for s in self.store.list_sessions(user_id) if s.is_live(now)]
        return sorted(sessions, key=lambda s: s.last_accessed_at, reverse=True)

    # termination
    async def _terminate(
        self,
        session: Session,
        reason: str,
        ip_address: Optional[str],
        *,
        action: str = "SESSION_TERMINATED",
        severity: str = Severity.INFO,
    ) -> bool:
        now = self.clock.now()
        if not self.store.revoke_session(session.id, reason=reason, revoked_at=now):
            return False
        revoked_tokens = 0
        if self.tokens is not None:
            revoked_tokens = self.tokens.revoke_for_session(
                session.id, ip_address=ip_address, reason=reason
            )
        await self.auditor.record(
            action,
            "Session",
            user_id=session.user_id,
            details={
                "session_id": session.id,
                "reason": reason,
                "revoked_refresh_tokens": revoked_tokens,
            },
            ip_address=ip_address,
            severity=severity,
        )
        return True

    async def terminate(
        self, session_id: str, reason: str = REASON_LOGOUT, *, ip_address: Optional[str] = None
    ) -> bool:
        session = self.store.get_session(session_id)
        if session is None:
            return False
        return await self._terminate(session, reason, ip_address)

    async def _terminate_many(
        self, sessions: List[Session], reason: str, ip_address: Optional[str]
    ) -> tuple[int, int]:
        """Per-row termination; a failing row is logged and the rest still proceed."""
        terminated = 0
        failed = 0
        for session in sessions:
            try:
                if await self._terminate(session, reason, ip_address):
                    terminated += 1
            except Exception as exc:
                failed += 1
                self.logger.error(
                    "session_termination_failed",
                    session_id=session.id,
                    user_id=session.user_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return terminated, failed

    async def terminate_others(
        self,
        user_id: str,
        keep_session_id: str,
        reason: str = "Terminated by user",
        *,
        ip_address: Optional[str] = None,
    ) -> int:
        targets = [s for s in self.store.list_sessions(user_id) if s.id != keep_session_id]
        terminated, failed = await self._terminate_many(targets, reason, ip_address)
        await self.auditor.record(
            "BULK_SESSION_TERMINATION",
            "Session",
            user_id=user_id,
            success=failed == 0,
            details={"terminated": terminated, "failed": failed, "kept_session_id": keep_session_id},
            ip_address=ip_address,
        )
        return terminated

    async def terminate_all(
        self,
        user_id: str,
        reason: str = "All sessions terminated",
        *,
        ip_address: Optional[str] = None,
    ) -> int:
        terminated, failed = await self._terminate_many(
            self.store.list_sessions(user_id), reason, ip_address
        )
        await self.auditor.record(
            "ALL_SESSIONS_TERMINATED",
            "Session",
            user_id=user_id,
            success=failed == 0,
            details={"terminated": terminated, "failed": failed, "reason": reason},
            ip_address=ip_address,
            severity=Severity.MEDIUM,
        )
        return terminated

    async def force_logout_suspicious(self, *, ip_address: Optional[str] = None) -> int:
        terminated, _ = await self._terminate_many(
            self.store.list_suspicious_sessions(), REASON_SUSPICIOUS, ip_address
        )
        if terminated:
            self.logger.warning("suspicious_sessions_terminated", count=terminated)
        return terminated

    async def cleanup_expired_sessions(self) -> int:
        """Revoke every session past ``expires_at`` that is still marked active.

        Safe to re-run or run beside request traffic: rows already revoked are
        skipped by the store's conditional update.
        """
        total = 0
        while True:
            now = self.clock.now()
            batch = self.store.list_expired_active_sessions(now, limit=_CLEANUP_BATCH_SIZE)
            for session in batch:
                if await self._terminate(session, REASON_EXPIRED, None, action="SESSION_EXPIRED"):
                    total += 1
            if len(batch) < _CLEANUP_BATCH_SIZE:
                break
        if total:
            self.logger.info("expired_sessions_cleaned", count=total)
        return total

    # MFA freshness
    def mark_mfa_verified(self, session_id: str) -> bool:
        return self.store.set_session_mfa_verified(session_id, self.clock.now())

    def requires_mfa_reverification(self, session: Session) -> bool:
        if session.last_mfa_verification is None:
            return True
        max_age = timedelta(hours=self.settings.mfa_reverification_hours)
        return self.clock.now() - session.last_mfa_verification > max_age

    # devices
    def register_device(self, user_id: str, signals: DeviceSignals) -> DeviceFingerprint:
        return self.store.touch_device(
            user_id,
            derive_fingerprint(signals),
            seen_at=self.clock.now(),
            device_name=describe_device(signals.user_agent),
            device_type=classify_device_type(signals.user_agent),
        )

    def verify_device(self, user_id: str, fingerprint: str) -> bool:
        """Known to this user and not blocked."""
        device = self.store.get_device(user_id, fingerprint)
        return device is not None and not device.is_blocked

    def list_devices(self, user_id: str) -> List[DeviceFingerprint]:
        return self.store.list_devices(user_id)

    async def trust_device(
        self, user_id: str, fingerprint: str, *, ip_address: Optional[str] = None
    ) -> bool:
        device = self.store.set_device_flags(user_id, fingerprint, is_trusted=True)
        if device is None:
            return False
        await self.auditor.record(
            "DEVICE_TRUSTED",
            "Device",
            user_id=user_id,
            details={"fingerprint": fingerprint},
            ip_address=ip_address,
        )
        return True

    async def block_device(
        self,
        user_id: str,
        fingerprint: str,
        reason: str,
        *,
        ip_address: Optional[str] = None,
    ) -> int:
        """Block a fingerprint and end every active session bound to it.

        Unknown fingerprints are recorded first so the block also applies to
        future logins. Returns the number of sessions terminated.
        """
        if self.store.get_device(user_id, fingerprint) is None:
            self.store.touch_device(user_id, fingerprint, seen_at=self.clock.now())
        self.store.set_device_flags(
            user_id, fingerprint, is_trusted=False, is_blocked=True, blocked_reason=reason
        )
        bound = [
            s for s in self.store.list_sessions(user_id) if s.device_fingerprint == fingerprint
        ]
        terminated, failed = await self._terminate_many(
            bound, f"Device blocked: {reason}", ip_address
        )
        await self.auditor.record(
            "DEVICE_BLOCKED",
            "Device",
            user_id=user_id,
            success=failed == 0,
            details={"fingerprint": fingerprint, "reason": reason, "terminated_sessions": terminated},
            ip_address=ip_address,
            severity=Severity.HIGH,
        )
        return terminated

    def session_statistics(self, user_id: str) -> SessionStatistics:
        active = self.list_active_sessions(user_id)
        devices = self.store.list_devices(user_id)
        return SessionStatistics(
            active_sessions=len(active),
            suspicious_sessions=sum(1 for s in active if s.is_suspicious),
            trusted_devices=sum(1 for d in devices if d.is_trusted),
            blocked_devices=sum(1 for d in devices if d.is_blocked),
            device_types=dict(Counter(s.device_type for s in active)),
            most_recent_access=active[0].last_accessed_at if active else None,
        )
