from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, TypeVar

from reportguard.config import Settings
from reportguard.logging import get_logger
from reportguard.service.audit import SecurityAuditor, Severity
from reportguard.service.clock import Clock, SystemClock
from reportguard.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    MfaRequiredError,
    ServerError,
    SessionExpiredError,
    SessionSuspiciousError,
    TokenReuseDetectedError,
    ValidationError,
)
from reportguard.service.mfa import TotpMfaManager
from reportguard.service.passwords import ARGON2ID_ALGO, LEGACY_SHA256_ALGO, PasswordHasher
from reportguard.service.permissions import PermissionResolver
from reportguard.service.sessions import REASON_LOGOUT, SessionManager
from reportguard.service.tokens import REASON_REUSE, AccessClaims, TokenPair, TokenService
from reportguard.storage.errors import ConstraintViolation
from reportguard.storage.models import Credential, Session, User

logger = get_logger(__name__)

T = TypeVar("T")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 1024
GENERIC_LOGIN_FAILURE = "Invalid username or password"
REASON_PASSWORD_CHANGED = "Password changed"
REASON_TOKEN_ISSUE_FAILED = "Token issuance failed"
REASON_SESSION_ENDED = "Session ended"


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "Viewer",
        role_id: Optional[str] = None,
        department_id: Optional[str] = None,
        is_active: bool = True,
        max_concurrent_sessions: Optional[int] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def record_login(self, user_id: str, at: datetime) -> None: ...

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        salt: Optional[str],
        password_algo: str,
        *,
        at: Optional[datetime] = None,
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Credential]: ...


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair
    mfa_verified: bool = False


@dataclass
class AuthContext:
    user: User
    session: Session
    claims: AccessClaims


class RequestDeadline:
    """Time budget for one request.

    Work before ``commit()`` is abandoned when the budget runs out. Once an
    operation has committed a state change it always runs to completion, so a
    timeout never leaves a rotated token or a new session undelivered.
    """

    def __init__(self, timeout: Optional[float], operation: str) -> None:
        self.timeout = timeout
        self.operation = operation
        self.committed = False
        self._expires_at = (
            None if timeout is None else asyncio.get_running_loop().time() + timeout
        )

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - asyncio.get_running_loop().time())

    def timed_out(self) -> ServerError:
        logger.warning(
            "auth_operation_timeout",
            operation=self.operation,
            timeout_seconds=self.timeout,
            committed=self.committed,
        )
        return ServerError("Request timed out")

    def commit(self) -> None:
        """Mark the point of no return; refuses to pass it once the budget is spent."""
        if self.committed:
            return
        if self.remaining() == 0.0:
            raise self.timed_out()
        self.committed = True


async def _run_with_deadline(
    operation: str,
    timeout: Optional[float],
    step: Callable[[RequestDeadline], Awaitable[T]],
) -> T:
    deadline = RequestDeadline(timeout, operation)
    if timeout is None:
        return await step(deadline)
    task = asyncio.ensure_future(step(deadline))
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if done or deadline.committed:
        # committed work finishes even if the caller goes away
        return await asyncio.shield(task)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        raise deadline.timed_out() from None
    return task.result()


class AuthService:
    """Request-level flows composed from the identity services.

    Every entry point fails closed: storage or crypto errors surface as
    ``ServerError`` and never yield a session or token.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        mfa: TotpMfaManager,
        tokens: TokenService,
        sessions: SessionManager,
        permissions: PermissionResolver,
        auditor: Optional[SecurityAuditor] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.mfa = mfa
        self.tokens = tokens
        self.sessions = sessions
        self.permissions = permissions
        self.auditor = auditor or SecurityAuditor()
        self.clock = clock or SystemClock()
        self.logger = logger

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("password too long", detail={"field": "password"})

    def _store_password(self, user_id: str, password: str) -> None:
        password_hash, salt = self.hasher.hash(password)
        self.store.save_password(user_id, password_hash, salt, ARGON2ID_ALGO, at=self.clock.now())

    # registration
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str = "Viewer",
        department_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> User:
        username = (username or "").strip()
        email = (email or "").strip()
        if not username:
            raise ValidationError("username is required", detail={"field": "username"})
        if "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        self._validate_password(password)
        try:
            user = self.store.create_user(
                username, email, role=role, department_id=department_id
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", field=exc.field)
            raise ConflictError("account already exists", detail=exc.detail) from exc
        self._store_password(user.id, password)
        await self.auditor.record(
            "USER_REGISTERED",
            "User",
            user_id=user.id,
            details={"role": role, "department_id": department_id},
            ip_address=ip_address,
        )
        self.logger.info("user_registered", user_id=user.id)
        return user

    # login
    async def login(
        self,
        username: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
        mfa_code: Optional[str] = None,
        remember_me: bool = False,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        """Password, then MFA, then session, then tokens.

        Unknown usernames, inactive accounts and wrong passwords or codes all
        raise the same ``InvalidCredentialsError``.
        """
        return await _run_with_deadline(
            "login",
            timeout,
            lambda deadline: self._login(
                username,
                password,
                ip_address=ip_address,
                user_agent=user_agent,
                fingerprint=fingerprint,
                mfa_code=mfa_code,
                remember_me=remember_me,
                deadline=deadline,
            ),
        )

    async def _login_failed(
        self, user_id: Optional[str], reason: str, ip_address: Optional[str]
    ) -> InvalidCredentialsError:
        await self.auditor.record(
            "LOGIN_FAILED",
            "Authentication",
            user_id=user_id,
            success=False,
            failure_reason=reason,
            ip_address=ip_address,
            severity=Severity.MEDIUM,
        )
        return InvalidCredentialsError(GENERIC_LOGIN_FAILURE)

    async def _login(
        self,
        username: str,
        password: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        fingerprint: Optional[str],
        mfa_code: Optional[str],
        remember_me: bool,
        deadline: RequestDeadline,
    ) -> LoginResult:
        user = self.store.get_user_by_username((username or "").strip())
        if user is None or not user.is_active:
            self.hasher.burn(password or "")
            raise await self._login_failed(
                user.id if user else None,
                "Unknown user" if user is None else "Account inactive",
                ip_address,
            )

        record = self.store.get_password_record(user.id)
        if not self.hasher.verify_credential(
            record, password or "", allow_legacy=self.settings.allow_legacy_password_hashes
        ):
            raise await self._login_failed(user.id, "Invalid password", ip_address)

        mfa_verified = False
        if self.mfa.is_enabled(user.id):
            if not mfa_code:
                self.logger.info("login_mfa_required", user_id=user.id)
                raise MfaRequiredError("Multi-factor authentication code required")
            # MfaLockedError propagates untouched
            if not await self.mfa.verify_any(user.id, mfa_code, ip_address=ip_address):
                raise await self._login_failed(user.id, "Invalid MFA code", ip_address)
            mfa_verified = True

        if record is not None and record.password_algo == LEGACY_SHA256_ALGO:
            self._store_password(user.id, password)
            self.logger.info("legacy_password_migrated", user_id=user.id)

        session = await self.sessions.create_session(
            user.id,
            fingerprint=fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
            mfa_verified=mfa_verified,
            before_commit=deadline.commit,
        )
        try:
            tokens = self.tokens.issue_pair(user, ip_address=ip_address, session_id=session.id)
        except Exception:
            await self.sessions.terminate(
                session.id, REASON_TOKEN_ISSUE_FAILED, ip_address=ip_address
            )
            raise
        now = self.clock.now()
        self.store.record_login(user.id, now)
        await self.auditor.record(
            "LOGIN_SUCCESS",
            "Authentication",
            user_id=user.id,
            details={"session_id": session.id, "mfa_verified": mfa_verified},
            ip_address=ip_address,
        )
        user.last_login_at = now
        return LoginResult(user=user, session=session, tokens=tokens, mfa_verified=mfa_verified)

    # refresh
    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TokenPair:
        return await _run_with_deadline(
            "refresh",
            timeout,
            lambda deadline: self._refresh(refresh_token, ip_address=ip_address, deadline=deadline),
        )

    async def _refresh(
        self, refresh_token: str, *, ip_address: Optional[str], deadline: RequestDeadline
    ) -> TokenPair:
        record = self.tokens.get_refresh_token(refresh_token)
        if record is not None and record.session_id and not record.revoked:
            session = self.sessions.get_session(record.session_id)
            if session is None or not session.is_live(self.clock.now()):
                await self.tokens.revoke(
                    refresh_token, ip_address=ip_address, reason=REASON_SESSION_ENDED
                )
                raise SessionExpiredError("Session expired")
        try:
            _, pair = await self.tokens.refresh(
                refresh_token, ip_address=ip_address, before_commit=deadline.commit
            )
        except TokenReuseDetectedError:
            if record is not None and record.session_id:
                await self.sessions.terminate(
                    record.session_id, REASON_REUSE, ip_address=ip_address
                )
            raise
        return pair

    # logout
    async def logout(
        self,
        session_id: str,
        *,
        access_token: Optional[str] = None,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        return await _run_with_deadline(
            "logout",
            timeout,
            lambda deadline: self._logout(
                session_id, access_token=access_token, ip_address=ip_address, deadline=deadline
            ),
        )

    async def _logout(
        self,
        session_id: str,
        *,
        access_token: Optional[str],
        ip_address: Optional[str],
        deadline: RequestDeadline,
    ) -> bool:
        deadline.commit()
        terminated = await self.sessions.terminate(
            session_id, REASON_LOGOUT, ip_address=ip_address
        )
        if access_token:
            try:
                claims = self.tokens.decode_access_token(access_token)
            except InvalidTokenError:
                # already unusable
                claims = None
            if claims is not None:
                await self.tokens.revoke_access_token(claims)
        return terminated

    # per-request authentication
    async def authenticate(
        self,
        session_id: Optional[str],
        access_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        permission: Optional[str] = None,
        department_id: Optional[str] = None,
        reject_suspicious: bool = False,
        timeout: Optional[float] = None,
    ) -> AuthContext:
        """Validate session, then access token, then (optionally) a permission."""
        return await _run_with_deadline(
            "authenticate",
            timeout,
            lambda deadline: self._authenticate(
                session_id,
                access_token,
                ip_address=ip_address,
                user_agent=user_agent,
                permission=permission,
                department_id=department_id,
                reject_suspicious=reject_suspicious,
            ),
        )

    async def _authenticate(
        self,
        session_id: Optional[str],
        access_token: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        permission: Optional[str],
        department_id: Optional[str],
        reject_suspicious: bool,
    ) -> AuthContext:
        session = await self.sessions.validate_session(
            session_id, ip_address=ip_address, user_agent=user_agent
        )
        if session is None:
            raise SessionExpiredError("Session expired")
        if reject_suspicious and session.is_suspicious:
            raise SessionSuspiciousError("Session requires re-authentication")

        claims = await self.tokens.validate_access_token(access_token)
        if claims.user_id != session.user_id or (
            claims.session_id is not None and claims.session_id != session.id
        ):
            self.logger.warning(
                "access_token_session_mismatch",
                session_id=session.id,
                token_session_id=claims.session_id,
            )
            raise InvalidTokenError("Invalid access token")

        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError("Invalid access token")

        if permission:
            await self.permissions.check(
                user.id, permission, department_id, ip_address=ip_address
            )
        return AuthContext(user=user, session=session, claims=claims)

    # credentials
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[TokenPair]:
        """Replace the password, revoke every refresh token and end other sessions.

        Returns a fresh pair for ``current_session_id`` when it is still live.
        """
        return await _run_with_deadline(
            "change_password",
            timeout,
            lambda deadline: self._change_password(
                user_id,
                current_password,
                new_password,
                current_session_id=current_session_id,
                ip_address=ip_address,
                deadline=deadline,
            ),
        )

    async def _change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str],
        ip_address: Optional[str],
        deadline: RequestDeadline,
    ) -> Optional[TokenPair]:
        user = self.store.get_user(user_id)
        record = self.store.get_password_record(user_id) if user else None
        if user is None or not self.hasher.verify_credential(
            record, current_password or "", allow_legacy=self.settings.allow_legacy_password_hashes
        ):
            await self.auditor.record(
                "PASSWORD_CHANGE_FAILED",
                "User",
                user_id=user_id,
                success=False,
                failure_reason="Re-authentication failed",
                ip_address=ip_address,
                severity=Severity.MEDIUM,
            )
            raise InvalidCredentialsError("Verification failed")
        self._validate_password(new_password)
        if new_password == current_password:
            raise ValidationError("new password must differ", detail={"field": "new_password"})

        deadline.commit()
        self._store_password(user_id, new_password)
        revoked = await self.tokens.revoke_all_for_user(
            user_id, ip_address=ip_address, reason=REASON_PASSWORD_CHANGED
        )
        terminated = 0
        if current_session_id:
            terminated = await self.sessions.terminate_others(
                user_id, current_session_id, REASON_PASSWORD_CHANGED, ip_address=ip_address
            )
        else:
            terminated = await self.sessions.terminate_all(
                user_id, REASON_PASSWORD_CHANGED, ip_address=ip_address
            )
        await self.auditor.record(
            "PASSWORD_CHANGED",
            "User",
            user_id=user_id,
            details={"revoked_refresh_tokens": revoked, "terminated_sessions": terminated},
            ip_address=ip_address,
            severity=Severity.MEDIUM,
        )
        self.logger.info("password_changed", user_id=user_id)

        if not current_session_id:
            return None
        session = self.sessions.get_session(current_session_id)
        if session is None or session.user_id != user_id or not session.is_live(self.clock.now()):
            return None
        return self.tokens.issue_pair(user, ip_address=ip_address, session_id=session.id)

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active_sessions(user_id)
