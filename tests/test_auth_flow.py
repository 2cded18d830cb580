"""End-to-end flows through AuthService on the memory store."""

import asyncio
import base64
import hashlib

import pytest

from reportguard.service.auth import RequestDeadline
from reportguard.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    MfaLockedError,
    MfaRequiredError,
    PermissionDeniedError,
    ServerError,
    SessionExpiredError,
    SessionSuspiciousError,
    TokenReuseDetectedError,
    TokenRevokedError,
    ValidationError,
)
from reportguard.service.mfa import generate_totp
from reportguard.service.passwords import ARGON2ID_ALGO, LEGACY_SHA256_ALGO

PASSWORD = "Correct-Horse-42"
UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
IP = "203.0.113.20"


async def _login(auth_service, username, **kwargs):
    kwargs.setdefault("ip_address", IP)
    kwargs.setdefault("user_agent", UA)
    return await auth_service.login(username, kwargs.pop("password", PASSWORD), **kwargs)


class TestRegister:
    async def test_register_and_login(self, auth_service, auditor, audit_sink):
        user = await auth_service.register("alice", "alice@example.com", PASSWORD)

        result = await _login(auth_service, "ALICE")

        assert result.user.id == user.id
        assert result.tokens.token_type == "Bearer"
        await auditor.drain()
        assert "USER_REGISTERED" in audit_sink.actions()
        assert "LOGIN_SUCCESS" in audit_sink.actions()

    async def test_duplicate_username(self, auth_service):
        await auth_service.register("alice", "alice@example.com", PASSWORD)

        with pytest.raises(ConflictError) as excinfo:
            await auth_service.register("Alice", "other@example.com", PASSWORD)
        assert excinfo.value.detail == {"field": "username"}

    @pytest.mark.parametrize(
        "username,email,password",
        [("", "a@example.com", PASSWORD), ("bob", "not-an-email", PASSWORD), ("bob", "b@example.com", "short")],
    )
    async def test_validation(self, auth_service, username, email, password):
        with pytest.raises(ValidationError):
            await auth_service.register(username, email, password)


class TestLogin:
    async def test_failures_are_indistinguishable(self, auth_service, make_user, store, auditor, audit_sink):
        make_user("carol")
        inactive = make_user("dave")
        store.set_user_active(inactive.id, False)

        messages = []
        for username, password in [("nobody", PASSWORD), ("carol", "wrong-password"), ("dave", PASSWORD)]:
            with pytest.raises(InvalidCredentialsError) as excinfo:
                await _login(auth_service, username, password=password)
            messages.append(excinfo.value.message)

        assert len(set(messages)) == 1
        await auditor.drain()
        assert len(audit_sink.find("LOGIN_FAILED")) == 3

    async def test_login_binds_session_into_tokens(self, auth_service, make_user, token_service):
        make_user("erin")

        result = await _login(auth_service, "erin")

        claims = token_service.decode_access_token(result.tokens.access_token)
        assert claims.session_id == result.session.id
        record = token_service.get_refresh_token(result.tokens.refresh_token)
        assert record.session_id == result.session.id
        assert result.user.last_login_at is not None

    async def test_mfa_required_then_accepted(self, auth_service, make_user, mfa_manager, clock):
        user = make_user("frank")
        setup = await mfa_manager.generate_setup(user.id, user.username)
        await mfa_manager.enable(user.id, generate_totp(setup.secret, clock.now().timestamp()))

        with pytest.raises(MfaRequiredError):
            await _login(auth_service, "frank")

        clock.advance(seconds=30)
        result = await _login(auth_service, "frank", mfa_code=generate_totp(setup.secret, clock.now().timestamp()))
        assert result.mfa_verified
        assert result.session.last_mfa_verification == clock.now()

    async def test_wrong_mfa_code_is_generic_then_locks(self, auth_service, make_user, mfa_manager, clock):
        user = make_user("gina")
        setup = await mfa_manager.generate_setup(user.id, user.username)
        await mfa_manager.enable(user.id, generate_totp(setup.secret, clock.now().timestamp()))

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, "gina", mfa_code="deadbeef")

        with pytest.raises(MfaLockedError):
            await _login(auth_service, "gina", mfa_code=generate_totp(setup.secret, clock.now().timestamp()))

    async def test_legacy_hash_migrates_on_login(self, auth_service, store, settings):
        auth_service.settings = settings.model_copy(update={"allow_legacy_password_hashes": True})
        user = store.create_user("henry", "henry@example.com")
        legacy = base64.b64encode(hashlib.sha256(PASSWORD.encode()).digest()).decode()
        store.save_password(user.id, legacy, None, LEGACY_SHA256_ALGO)

        await _login(auth_service, "henry")

        assert store.get_password_record(user.id).password_algo == ARGON2ID_ALGO
        # the migrated credential works once legacy support is switched off
        auth_service.settings = settings
        await _login(auth_service, "henry")

    async def test_legacy_hash_rejected_by_default(self, auth_service, store):
        user = store.create_user("ivan", "ivan@example.com")
        legacy = base64.b64encode(hashlib.sha256(PASSWORD.encode()).digest()).decode()
        store.save_password(user.id, legacy, None, LEGACY_SHA256_ALGO)

        with pytest.raises(InvalidCredentialsError):
            await _login(auth_service, "ivan")

    async def test_token_issue_failure_rolls_back_session(self, auth_service, make_user, token_service, monkeypatch):
        user = make_user("jane")

        def boom(*args, **kwargs):
            raise ServerError("Unable to issue tokens")

        monkeypatch.setattr(token_service, "issue_pair", boom)
        with pytest.raises(ServerError):
            await _login(auth_service, "jane")
        assert auth_service.sessions.list_active_sessions(user.id) == []

    async def test_timeout_fails_closed(self, auth_service, make_user, session_manager, monkeypatch):
        make_user("kate")

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        monkeypatch.setattr(session_manager, "create_session", slow)
        with pytest.raises(ServerError):
            await _login(auth_service, "kate", timeout=0.05)


class TestRefreshAndLogout:
    async def test_refresh_rotates(self, auth_service, make_user):
        make_user("liam")
        result = await _login(auth_service, "liam")

        pair = await auth_service.refresh(result.tokens.refresh_token, ip_address=IP)

        assert pair.refresh_token != result.tokens.refresh_token

    async def test_reuse_terminates_session(self, auth_service, make_user, session_manager):
        user = make_user("mia")
        result = await _login(auth_service, "mia")
        await auth_service.refresh(result.tokens.refresh_token)

        with pytest.raises(TokenReuseDetectedError):
            await auth_service.refresh(result.tokens.refresh_token)
        assert session_manager.list_active_sessions(user.id) == []

    async def test_refresh_after_logout_fails(self, auth_service, make_user):
        make_user("noah")
        result = await _login(auth_service, "noah")

        assert await auth_service.logout(result.session.id, access_token=result.tokens.access_token)

        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(result.tokens.refresh_token)
        with pytest.raises(SessionExpiredError):
            await auth_service.authenticate(result.session.id, result.tokens.access_token)

    async def test_logout_denylists_access_token(self, auth_service, make_user, token_service):
        make_user("olga")
        result = await _login(auth_service, "olga")

        await auth_service.logout(result.session.id, access_token=result.tokens.access_token)

        with pytest.raises(TokenRevokedError):
            await token_service.validate_access_token(result.tokens.access_token)

    async def test_refresh_with_expired_session(self, auth_service, make_user, clock):
        make_user("paul")
        result = await _login(auth_service, "paul")
        clock.advance(hours=8)

        with pytest.raises(SessionExpiredError):
            await auth_service.refresh(result.tokens.refresh_token)


class TestAuthenticate:
    async def test_happy_path_with_permission(self, auth_service, make_user, permission_resolver):
        user = make_user("quinn")
        permission_resolver.create_permission("reports.view", "reports", "view")
        await permission_resolver.grant_user_permission(user.id, "reports.view")
        result = await _login(auth_service, "quinn")

        context = await auth_service.authenticate(
            result.session.id,
            result.tokens.access_token,
            ip_address=IP,
            user_agent=UA,
            permission="reports.view",
        )

        assert context.user.id == user.id
        assert context.claims.session_id == result.session.id

    async def test_missing_permission(self, auth_service, make_user, permission_resolver):
        make_user("rita")
        permission_resolver.create_permission("reports.manage", "reports", "manage")
        result = await _login(auth_service, "rita")

        with pytest.raises(PermissionDeniedError):
            await auth_service.authenticate(
                result.session.id, result.tokens.access_token, ip_address=IP, user_agent=UA, permission="reports.manage"
            )

    async def test_token_from_other_session_rejected(self, auth_service, make_user):
        make_user("sam")
        first = await _login(auth_service, "sam")
        second = await _login(auth_service, "sam")

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(first.session.id, second.tokens.access_token, ip_address=IP, user_agent=UA)

    async def test_strict_mode_rejects_suspicious(self, auth_service, make_user):
        make_user("tess")
        result = await _login(auth_service, "tess")

        # lenient by default
        await auth_service.authenticate(result.session.id, result.tokens.access_token, ip_address="198.51.100.9", user_agent=UA)
        with pytest.raises(SessionSuspiciousError):
            await auth_service.authenticate(
                result.session.id,
                result.tokens.access_token,
                ip_address="198.51.100.9",
                user_agent=UA,
                reject_suspicious=True,
            )


class TestChangePassword:
    async def test_change_password_revokes_everything_else(self, auth_service, make_user, session_manager):
        user = make_user("uma")
        current = await _login(auth_service, "uma")
        other = await _login(auth_service, "uma")

        pair = await auth_service.change_password(
            user.id, PASSWORD, "An0ther-Passphrase", current_session_id=current.session.id
        )

        assert pair is not None
        assert [s.id for s in session_manager.list_active_sessions(user.id)] == [current.session.id]
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(current.tokens.refresh_token)
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(other.tokens.refresh_token)
        await auth_service.refresh(pair.refresh_token)

        with pytest.raises(InvalidCredentialsError):
            await _login(auth_service, "uma")
        await _login(auth_service, "uma", password="An0ther-Passphrase")

    async def test_wrong_current_password(self, auth_service, make_user, auditor, audit_sink):
        user = make_user("vera")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(user.id, "nope-nope", "An0ther-Passphrase")
        await auditor.drain()
        assert "PASSWORD_CHANGE_FAILED" in audit_sink.actions()


class TestRequestDeadline:
    async def test_refresh_finishes_once_rotation_is_written(self, auth_service, make_user, auditor, store, monkeypatch):
        user = make_user("xena")
        result = await _login(auth_service, "xena")
        real_record = auditor.record

        async def slow_after_rotation(action, resource, **kwargs):
            if action == "TOKEN_REFRESHED":
                await asyncio.sleep(0.3)
            await real_record(action, resource, **kwargs)

        monkeypatch.setattr(auditor, "record", slow_after_rotation)
        pair = await auth_service.refresh(result.tokens.refresh_token, ip_address=IP, timeout=0.05)

        assert store.get_refresh_token(result.tokens.refresh_token).replaced_by_token == pair.refresh_token
        # the delivered token is the live one, so the client's next refresh is not reuse
        await auth_service.refresh(pair.refresh_token, ip_address=IP)
        assert [s.id for s in auth_service.sessions.list_active_sessions(user.id)] == [result.session.id]

    async def test_login_finishes_once_session_is_written(
        self, auth_service, make_user, auditor, token_service, monkeypatch
    ):
        user = make_user("yara")
        real_record = auditor.record

        async def slow_after_session(action, resource, **kwargs):
            if action == "SESSION_CREATED":
                await asyncio.sleep(0.3)
            await real_record(action, resource, **kwargs)

        monkeypatch.setattr(auditor, "record", slow_after_session)
        result = await _login(auth_service, "yara", timeout=0.05)

        assert token_service.get_refresh_token(result.tokens.refresh_token).session_id == result.session.id
        assert [s.id for s in auth_service.sessions.list_active_sessions(user.id)] == [result.session.id]

    async def test_login_expiring_before_commit_writes_nothing(
        self, auth_service, make_user, session_manager, store, monkeypatch
    ):
        user = make_user("zoe")
        earlier = await _login(auth_service, "zoe")

        class SlowGeolocator:
            async def resolve(self, ip):
                await asyncio.sleep(1)
                return "Somewhere"

        monkeypatch.setattr(session_manager, "geolocator", SlowGeolocator())
        with pytest.raises(ServerError):
            await _login(auth_service, "zoe", timeout=0.05)

        assert [s.id for s in session_manager.list_active_sessions(user.id)] == [earlier.session.id]
        assert len(store.list_refresh_tokens(user_id=user.id)) == 1

    async def test_spent_budget_leaves_old_token_usable(self, token_service, make_user, store):
        user = make_user()
        pair = token_service.issue_pair(user)
        deadline = RequestDeadline(0.01, "refresh")
        await asyncio.sleep(0.02)

        with pytest.raises(ServerError):
            await token_service.refresh(pair.refresh_token, before_commit=deadline.commit)

        assert not deadline.committed
        assert store.get_refresh_token(pair.refresh_token).revoked is False
        await token_service.refresh(pair.refresh_token)
