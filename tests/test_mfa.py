"""Unit tests for TOTP MFA enrollment, verification and lockout."""

import pytest

from reportguard.service.errors import (
    InvalidCredentialsError,
    MfaInvalidCodeError,
    MfaLockedError,
    MfaStateError,
)
from reportguard.service.mfa import MfaState, generate_totp, verify_totp

PASSWORD = "Correct-Horse-42"


def _code(secret, clock, offset_steps=0):
    return generate_totp(secret, clock.now().timestamp() + offset_steps * 30)


def _wrong_code(secret, clock):
    valid = {_code(secret, clock, step) for step in (-1, 0, 1)}
    for candidate in ("000000", "111111", "222222", "333333"):
        if candidate not in valid:
            return candidate
    raise AssertionError("unreachable")


async def _enroll(mfa_manager, user, clock):
    setup = await mfa_manager.generate_setup(user.id, user.username)
    assert await mfa_manager.enable(user.id, _code(setup.secret, clock))
    return setup


class TestTotpAlgorithm:
    def test_rfc6238_reference_vector(self):
        # RFC 6238 appendix B, SHA1 seed "12345678901234567890"
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert generate_totp(secret, 59, digits=8) == "94287082"
        assert generate_totp(secret, 1111111109, digits=8) == "07081804"

    def test_window_accepts_adjacent_steps(self, clock):
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        now = clock.now()

        assert verify_totp(secret, _code(secret, clock, -1), at=now)
        assert verify_totp(secret, _code(secret, clock, 1), at=now)
        assert not verify_totp(secret, _code(secret, clock, 3), at=now)

    def test_rejects_non_numeric(self, clock):
        assert not verify_totp("GEZDGNBVGY3TQOJQ", "abcdef", at=clock.now())


class TestEnrollment:
    async def test_setup_then_enable(self, mfa_manager, make_user, clock, auditor, audit_sink):
        user = make_user()

        setup = await mfa_manager.generate_setup(user.id, user.username)
        assert mfa_manager.status(user.id) == MfaState.PENDING_SETUP
        assert setup.provisioning_uri.startswith("otpauth://totp/MultiDeptReportingTool:")
        assert f"secret={setup.secret}" in setup.provisioning_uri
        assert len(setup.backup_codes) == 10
        assert all(len(code) == 8 for code in setup.backup_codes)

        assert await mfa_manager.enable(user.id, _code(setup.secret, clock))
        assert mfa_manager.status(user.id) == MfaState.ENABLED
        await auditor.drain()
        assert "MFA_ENABLED" in audit_sink.actions()

    async def test_secret_is_stored_encrypted(self, mfa_manager, make_user, store):
        user = make_user()
        setup = await mfa_manager.generate_setup(user.id, user.username)

        enrollment = store.get_mfa_enrollment(user.id)
        assert enrollment.encrypted_secret != setup.secret
        assert setup.backup_codes[0] not in enrollment.encrypted_backup_codes

    async def test_enable_failure_does_not_count_toward_lockout(self, mfa_manager, make_user, clock, store):
        user = make_user()
        setup = await mfa_manager.generate_setup(user.id, user.username)

        for _ in range(7):
            assert not await mfa_manager.enable(user.id, _wrong_code(setup.secret, clock))

        assert store.get_mfa_enrollment(user.id).failed_attempts == 0
        assert await mfa_manager.enable(user.id, _code(setup.secret, clock))

    async def test_setup_rejected_when_enabled(self, mfa_manager, make_user, clock):
        user = make_user()
        await _enroll(mfa_manager, user, clock)

        with pytest.raises(MfaStateError):
            await mfa_manager.generate_setup(user.id, user.username)

    async def test_pending_setup_can_be_regenerated(self, mfa_manager, make_user, clock):
        user = make_user()
        first = await mfa_manager.generate_setup(user.id, user.username)
        second = await mfa_manager.generate_setup(user.id, user.username)

        assert first.secret != second.secret
        assert mfa_manager.status(user.id) == MfaState.PENDING_SETUP
        assert await mfa_manager.enable(user.id, _code(second.secret, clock))

    async def test_enable_without_setup(self, mfa_manager, make_user):
        user = make_user()

        with pytest.raises(MfaStateError):
            await mfa_manager.enable(user.id, "123456")

    async def test_verify_requires_enabled(self, mfa_manager, make_user):
        user = make_user()

        with pytest.raises(MfaStateError):
            await mfa_manager.verify_totp(user.id, "123456")


class TestLockout:
    async def test_five_failures_lock_for_fifteen_minutes(self, mfa_manager, make_user, clock, auditor, audit_sink):
        user = make_user()
        setup = await _enroll(mfa_manager, user, clock)
        wrong = _wrong_code(setup.secret, clock)

        for _ in range(5):
            assert not await mfa_manager.verify_totp(user.id, wrong)
        assert mfa_manager.status(user.id) == MfaState.LOCKED

        # a correct code is refused while locked
        with pytest.raises(MfaLockedError) as excinfo:
            await mfa_manager.verify_totp(user.id, _code(setup.secret, clock))
        assert excinfo.value.detail["locked_until"]
        await auditor.drain()
        assert "MFA_VERIFY_BLOCKED" in audit_sink.actions()

        clock.advance(minutes=14, seconds=59)
        with pytest.raises(MfaLockedError):
            await mfa_manager.verify_totp(user.id, _code(setup.secret, clock))

        clock.advance(seconds=1)
        assert await mfa_manager.verify_totp(user.id, _code(setup.secret, clock))
        assert mfa_manager.status(user.id) == MfaState.ENABLED

    async def test_success_resets_counter(self, mfa_manager, make_user, clock, store):
        user = make_user()
        setup = await _enroll(mfa_manager, user, clock)
        wrong = _wrong_code(setup.secret, clock)

        for _ in range(4):
            await mfa_manager.verify_totp(user.id, wrong)
        assert store.get_mfa_enrollment(user.id).failed_attempts == 4

        assert await mfa_manager.verify_totp(user.id, _code(setup.secret, clock))
        assert store.get_mfa_enrollment(user.id).failed_attempts == 0

        # four more failures are not enough to lock
        for _ in range(4):
            await mfa_manager.verify_totp(user.id, wrong)
        assert mfa_manager.status(user.id) == MfaState.ENABLED

    async def test_backup_code_failures_count_too(self, mfa_manager, make_user, clock):
        user = make_user()
        await _enroll(mfa_manager, user, clock)

        for _ in range(5):
            assert not await mfa_manager.verify_backup_code(user.id, "zzzzzzzz")

        with pytest.raises(MfaLockedError):
            await mfa_manager.verify_backup_code(user.id, "zzzzzzzz")


class TestBackupCodes:
    async def test_code_is_single_use(self, mfa_manager, make_user, clock, auditor, audit_sink):
        user = make_user()
        setup = await _enroll(mfa_manager, user, clock)
        code = setup.backup_codes[0]

        assert mfa_manager.remaining_backup_codes(user.id) == 10
        assert await mfa_manager.verify_backup_code(user.id, code)
        assert mfa_manager.remaining_backup_codes(user.id) == 9
        assert not await mfa_manager.verify_backup_code(user.id, code)
        assert mfa_manager.remaining_backup_codes(user.id) == 9

        await auditor.drain()
        used = audit_sink.find("MFA_BACKUP_CODE_USED")
        assert used[0]["details"]["remaining_codes"] == 9

    async def test_code_normalization(self, mfa_manager, make_user, clock):
        user = make_user()
        setup = await _enroll(mfa_manager, user, clock)
        code = setup.backup_codes[1]

        assert await mfa_manager.verify_backup_code(user.id, f" {code[:4].upper()}-{code[4:]} ")

    async def test_verify_any_routes_by_shape(self, mfa_manager, make_user, clock):
        user = make_user()
        setup = await _enroll(mfa_manager, user, clock)

        assert await mfa_manager.verify_any(user.id, _code(setup.secret, clock))
        assert await mfa_manager.verify_any(user.id, setup.backup_codes[2])
        assert mfa_manager.remaining_backup_codes(user.id) == 9

    async def test_regenerate_replaces_all(self, mfa_manager, make_user, clock):
        user = make_user()
        setup = await _enroll(mfa_manager, user, clock)

        fresh = await mfa_manager.regenerate_backup_codes(user.id)

        assert len(fresh) == 10
        assert not await mfa_manager.verify_backup_code(user.id, setup.backup_codes[0])
        assert await mfa_manager.verify_backup_code(user.id, fresh[0])


class TestDisable:
    async def test_requires_password_and_code(self, mfa_manager, make_user, clock):
        user = make_user(password=PASSWORD)
        setup = await _enroll(mfa_manager, user, clock)

        with pytest.raises(InvalidCredentialsError):
            await mfa_manager.disable(user.id, "wrong-password", _code(setup.secret, clock))
        with pytest.raises(MfaInvalidCodeError):
            await mfa_manager.disable(user.id, PASSWORD, _wrong_code(setup.secret, clock))
        assert mfa_manager.status(user.id) == MfaState.ENABLED

        await mfa_manager.disable(user.id, PASSWORD, _code(setup.secret, clock))
        assert mfa_manager.status(user.id) == MfaState.NOT_ENROLLED
        assert mfa_manager.remaining_backup_codes(user.id) == 0

    async def test_disable_accepts_backup_code(self, mfa_manager, make_user, clock):
        user = make_user(password=PASSWORD)
        setup = await _enroll(mfa_manager, user, clock)

        await mfa_manager.disable(user.id, PASSWORD, setup.backup_codes[0])
        assert not mfa_manager.is_enabled(user.id)

    async def test_disable_when_not_enrolled(self, mfa_manager, make_user):
        user = make_user(password=PASSWORD)

        with pytest.raises(MfaStateError):
            await mfa_manager.disable(user.id, PASSWORD, "123456")
