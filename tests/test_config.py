import os
import stat

import pytest
from pydantic import ValidationError

from reportguard.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self, settings):
        assert settings.session_timeout_minutes == 480
        assert settings.remember_me_timeout_minutes == 1440
        assert settings.max_concurrent_sessions == 3
        assert settings.mfa_lockout_threshold == 5
        assert settings.mfa_lockout_minutes == 15
        assert settings.mfa_backup_code_count == 10
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.allow_legacy_password_hashes is False

    def test_production_argon2_defaults(self):
        defaults = Settings.model_fields
        assert defaults["argon2_time_cost"].default == 4
        assert defaults["argon2_memory_cost_kib"].default == 65536
        assert defaults["argon2_parallelism"].default == 4

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "5")
        monkeypatch.setenv("ALLOW_LEGACY_PASSWORD_HASHES", "true")

        settings = Settings.from_env()

        assert settings.max_concurrent_sessions == 5
        assert settings.allow_legacy_password_hashes is True

    def test_short_pepper_rejected(self):
        with pytest.raises(ValidationError):
            Settings(password_pepper="short", jwt_secret="x" * 40)

    def test_short_salt_rejected(self):
        with pytest.raises(ValidationError):
            Settings(password_pepper="p" * 20, jwt_secret="x" * 40, argon2_salt_length=8)

    def test_non_positive_limit_rejected(self):
        with pytest.raises(ValidationError):
            Settings(password_pepper="p" * 20, jwt_secret="x" * 40, max_concurrent_sessions=0)

    def test_generated_secrets_persist(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings()
        second = Settings()

        assert first.password_pepper == second.password_pepper
        assert first.jwt_secret == second.jwt_secret
        mode = stat.S_IMODE(os.stat(tmp_path / ".password_pepper").st_mode)
        assert mode == 0o600

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("MFA_LOCKOUT_MINUTES", "30")
        reset_settings_cache()
        assert get_settings().mfa_lockout_minutes == 30
        reset_settings_cache()
