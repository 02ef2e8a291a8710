"""Tests for environment-driven settings."""

import pydantic
import pytest

from backoffice_auth.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_documented_names(monkeypatch):
    monkeypatch.setenv("STEP_UP_GRACE_SECONDS", "300")
    monkeypatch.setenv("WEBAUTHN_ORIGINS", "https://admin.example.com/, https://ops.example.com")
    monkeypatch.setenv("ENCRYPTION_KEYS_LEGACY", "old-key-1,,old-key-2")
    settings = Settings.from_env()
    assert settings.step_up_grace_seconds == 300
    assert settings.webauthn_origins == ["https://admin.example.com", "https://ops.example.com"]
    assert settings.encryption_keys_legacy == ["old-key-1", "old-key-2"]


def test_defaults_match_policy():
    settings = Settings(signing_secret="x" * 40)
    assert settings.step_up_grace_seconds == 600
    assert settings.session_duration_days == 30
    assert settings.session_absolute_lifetime_days == 45
    assert settings.lockout_threshold == 10


def test_absolute_lifetime_cannot_undercut_sliding():
    with pytest.raises(pydantic.ValidationError):
        Settings(signing_secret="x" * 40, session_duration_days=60)


def test_non_positive_values_are_rejected():
    with pytest.raises(pydantic.ValidationError):
        Settings(signing_secret="x" * 40, capability_token_ttl_seconds=0)


def test_empty_origin_list_is_rejected():
    with pytest.raises(pydantic.ValidationError):
        Settings(signing_secret="x" * 40, webauthn_origins="")


def test_missing_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings()
    second = Settings()
    assert len(first.signing_secret) >= 32
    assert first.signing_secret == second.signing_secret
    assert (tmp_path / ".auth_secret").read_text() == first.signing_secret


def test_settings_are_cached_until_reset(monkeypatch):
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "4")
    reset_settings_cache()
    cached = get_settings()
    assert cached.lockout_threshold == 4
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "5")
    assert get_settings() is cached
    reset_settings_cache()
    assert get_settings().lockout_threshold == 5
    reset_settings_cache()


def test_redis_fallback_flag():
    assert Settings(signing_secret="x" * 40, test_mode=True).redis_fallback_allowed
    assert not Settings(signing_secret="x" * 40).redis_fallback_allowed
