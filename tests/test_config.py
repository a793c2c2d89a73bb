import pytest
from pydantic import ValidationError

from warden.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("SESSION_TTL_HOURS", "12")
    monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "0")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    settings = Settings.from_env()
    assert settings.session_ttl_hours == 12
    assert settings.max_concurrent_sessions == 0
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)
    assert settings.session_ttl_hours == 24
    assert settings.remembered_session_ttl_days == 30
    assert settings.max_concurrent_sessions == 5
    assert settings.password_reset_ttl_minutes == 60
    assert settings.email_verification_ttl_hours == 24
    assert settings.session_cleanup_interval_seconds == 3600


@pytest.mark.parametrize("field", ["session_ttl_hours", "password_reset_ttl_minutes"])
def test_non_positive_ttl_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_negative_session_limit_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, max_concurrent_sessions=-1)


def test_password_bounds_checked():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, password_min_length=20, password_max_length=10)


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("TOTP_ISSUER", "Acme")
    assert get_settings().totp_issuer == "Acme"
    monkeypatch.setenv("TOTP_ISSUER", "Other")
    assert get_settings().totp_issuer == "Acme"
    reset_settings_cache()
    assert get_settings().totp_issuer == "Other"
    reset_settings_cache()
