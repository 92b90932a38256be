import pytest
from cryptography.fernet import Fernet

from core import config as config_module
from core.security import decrypt, encrypt


def _reset_settings_cache():
    config_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_cache_after():
    yield
    _reset_settings_cache()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("ENCRYPTION_KEY", "real-encryption-key")
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.real")
    _reset_settings_cache()

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_encryption_key_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("ENCRYPTION_KEY", config_module.DEFAULT_ENCRYPTION_KEY)
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.real")
    _reset_settings_cache()

    with pytest.raises(ValueError, match="default encryption key"):
        config_module.get_settings()


def test_non_local_requires_sendgrid_key(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("ENCRYPTION_KEY", "real-encryption-key")
    monkeypatch.setenv("SENDGRID_API_KEY", "")
    _reset_settings_cache()

    with pytest.raises(ValueError, match="SendGrid"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("ENCRYPTION_KEY", config_module.DEFAULT_ENCRYPTION_KEY)
    monkeypatch.setenv("SENDGRID_API_KEY", "")
    _reset_settings_cache()

    settings = config_module.get_settings()
    assert settings.app_env == "local"


def test_access_token_round_trip_with_configured_key(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())
    _reset_settings_cache()

    ciphertext = encrypt("shpat_0123456789abcdef")
    assert ciphertext != "shpat_0123456789abcdef"
    assert decrypt(ciphertext) == "shpat_0123456789abcdef"


def test_foreign_ciphertext_is_rejected(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("ENCRYPTION_KEY", config_module.DEFAULT_ENCRYPTION_KEY)
    _reset_settings_cache()

    foreign = Fernet(Fernet.generate_key()).encrypt(b"shpat_other").decode()
    with pytest.raises(ValueError, match="could not be decrypted"):
        decrypt(foreign)
