"""
Tests for loginguard/common/config.py and loginguard/common/encoding.py
"""

import pytest
from pydantic import ValidationError

from loginguard.common.config import U2FPluginConfig, ServiceSettings, DEFAULT_HELP_URL
from loginguard.common.encoding import b64_encode, b64_decode


class TestU2FPluginConfig:
    """Test U2F method configuration"""

    def test_defaults(self):
        config = U2FPluginConfig()

        assert config.allow_entry_batching is True
        assert config.help_url == DEFAULT_HELP_URL
        assert config.app_id is None
        assert config.challenge_ttl_seconds is None
        assert config.attestation_ca_dir is None

    def test_app_id_trailing_slash_removed(self):
        assert U2FPluginConfig(app_id="https://example.com/").app_id == "https://example.com"

    def test_blank_app_id_is_none(self):
        assert U2FPluginConfig(app_id="  ").app_id is None

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValidationError):
            U2FPluginConfig(challenge_ttl_seconds=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LOGINGUARD_U2F_ALLOW_ENTRY_BATCHING", "no")
        monkeypatch.setenv("LOGINGUARD_U2F_APP_ID", "https://login.example.com")
        monkeypatch.setenv("LOGINGUARD_U2F_CHALLENGE_TTL", "120")
        monkeypatch.delenv("LOGINGUARD_U2F_HELP_URL", raising=False)
        monkeypatch.delenv("LOGINGUARD_U2F_ATTESTATION_CA_DIR", raising=False)

        config = U2FPluginConfig.from_env()

        assert config.allow_entry_batching is False
        assert config.app_id == "https://login.example.com"
        assert config.challenge_ttl_seconds == 120
        assert config.help_url == DEFAULT_HELP_URL

    def test_from_env_ignores_bad_ttl(self, monkeypatch):
        monkeypatch.setenv("LOGINGUARD_U2F_CHALLENGE_TTL", "soon")

        assert U2FPluginConfig.from_env().challenge_ttl_seconds is None


class TestServiceSettings:
    """Test HTTP service settings"""

    def test_defaults(self):
        settings = ServiceSettings()

        assert settings.session_backend == "memory"
        assert settings.jwt_algorithm == "HS256"
        assert settings.allowed_origins == []
        assert settings.registry_cache_size == 16

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LOGINGUARD_SESSION_BACKEND", "REDIS")
        monkeypatch.setenv("LOGINGUARD_SESSION_TTL", "60")
        monkeypatch.setenv("LOGINGUARD_JWT_SECRET_KEY", "s3cret")
        monkeypatch.setenv("LOGINGUARD_ALLOWED_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("LOGINGUARD_REGISTRY_CACHE_SIZE", "4")

        settings = ServiceSettings.from_env()

        assert settings.session_backend == "redis"
        assert settings.session_ttl_seconds == 60
        assert settings.jwt_secret_key == "s3cret"
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.registry_cache_size == 4

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            ServiceSettings(session_backend="memcached")


class TestEncoding:
    """Test base64 helpers"""

    def test_standard_base64(self):
        assert b64_encode(b"\xfb\xff") == "+/8="
        assert b64_decode("+/8=") == b"\xfb\xff"

    def test_standard_base64_rejects_garbage(self):
        with pytest.raises(ValueError):
            b64_decode("not base64!")
