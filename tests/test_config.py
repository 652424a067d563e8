"""Tests for settings loading and derived values."""

import pytest
from pydantic import ValidationError

from gradauth.config import Settings, get_settings, reset_settings_cache
from gradauth.logging import _redact_pii
from gradauth.service.token_verifier import TokenVerifier


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.session_cookie_name == "gradauth_session"
        assert settings.preview_cookie_name == "gradauth_preview"
        assert settings.full_session_ttl_seconds == 7 * 86400
        assert settings.oauth_session_ttl_seconds == 7 * 86400
        assert settings.preview_session_ttl_seconds == 30 * 86400
        assert settings.default_member_role == "member"

    def test_from_env_reads_variables(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_PROJECT_ID", "demo-project")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")
        monkeypatch.setenv("PREVIEW_SESSION_TTL_SECONDS", "60")

        settings = Settings.from_env()

        assert settings.provider_project_id == "demo-project"
        assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]
        assert settings.preview_session_ttl_seconds == 60
        assert settings.key_refetch_min_interval_seconds == 60

    def test_verifier_built_from_settings(self):
        settings = Settings(
            provider_issuer_prefix="https://issuer.test/",
            key_refetch_min_interval_seconds=30,
        )

        verifier = TokenVerifier.from_settings(settings)

        assert verifier.issuer_prefix == "https://issuer.test/"
        assert verifier.min_refetch_seconds == 30

    def test_blank_project_id_is_none(self):
        assert Settings(provider_project_id="  ").provider_project_id is None

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(full_session_ttl_seconds=0)

    def test_redirect_uri(self):
        settings = Settings(app_base_url="https://app.test/")

        assert settings.oauth_redirect_uri("github") == (
            "https://app.test/v1/auth/oauth/github/callback"
        )

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOGIN_URL", "/signin")
        reset_settings_cache()

        assert get_settings().login_url == "/signin"
        reset_settings_cache()


class TestRedaction:
    def test_identity_fields_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "email": "ada@example.com", "session_id": "abcdef123456", "error_code": "invalid_token"},
        )

        assert event["email"] == "ad***om"
        assert event["session_id"] == "ab***56"
        assert event["error_code"] == "invalid_token"
