from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gradauth.logging import get_logger

logger = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the graduated auth service."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks for the session cache and authority.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    use_memory_authority: bool = env_field(
        False,
        "USE_MEMORY_AUTHORITY",
        description="Back the session authority with the in-process store (dev/test only).",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Identity provider token verification
    provider_project_id: str | None = env_field(None, "PROVIDER_PROJECT_ID")
    provider_certs_url: str = env_field(
        "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com",
        "PROVIDER_CERTS_URL",
    )
    provider_issuer_prefix: str = env_field(
        "https://securetoken.google.com/", "PROVIDER_ISSUER_PREFIX"
    )
    key_fetch_timeout_seconds: float = env_field(5.0, "KEY_FETCH_TIMEOUT_SECONDS")
    default_key_cache_seconds: int = env_field(
        3600,
        "DEFAULT_KEY_CACHE_SECONDS",
        description="Key cache lifetime when the key endpoint sends no max-age.",
    )
    token_leeway_seconds: int = env_field(60, "TOKEN_LEEWAY_SECONDS")
    key_refetch_min_interval_seconds: int = env_field(
        60,
        "KEY_REFETCH_MIN_INTERVAL_SECONDS",
        description="Minimum key snapshot age before an unknown kid may force a refetch.",
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_path: str = env_field("/v1/auth/oauth/{provider}/callback", "OAUTH_REDIRECT_PATH")
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    # Cookies
    session_cookie_name: str = env_field("gradauth_session", "SESSION_COOKIE_NAME")
    preview_cookie_name: str = env_field("gradauth_preview", "PREVIEW_COOKIE_NAME")
    oauth_state_cookie_name: str = env_field(
        "gradauth_oauth_state", "OAUTH_STATE_COOKIE_NAME"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Session lifetimes
    full_session_ttl_seconds: int = env_field(7 * DAY_SECONDS, "FULL_SESSION_TTL_SECONDS")
    oauth_session_ttl_seconds: int = env_field(7 * DAY_SECONDS, "OAUTH_SESSION_TTL_SECONDS")
    preview_session_ttl_seconds: int = env_field(
        30 * DAY_SECONDS, "PREVIEW_SESSION_TTL_SECONDS"
    )

    # Tenancy and recovery
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    default_member_role: str = env_field("member", "DEFAULT_MEMBER_ROLE")
    login_url: str = env_field("/auth/login", "LOGIN_URL")
    graduate_url: str = env_field("/auth/graduate", "GRADUATE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "full_session_ttl_seconds",
        "oauth_session_ttl_seconds",
        "preview_session_ttl_seconds",
        "oauth_state_ttl_seconds",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session TTLs must be positive")
        return value

    @field_validator("provider_project_id")
    @classmethod
    def _blank_project_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    def oauth_redirect_uri(self, provider: str) -> str:
        path = self.oauth_redirect_path.format(provider=provider)
        return f"{self.app_base_url.rstrip('/')}{path}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
