from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gradauth.config import Settings, get_settings, reset_settings_cache
from gradauth.logging import get_logger
from gradauth.service.authority import SessionAuthority
from gradauth.service.graduation import GraduationEngine
from gradauth.service.lightweight import LightweightSessions
from gradauth.service.oauth import OAuthFlow
from gradauth.service.resolver import IdentityResolver
from gradauth.service.token_verifier import TokenVerifier
from gradauth.storage.memory import MemorySessionAuthority, MemorySessionCache
from gradauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        authority: Optional[SessionAuthority] = None,
        cache: Optional[Union[RedisCache, MemorySessionCache]] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_authority=self.settings.use_memory_authority,
            test_mode=self.settings.test_mode,
        )

        if authority is None:
            if not self.settings.use_memory_authority:
                raise RuntimeError(
                    "A session authority must be supplied; set USE_MEMORY_AUTHORITY=true "
                    "for the in-process development store."
                )
            authority = MemorySessionAuthority()
            logger.warning("runtime_memory_authority_enabled")
        self.authority = authority

        self.cache = cache if cache is not None else self._connect_cache()

        self.verifier = TokenVerifier.from_settings(self.settings)
        self.sessions = LightweightSessions(
            self.cache,
            oauth_ttl_seconds=self.settings.oauth_session_ttl_seconds,
            preview_ttl_seconds=self.settings.preview_session_ttl_seconds,
        )
        self.resolver = IdentityResolver(
            self.authority,
            self.sessions,
            self.verifier,
            project_id=self.settings.provider_project_id,
            session_cookie_name=self.settings.session_cookie_name,
            preview_cookie_name=self.settings.preview_cookie_name,
        )
        self.graduation = GraduationEngine(
            self.authority,
            self.sessions,
            self.verifier,
            project_id=self.settings.provider_project_id,
            default_tenant_id=self.settings.default_tenant_id,
            default_member_role=self.settings.default_member_role,
            session_ttl_seconds=self.settings.full_session_ttl_seconds,
        )
        self.oauth = OAuthFlow(
            self.settings,
            self.cache,
            self.sessions,
            self.authority,
            self.graduation,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            provider_tokens_enabled=bool(self.settings.provider_project_id),
        )

    def _connect_cache(self) -> Union[RedisCache, MemorySessionCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for lightweight sessions and OAuth state; start Redis "
                "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; lightweight sessions "
                "and OAuth state are in-memory only."
            ),
            mode=fallback_mode,
        )
        return MemorySessionCache()

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Runtime) -> Runtime:
    """Install a runtime built with an external session authority."""
    global runtime
    with _runtime_lock:
        runtime = new_runtime
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
