from __future__ import annotations

import secrets
import time
from typing import Callable, Optional

from gradauth.logging import get_logger
from gradauth.storage.models import OAuthSession, PreviewSession
from gradauth.storage.redis_cache import SessionCache

logger = get_logger(__name__)

OAUTH_SESSION_PREFIX = "oauth_session:"
PREVIEW_SESSION_PREFIX = "preview_session:"


def new_session_id() -> str:
    """256 bits of randomness, hex encoded."""
    return secrets.token_hex(32)


class LightweightSessions:
    """Typed Preview and OAuth session records over the raw session cache.

    The store TTL evicts entries eventually; the absolute ``expires_at`` kept
    inside each record is checked again on every read so an entry that
    outlives its TTL on a lagging node is still treated as gone.
    """

    def __init__(
        self,
        cache: SessionCache,
        *,
        oauth_ttl_seconds: int,
        preview_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.oauth_ttl_seconds = oauth_ttl_seconds
        self.preview_ttl_seconds = preview_ttl_seconds
        self._clock = clock

    async def create_preview(self, email: str) -> PreviewSession:
        now = self._clock()
        record = PreviewSession(
            id=new_session_id(),
            email=email.strip(),
            created_at=now,
            expires_at=now + self.preview_ttl_seconds,
        )
        await self.cache.put(
            PREVIEW_SESSION_PREFIX + record.id,
            record.to_json(),
            ttl_seconds=self.preview_ttl_seconds,
        )
        logger.info("preview_session_created", session_id=record.id)
        return record

    async def get_preview(self, session_id: str) -> Optional[PreviewSession]:
        if not session_id:
            return None
        raw = await self.cache.get(PREVIEW_SESSION_PREFIX + session_id)
        if raw is None:
            return None
        try:
            record = PreviewSession.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("preview_session_corrupt", session_id=session_id, error=str(exc))
            return None
        if record.expires_at <= self._clock():
            return None
        return record

    async def delete_preview(self, session_id: str) -> None:
        if session_id:
            await self.cache.delete(PREVIEW_SESSION_PREFIX + session_id)

    async def create_oauth(
        self,
        *,
        provider: str,
        provider_id: str,
        email: str,
        email_verified: bool,
        name: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> OAuthSession:
        now = self._clock()
        record = OAuthSession(
            id=new_session_id(),
            provider=provider,
            provider_id=provider_id,
            email=email,
            email_verified=email_verified,
            created_at=now,
            expires_at=now + self.oauth_ttl_seconds,
            name=name,
            picture=picture,
        )
        await self.cache.put(
            OAUTH_SESSION_PREFIX + record.id,
            record.to_json(),
            ttl_seconds=self.oauth_ttl_seconds,
        )
        logger.info("oauth_session_created", session_id=record.id, provider=provider)
        return record

    async def get_oauth(self, session_id: str) -> Optional[OAuthSession]:
        if not session_id:
            return None
        raw = await self.cache.get(OAUTH_SESSION_PREFIX + session_id)
        if raw is None:
            return None
        try:
            record = OAuthSession.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("oauth_session_corrupt", session_id=session_id, error=str(exc))
            return None
        if record.expires_at <= self._clock():
            return None
        return record

    async def delete_oauth(self, session_id: str) -> None:
        if session_id:
            await self.cache.delete(OAUTH_SESSION_PREFIX + session_id)


__all__ = [
    "LightweightSessions",
    "OAUTH_SESSION_PREFIX",
    "PREVIEW_SESSION_PREFIX",
    "new_session_id",
]
