"""Per-request identity resolution.

Sources are consulted in a fixed order and the first that yields an identity
wins:

1. ``Authorization: Bearer`` header: durable session token, then provider
   ID token.
2. Session cookie: durable session token, provider ID token, then the
   lightweight OAuth session it names.
3. Preview cookie: lightweight preview session.
4. Nothing matched: anonymous.

Each check only reads. Any failure inside a check (bad token, cache miss,
expired record, unreachable key endpoint or store) is logged and treated as
"no identity from this source".
"""

from __future__ import annotations

from typing import Mapping, Optional

from fastapi import Request

from gradauth.logging import get_logger
from gradauth.service.authority import SessionAuthority, load_full_state
from gradauth.service.lightweight import LightweightSessions
from gradauth.service.states import (
    ANONYMOUS,
    AuthState,
    FullState,
    OAuthState,
    PreviewState,
)
from gradauth.service.token_verifier import TokenVerifier

logger = get_logger(__name__)


def extract_bearer(headers: Mapping[str, str]) -> Optional[str]:
    raw = headers.get("authorization")
    if raw is None:
        raw = headers.get("Authorization")
    if not raw:
        return None
    scheme, _, token = raw.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class IdentityResolver:
    def __init__(
        self,
        authority: SessionAuthority,
        sessions: LightweightSessions,
        verifier: Optional[TokenVerifier] = None,
        *,
        project_id: Optional[str] = None,
        session_cookie_name: str = "gradauth_session",
        preview_cookie_name: str = "gradauth_preview",
    ) -> None:
        self.authority = authority
        self.sessions = sessions
        self.verifier = verifier
        self.project_id = project_id
        self.session_cookie_name = session_cookie_name
        self.preview_cookie_name = preview_cookie_name

    async def resolve_request(self, request: Request) -> AuthState:
        return await self.resolve(request.headers, request.cookies)

    async def resolve(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> AuthState:
        bearer = extract_bearer(headers)
        if bearer:
            state = await self._from_durable_session(bearer)
            if state is None:
                state = await self._from_provider_token(bearer)
            if state is not None:
                return state
            logger.debug("resolver_bearer_rejected")

        session_value = cookies.get(self.session_cookie_name)
        if session_value:
            state = await self._from_durable_session(session_value)
            if state is None:
                state = await self._from_provider_token(session_value)
            if state is None:
                state = await self._from_oauth_session(session_value)
            if state is not None:
                return state

        preview_value = cookies.get(self.preview_cookie_name)
        if preview_value:
            state = await self._from_preview_session(preview_value)
            if state is not None:
                return state

        return ANONYMOUS

    async def _from_durable_session(self, token: str) -> Optional[FullState]:
        try:
            session = await self.authority.get_session(token)
            if session is None:
                return None
            return await load_full_state(self.authority, session)
        except Exception as exc:
            logger.warning("resolver_session_lookup_failed", error=str(exc))
            return None

    async def _from_provider_token(self, token: str) -> Optional[OAuthState]:
        if self.verifier is None or not self.project_id or token.count(".") != 2:
            return None
        try:
            claims = await self.verifier.verify(token, self.project_id)
        except Exception as exc:
            logger.debug("resolver_provider_token_rejected", error=str(exc))
            return None
        if not claims.email:
            return None
        return OAuthState(
            provider=claims.sign_in_provider or "firebase",
            provider_id=claims.uid,
            email=claims.email,
            email_verified=claims.email_verified,
            name=claims.name,
            picture=claims.picture,
        )

    async def _from_oauth_session(self, session_id: str) -> Optional[OAuthState]:
        try:
            record = await self.sessions.get_oauth(session_id)
        except Exception as exc:
            logger.warning("resolver_oauth_session_lookup_failed", error=str(exc))
            return None
        if record is None:
            return None
        return OAuthState(
            provider=record.provider,
            provider_id=record.provider_id,
            email=record.email,
            email_verified=record.email_verified,
            name=record.name,
            picture=record.picture,
        )

    async def _from_preview_session(self, session_id: str) -> Optional[PreviewState]:
        try:
            record = await self.sessions.get_preview(session_id)
        except Exception as exc:
            logger.warning("resolver_preview_session_lookup_failed", error=str(exc))
            return None
        if record is None:
            return None
        return PreviewState(email=record.email, preview_session_id=record.id)
