"""Upgrade a provider-verified identity into a durable, role-bearing account.

Two entry points exist because the two sources carry different trust:

* a raw provider ID token is verified here and must carry a verified email;
  an account that already owns the email is never linked implicitly.
* an ``OAuthState`` was produced by the OAuth callback, which already refused
  unverified emails, so a matching account is linked and signed in.

The durable session is always the final write. If the call is cancelled
before that point the caller never receives a session.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from gradauth.logging import get_logger
from gradauth.service.authority import SessionAuthority, load_full_state
from gradauth.service.errors import (
    AccountConflictError,
    AuthenticationError,
    EmailNotVerifiedError,
    InvalidTokenError,
    KeyFetchError,
    ServerError,
)
from gradauth.service.lightweight import LightweightSessions
from gradauth.service.states import FullState, OAuthState
from gradauth.service.token_verifier import TokenVerifier
from gradauth.storage.errors import ConstraintViolation
from gradauth.storage.models import User

logger = get_logger(__name__)


@dataclass(frozen=True)
class GraduationResult:
    user_id: str
    session_token: str
    expires_at: datetime
    is_new_account: bool
    auth_state: FullState


class GraduationEngine:
    def __init__(
        self,
        authority: SessionAuthority,
        sessions: LightweightSessions,
        verifier: Optional[TokenVerifier] = None,
        *,
        project_id: Optional[str] = None,
        default_tenant_id: str = "public",
        default_member_role: str = "member",
        session_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.authority = authority
        self.sessions = sessions
        self.verifier = verifier
        self.project_id = project_id
        self.default_tenant_id = default_tenant_id
        self.default_member_role = default_member_role
        self.session_ttl_seconds = session_ttl_seconds
        self._clock = clock

    def _session_expiry(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc) + timedelta(
            seconds=self.session_ttl_seconds
        )

    async def graduate_from_token(self, token: str) -> GraduationResult:
        if self.verifier is None or not self.project_id:
            raise InvalidTokenError("provider token verification is not configured")
        try:
            claims = await self.verifier.verify(token, self.project_id)
        except KeyFetchError as exc:
            raise InvalidTokenError("unable to verify provider token") from exc
        if not claims.email:
            raise InvalidTokenError("provider token carries no email")
        if not claims.email_verified:
            raise EmailNotVerifiedError("email must be verified by the identity provider")

        existing = await self.authority.find_user_by_email(claims.email)
        if existing is not None:
            logger.info("graduation_account_conflict", source="token")
            raise AccountConflictError(
                "an account with this email already exists; sign in to link it"
            )

        provider = claims.sign_in_provider or "firebase"
        await self._ensure_identity_unlinked(provider, claims.uid, source="token")

        try:
            user = await self.authority.create_user(
                claims.email,
                name=claims.name,
                image=claims.picture,
                email_verified=True,
            )
        except ConstraintViolation as exc:
            logger.info("graduation_account_conflict", source="token", race=True)
            raise AccountConflictError(
                "an account with this email already exists; sign in to link it"
            ) from exc

        await self._link(user, provider, claims.uid, add_membership=True, source="token")
        return await self._open_session(user, is_new_account=True, provider=provider)

    async def graduate_from_oauth(self, state: OAuthState) -> GraduationResult:
        is_new_account = False
        user = await self.authority.find_user_by_email(state.email)
        if user is None:
            await self._ensure_identity_unlinked(
                state.provider, state.provider_id, source="oauth"
            )
            try:
                user = await self.authority.create_user(
                    state.email,
                    name=state.name,
                    image=state.picture,
                    email_verified=state.email_verified,
                )
                is_new_account = True
            except ConstraintViolation as exc:
                # Lost a creation race; the winner's account is the one to join.
                user = await self.authority.find_user_by_email(state.email)
                if user is None:
                    raise AccountConflictError("account creation conflicted") from exc
                logger.info("graduation_creation_race_recovered", provider=state.provider)

        await self._link(
            user,
            state.provider,
            state.provider_id,
            add_membership=is_new_account,
            source="oauth",
        )
        return await self._open_session(
            user, is_new_account=is_new_account, provider=state.provider
        )

    async def graduate_oauth_session(self, session_id: str) -> GraduationResult:
        """Graduate the lightweight OAuth session named by ``session_id``."""
        record = await self.sessions.get_oauth(session_id)
        if record is None:
            raise AuthenticationError("OAuth session is missing or expired")
        state = OAuthState(
            provider=record.provider,
            provider_id=record.provider_id,
            email=record.email,
            email_verified=record.email_verified,
            name=record.name,
            picture=record.picture,
        )
        result = await self.graduate_from_oauth(state)
        await self.sessions.delete_oauth(session_id)
        return result

    async def _ensure_identity_unlinked(
        self, provider: str, provider_id: str, *, source: str
    ) -> None:
        # Checked before create_user so a rejected identity leaves no account behind.
        owner = await self.authority.find_user_by_provider(provider, provider_id)
        if owner is not None:
            logger.info("graduation_account_conflict", source=source, reason="identity_linked")
            raise AccountConflictError("this sign-in is already linked to another account")

    async def _link(
        self,
        user: User,
        provider: str,
        provider_id: str,
        *,
        add_membership: bool,
        source: str,
    ) -> None:
        try:
            await self.authority.link_account(user.id, provider, provider_id)
            if add_membership:
                await self.authority.add_tenant_member(
                    user.id, self.default_tenant_id, self.default_member_role
                )
        except ConstraintViolation as exc:
            logger.info("graduation_account_conflict", source=source, reason="link_rejected")
            raise AccountConflictError(
                "this sign-in is already linked to another account"
            ) from exc

    async def _open_session(
        self, user: User, *, is_new_account: bool, provider: str
    ) -> GraduationResult:
        session = await self.authority.create_session(
            user.id, expires_at=self._session_expiry(), tenant_id=self.default_tenant_id
        )
        full_state = await load_full_state(self.authority, session, user=user)
        if full_state is None:
            raise ServerError("graduated user could not be loaded")
        logger.info(
            "graduation_completed",
            user_id=user.id,
            provider=provider,
            is_new_account=is_new_account,
        )
        return GraduationResult(
            user_id=user.id,
            session_token=session.token,
            expires_at=session.expires_at,
            is_new_account=is_new_account,
            auth_state=full_state,
        )
