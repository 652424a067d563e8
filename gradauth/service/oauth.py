from __future__ import annotations

import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from gradauth.config import Settings
from gradauth.logging import get_logger
from gradauth.service.authority import SessionAuthority
from gradauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    CsrfStateMismatchError,
    EmailNotVerifiedError,
)
from gradauth.service.graduation import GraduationEngine
from gradauth.service.lightweight import LightweightSessions
from gradauth.service.states import AuthState, OAuthState
from gradauth.storage.redis_cache import SessionCache

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_PREFIX = "oauth_state:"

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str
    provider: str


@dataclass(frozen=True)
class OAuthProfile:
    provider: str
    provider_id: str
    email: Optional[str]
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


@dataclass(frozen=True)
class SessionCookie:
    name: str
    value: str
    max_age: int


@dataclass(frozen=True)
class CallbackOutcome:
    auth_state: AuthState
    cookie: SessionCookie
    graduated: bool
    redirect_path: Optional[str] = None


def _safe_redirect_path(path: Optional[str]) -> Optional[str]:
    # Only same-origin absolute paths; "//host" would leave the site
    if not path or not path.startswith("/") or path.startswith("//") or "\\" in path:
        return None
    return path


async def _google_profile(
    client: httpx.AsyncClient, access_token: str
) -> OAuthProfile:
    response = await client.get(
        OAUTH_PROVIDERS["google"]["userinfo_url"],
        headers={"Authorization": f"Bearer {access_token}"},
    )
    response.raise_for_status()
    userinfo = response.json()
    if not isinstance(userinfo, dict):
        raise AuthenticationError("unexpected userinfo response from google")
    verified = userinfo.get("verified_email", userinfo.get("email_verified"))
    return OAuthProfile(
        provider="google",
        provider_id=str(userinfo.get("id") or userinfo.get("sub") or ""),
        email=userinfo.get("email"),
        email_verified=verified is True,
        name=userinfo.get("name"),
        picture=userinfo.get("picture"),
    )


async def _github_profile(
    client: httpx.AsyncClient, access_token: str
) -> OAuthProfile:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/vnd.github+json",
    }
    response = await client.get(OAUTH_PROVIDERS["github"]["userinfo_url"], headers=headers)
    response.raise_for_status()
    userinfo = response.json()
    if not isinstance(userinfo, dict):
        raise AuthenticationError("unexpected userinfo response from github")

    # The profile email carries no verification flag; only /user/emails does.
    emails_response = await client.get(OAUTH_PROVIDERS["github"]["emails_url"], headers=headers)
    emails_response.raise_for_status()
    emails = emails_response.json()
    if not isinstance(emails, list):
        emails = []
    verified = [
        e for e in emails if isinstance(e, dict) and e.get("verified") and e.get("email")
    ]
    # Prefer the verified primary, else any verified address. The flag always
    # travels with the address it was reported for.
    chosen = next((e for e in verified if e.get("primary")), verified[0] if verified else None)
    return OAuthProfile(
        provider="github",
        provider_id=str(userinfo.get("id") or ""),
        email=chosen["email"] if chosen else userinfo.get("email"),
        email_verified=chosen is not None,
        name=userinfo.get("name") or userinfo.get("login"),
        picture=userinfo.get("avatar_url"),
    )


ProfileFetcher = Callable[[httpx.AsyncClient, str], Awaitable[OAuthProfile]]

_PROFILE_FETCHERS: Dict[str, ProfileFetcher] = {
    "google": _google_profile,
    "github": _github_profile,
}


class OAuthFlow:
    """Authorization-code flow for Google and GitHub.

    ``start`` issues a single-use state stored server-side and handed to the
    browser in a cookie. ``handle_callback`` requires both copies to match,
    exchanges the code, and refuses profiles without a provider-verified
    email. A verified email that already has an account graduates straight
    to a durable session; otherwise a lightweight OAuth session is created.
    """

    def __init__(
        self,
        settings: Settings,
        cache: SessionCache,
        sessions: LightweightSessions,
        authority: SessionAuthority,
        engine: GraduationEngine,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.sessions = sessions
        self.authority = authority
        self.engine = engine
        self._transport = transport
        self._clock = clock

    def _credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    async def start(self, provider: str, redirect_path: Optional[str] = None) -> OAuthStart:
        if provider not in OAUTH_PROVIDERS:
            raise BadRequestError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise BadRequestError(f"OAuth provider {provider} is not configured")

        state = secrets.token_urlsafe(32)
        redirect_uri = self.settings.oauth_redirect_uri(provider)
        record = {
            "provider": provider,
            "expires_at": self._clock() + self.settings.oauth_state_ttl_seconds,
            "redirect_uri": redirect_uri,
            "redirect_path": _safe_redirect_path(redirect_path),
        }
        await self.cache.put(
            OAUTH_STATE_PREFIX + state,
            json.dumps(record),
            ttl_seconds=self.settings.oauth_state_ttl_seconds,
        )

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        authorization_url = f"{provider_config['auth_url']}?{urlencode(params)}"
        logger.info("oauth_started", provider=provider)
        return OAuthStart(authorization_url=authorization_url, state=state, provider=provider)

    async def _consume_state(self, provider: str, state: str) -> dict[str, Any]:
        raw = await self.cache.pop(OAUTH_STATE_PREFIX + state)
        if raw is None:
            raise CsrfStateMismatchError("OAuth state is unknown or already used")
        try:
            record = json.loads(raw)
        except ValueError as exc:
            raise CsrfStateMismatchError("OAuth state record is unreadable") from exc
        if not isinstance(record, dict):
            raise CsrfStateMismatchError("OAuth state record is unreadable")
        if float(record.get("expires_at", 0)) <= self._clock():
            raise CsrfStateMismatchError("OAuth state has expired")
        if record.get("provider") != provider:
            raise CsrfStateMismatchError("OAuth state was issued for another provider")
        return record

    async def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        expected_state: Optional[str],
    ) -> CallbackOutcome:
        if provider not in OAUTH_PROVIDERS:
            raise BadRequestError(f"Unsupported OAuth provider: {provider}")
        if not state or not expected_state or not hmac.compare_digest(
            state.encode("utf-8"), expected_state.encode("utf-8")
        ):
            logger.warning("oauth_state_mismatch", provider=provider)
            raise CsrfStateMismatchError("OAuth state does not match")
        record = await self._consume_state(provider, state)
        if not code:
            raise AuthenticationError("OAuth callback is missing the authorization code")

        profile = await self._exchange_code(provider, code, record.get("redirect_uri"))
        if not profile.provider_id:
            raise AuthenticationError("OAuth provider returned no account id")
        if not profile.email or not profile.email_verified:
            logger.info("oauth_email_not_verified", provider=provider)
            raise EmailNotVerifiedError("OAuth provider has not verified this email")

        oauth_state = OAuthState(
            provider=profile.provider,
            provider_id=profile.provider_id,
            email=profile.email,
            email_verified=True,
            name=profile.name,
            picture=profile.picture,
        )
        redirect_path = record.get("redirect_path")

        existing = await self.authority.find_user_by_email(profile.email)
        if existing is not None:
            result = await self.engine.graduate_from_oauth(oauth_state)
            cookie = SessionCookie(
                name=self.settings.session_cookie_name,
                value=result.session_token,
                max_age=self.settings.full_session_ttl_seconds,
            )
            return CallbackOutcome(result.auth_state, cookie, True, redirect_path)

        session = await self.sessions.create_oauth(
            provider=profile.provider,
            provider_id=profile.provider_id,
            email=profile.email,
            email_verified=True,
            name=profile.name,
            picture=profile.picture,
        )
        cookie = SessionCookie(
            name=self.settings.session_cookie_name,
            value=session.id,
            max_age=self.settings.oauth_session_ttl_seconds,
        )
        return CallbackOutcome(oauth_state, cookie, False, redirect_path)

    async def _exchange_code(
        self, provider: str, code: str, redirect_uri: Optional[str]
    ) -> OAuthProfile:
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError(f"OAuth provider {provider} is not configured")

        provider_config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri or self.settings.oauth_redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError("OAuth provider returned no access token")
                profile = await _PROFILE_FETCHERS[provider](client, access_token)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("OAuth code exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise AuthenticationError("OAuth code exchange failed") from exc

        logger.info("oauth_exchange_success", provider=provider)
        return profile
