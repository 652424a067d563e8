from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from gradauth.api.error_handling import AccessDenied
from gradauth.api.schemas import (
    AuthStateResponse,
    Envelope,
    GraduationResponse,
    OAuthCallbackResponse,
    OAuthStartResponse,
    PreviewRequest,
    TokenGraduationRequest,
)
from gradauth.config import Settings
from gradauth.logging import get_logger
from gradauth.service.context import AuthContext
from gradauth.service.errors import BadRequestError
from gradauth.service.graduation import GraduationResult
from gradauth.service.guard import check_access
from gradauth.service.oauth import SessionCookie
from gradauth.service.resolver import extract_bearer
from gradauth.service.runtime import get_runtime
from gradauth.service.states import AuthLevel

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_auth_context(request: Request) -> AuthContext:
    """Return the context resolved by the auth middleware, resolving lazily if absent."""
    context = getattr(request.state, "auth", None)
    if isinstance(context, AuthContext):
        return context
    runtime = get_runtime()
    context = AuthContext(await runtime.resolver.resolve_request(request))
    request.state.auth = context
    return context


def require_auth(level: AuthLevel, role: Optional[str] = None) -> Callable:
    """Dependency factory enforcing a minimum auth level and optional role."""

    async def _guard(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        settings = get_runtime().settings
        decision = check_access(
            context,
            level,
            role,
            login_url=settings.login_url,
            graduate_url=settings.graduate_url,
        )
        if not decision.allowed:
            raise AccessDenied(decision)
        return context

    return _guard


def _set_cookie(response: Response, settings: Settings, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_cookie(response: Response, settings: Settings, name: str) -> None:
    response.delete_cookie(
        name, path="/", secure=settings.cookie_secure, httponly=True, samesite="lax"
    )


def _apply_session_cookie(response: Response, settings: Settings, cookie: SessionCookie) -> None:
    _set_cookie(response, settings, cookie.name, cookie.value, cookie.max_age)


def _graduation_response(
    response: Response, settings: Settings, result: GraduationResult
) -> Envelope:
    _apply_session_cookie(
        response,
        settings,
        SessionCookie(
            name=settings.session_cookie_name,
            value=result.session_token,
            max_age=settings.full_session_ttl_seconds,
        ),
    )
    _clear_cookie(response, settings, settings.preview_cookie_name)
    return Envelope(
        status="ok",
        data=GraduationResponse(
            user_id=result.user_id,
            session_expires_at=result.expires_at,
            is_new_account=result.is_new_account,
            auth=AuthStateResponse(**result.auth_state.to_dict()),
        ),
    )


@router.post("/auth/preview", response_model=Envelope, status_code=201, tags=["auth"])
async def create_preview(body: PreviewRequest, response: Response):
    """Start a preview session for a visitor who supplied an email.

    The email is unverified; the session only unlocks preview-level routes.
    """
    runtime = get_runtime()
    record = await runtime.sessions.create_preview(body.email)
    settings = runtime.settings
    _set_cookie(
        response,
        settings,
        settings.preview_cookie_name,
        record.id,
        settings.preview_session_ttl_seconds,
    )
    return Envelope(
        status="ok",
        data=AuthStateResponse(level=AuthLevel.PREVIEW.value, email=record.email),
    )


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    response: Response,
    provider: str = Path(..., description="OAuth provider (google or github)"),
    redirect: Optional[str] = Query(None, max_length=512, description="Path to return to after sign-in"),
):
    runtime = get_runtime()
    start = await runtime.oauth.start(provider, redirect)
    settings = runtime.settings
    _set_cookie(
        response,
        settings,
        settings.oauth_state_cookie_name,
        start.state,
        settings.oauth_state_ttl_seconds,
    )
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start.authorization_url,
            state=start.state,
            provider=start.provider,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., description="OAuth provider"),
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
):
    """Complete the OAuth flow.

    A verified email that already owns an account is signed in directly;
    otherwise the caller gets a lightweight OAuth session to graduate later.
    """
    runtime = get_runtime()
    settings = runtime.settings
    expected_state = request.cookies.get(settings.oauth_state_cookie_name)
    outcome = await runtime.oauth.handle_callback(provider, code, state, expected_state)

    if outcome.redirect_path:
        redirect_response = RedirectResponse(outcome.redirect_path, status_code=303)
        _apply_session_cookie(redirect_response, settings, outcome.cookie)
        _clear_cookie(redirect_response, settings, settings.oauth_state_cookie_name)
        return redirect_response

    _apply_session_cookie(response, settings, outcome.cookie)
    _clear_cookie(response, settings, settings.oauth_state_cookie_name)
    return Envelope(
        status="ok",
        data=OAuthCallbackResponse(
            graduated=outcome.graduated,
            auth=AuthStateResponse(**outcome.auth_state.to_dict()),
        ),
    )


@router.post("/auth/graduate", response_model=Envelope, tags=["auth"])
async def graduate(
    request: Request,
    response: Response,
    context: AuthContext = Depends(require_auth(AuthLevel.OAUTH)),
):
    runtime = get_runtime()
    settings = runtime.settings
    if context.level is AuthLevel.FULL:
        raise BadRequestError("session is already fully authenticated")
    session_id = request.cookies.get(settings.session_cookie_name) or ""
    result = await runtime.graduation.graduate_oauth_session(session_id)
    return _graduation_response(response, settings, result)


@router.post("/auth/graduate/token", response_model=Envelope, tags=["auth"])
async def graduate_token(body: TokenGraduationRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.graduation.graduate_from_token(body.id_token)
    return _graduation_response(response, runtime.settings, result)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(context: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=AuthStateResponse(**context.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    credentials = [
        value
        for value in (
            extract_bearer(request.headers),
            request.cookies.get(settings.session_cookie_name),
        )
        if value
    ]
    for value in credentials:
        await runtime.authority.revoke_session(value)
        await runtime.sessions.delete_oauth(value)
    preview_id = request.cookies.get(settings.preview_cookie_name)
    if preview_id:
        await runtime.sessions.delete_preview(preview_id)
    logger.info("logout_completed", credential_count=len(credentials), preview=bool(preview_id))

    _clear_cookie(response, settings, settings.session_cookie_name)
    _clear_cookie(response, settings, settings.preview_cookie_name)
    return Envelope(status="ok", data={"message": "signed out"})
