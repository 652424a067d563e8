from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_token",
    "email_not_verified",
    "account_conflict",
    "csrf_state_mismatch",
    "key_fetch_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class AccessDeniedBody(BaseModel):
    """Body returned by route guards; clients branch on ``error``."""

    error: str
    message: str
    current: str
    required: str
    recoveryUrl: Optional[str] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = "".join(c for c in value.strip().lower() if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class PreviewRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_preview_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenGraduationRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=8192)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class AuthStateResponse(BaseModel):
    level: str
    email: Optional[str] = None
    provider: Optional[str] = None
    email_verified: Optional[bool] = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    tenant_role: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    name: Optional[str] = None
    picture: Optional[str] = None


class GraduationResponse(BaseModel):
    user_id: str
    session_expires_at: datetime
    is_new_account: bool
    auth: AuthStateResponse


class OAuthCallbackResponse(BaseModel):
    graduated: bool
    redirect_path: Optional[str] = None
    auth: AuthStateResponse
