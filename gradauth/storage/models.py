from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    """Durable session record owned by the session authority."""

    id: str
    token: str
    user_id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class TenantMember:
    user_id: str
    tenant_id: str
    role: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OAuthSession:
    """Lightweight session for a provider-verified, not yet graduated identity."""

    id: str
    provider: str
    provider_id: str
    email: str
    email_verified: bool
    created_at: float
    expires_at: float
    name: Optional[str] = None
    picture: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "OAuthSession":
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            provider=str(data["provider"]),
            provider_id=str(data["provider_id"]),
            email=str(data["email"]),
            email_verified=data.get("email_verified") is True,
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            name=data.get("name"),
            picture=data.get("picture"),
        )


@dataclass
class PreviewSession:
    """Lightweight session for a visitor identified only by a claimed email."""

    id: str
    email: str
    created_at: float
    expires_at: float

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "PreviewSession":
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            email=str(data["email"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )
