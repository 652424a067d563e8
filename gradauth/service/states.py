from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, FrozenSet, Optional, Union


class AuthLevel(str, Enum):
    """How strongly a caller's identity is established, weakest first.

    - ANONYMOUS: no identity, public access only
    - PREVIEW: email claimed through an inquiry/preview form, unverified
    - OAUTH: identity verified by an identity provider, no durable session
    - FULL: durable session with roles and tenant membership
    """

    ANONYMOUS = "anonymous"
    PREVIEW = "preview"
    OAUTH = "oauth"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER[self]

    def meets(self, required: "AuthLevel") -> bool:
        return self.rank >= AuthLevel(required).rank


_LEVEL_ORDER = {
    AuthLevel.ANONYMOUS: 0,
    AuthLevel.PREVIEW: 1,
    AuthLevel.OAUTH: 2,
    AuthLevel.FULL: 3,
}


@dataclass(frozen=True)
class AnonymousState:
    level: ClassVar[AuthLevel] = AuthLevel.ANONYMOUS

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level.value}


@dataclass(frozen=True)
class PreviewState:
    level: ClassVar[AuthLevel] = AuthLevel.PREVIEW

    email: str
    preview_session_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level.value, "email": self.email}


@dataclass(frozen=True)
class OAuthState:
    level: ClassVar[AuthLevel] = AuthLevel.OAUTH

    provider: str
    provider_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "provider": self.provider,
            "email": self.email,
            "email_verified": self.email_verified,
            "name": self.name,
            "picture": self.picture,
        }


@dataclass(frozen=True)
class FullState:
    level: ClassVar[AuthLevel] = AuthLevel.FULL

    user_id: str
    session_id: str
    email: str
    tenant_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    tenant_role: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "user_id": self.user_id,
            "email": self.email,
            "tenant_id": self.tenant_id,
            "tenant_role": self.tenant_role,
            "roles": sorted(self.roles),
            "name": self.name,
            "picture": self.picture,
        }


AuthState = Union[AnonymousState, PreviewState, OAuthState, FullState]

ANONYMOUS = AnonymousState()


__all__ = [
    "AuthLevel",
    "AuthState",
    "AnonymousState",
    "PreviewState",
    "OAuthState",
    "FullState",
    "ANONYMOUS",
]
