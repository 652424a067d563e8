from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from gradauth.service.states import FullState
from gradauth.storage.models import Session, User


class SessionAuthority(Protocol):
    """Capabilities the engine needs from the durable identity/session store.

    Implementations own persistence. ``create_user`` must enforce email
    uniqueness by raising ``ConstraintViolation``; ``link_account`` must be
    idempotent for an existing (provider, provider_account_id) pair and raise
    ``ConstraintViolation`` when that pair belongs to another user.
    """

    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def find_user_by_provider(
        self, provider: str, provider_account_id: str
    ) -> Optional[User]:
        """Return the user a provider identity is linked to, or None."""
        ...

    async def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: bool = False,
    ) -> User: ...

    async def link_account(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> None: ...

    async def create_session(
        self, user_id: str, *, expires_at: datetime, tenant_id: str
    ) -> Session: ...

    async def get_session(self, token: str) -> Optional[Session]:
        """Return the unexpired session for a session token, or None."""
        ...

    async def revoke_session(self, token: str) -> None: ...

    async def get_user_roles(self, user_id: str, tenant_id: str) -> List[str]: ...

    async def add_tenant_member(self, user_id: str, tenant_id: str, role: str) -> None: ...


async def load_full_state(
    authority: SessionAuthority, session: Session, *, user: Optional[User] = None
) -> Optional[FullState]:
    """Build the FULL state for a durable session, or None if its user is gone.

    Tenant and roles come from the session record and the authority only.
    """
    if user is None:
        user = await authority.get_user(session.user_id)
    if user is None:
        return None
    roles = await authority.get_user_roles(user.id, session.tenant_id)
    return FullState(
        user_id=user.id,
        session_id=session.id,
        email=user.email,
        tenant_id=session.tenant_id,
        roles=frozenset(roles),
        tenant_role=roles[0] if roles else None,
        name=user.name,
        picture=user.image,
    )
