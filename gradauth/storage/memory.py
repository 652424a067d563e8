from __future__ import annotations

import secrets
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from gradauth.storage.errors import ConstraintViolation
from gradauth.storage.models import Session, TenantMember, User, UserAuthProvider


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemorySessionCache:
    """In-process stand-in for the Redis session cache.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Entries expire on the
    injected clock so tests can move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class MemorySessionAuthority:
    """Minimal in-memory session authority for development and tests."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.providers: List[UserAuthProvider] = []
        self.members: List[TenantMember] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if _normalize_email(u.email) == normalized),
                None,
            )

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def find_user_by_provider(
        self, provider: str, provider_account_id: str
    ) -> Optional[User]:
        with self._data_lock:
            for link in self.providers:
                if link.provider == provider and link.provider_uid == provider_account_id:
                    return self.users.get(link.user_id)
            return None

    async def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        normalized = _normalize_email(email)
        with self._data_lock:
            if any(_normalize_email(u.email) == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                image=image,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            return user

    async def link_account(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_account_id:
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "provider identity linked to another user",
                            {"provider": provider},
                        )
                    return  # Already linked, do nothing
            max_id = max((p.id for p in self.providers), default=0)
            self.providers.append(
                UserAuthProvider(
                    id=max_id + 1,
                    user_id=user_id,
                    provider=provider,
                    provider_uid=provider_account_id,
                )
            )

    async def create_session(
        self, user_id: str, *, expires_at: datetime, tenant_id: str
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session(
                id=str(uuid.uuid4()),
                token=secrets.token_urlsafe(32),
                user_id=user_id,
                tenant_id=tenant_id,
                created_at=self._now(),
                expires_at=expires_at,
            )
            self.sessions[sess.token] = sess
            return sess

    async def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess is None or sess.expires_at <= self._now():
                return None
            return sess

    async def revoke_session(self, token: str) -> None:
        with self._data_lock:
            self.sessions.pop(token, None)

    async def get_user_roles(self, user_id: str, tenant_id: str) -> List[str]:
        with self._data_lock:
            return [
                m.role for m in self.members if m.user_id == user_id and m.tenant_id == tenant_id
            ]

    async def add_tenant_member(self, user_id: str, tenant_id: str, role: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for member in self.members:
                if member.user_id == user_id and member.tenant_id == tenant_id:
                    return  # Existing membership keeps its role
            self.members.append(TenantMember(user_id=user_id, tenant_id=tenant_id, role=role))

    def linked_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._data_lock:
            return [p for p in self.providers if p.user_id == user_id]
