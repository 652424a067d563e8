from __future__ import annotations

from typing import Any, Optional

from gradauth.service.states import ANONYMOUS, AuthLevel, AuthState, FullState


class AuthContext:
    """Read-only view of the state resolved for one request."""

    __slots__ = ("_state",)

    def __init__(self, state: AuthState = ANONYMOUS) -> None:
        self._state = state

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def level(self) -> AuthLevel:
        return self._state.level

    @property
    def tenant_id(self) -> Optional[str]:
        # Only the durable session record can place a caller in a tenant
        if isinstance(self._state, FullState):
            return self._state.tenant_id
        return None

    @property
    def email(self) -> Optional[str]:
        return getattr(self._state, "email", None)

    def has_level(self, required: AuthLevel) -> bool:
        return self.level.meets(required)

    def has_role(self, role: str) -> bool:
        if not isinstance(self._state, FullState):
            return False
        return role in self._state.roles

    def to_dict(self) -> dict[str, Any]:
        return self._state.to_dict()

    def __repr__(self) -> str:
        return f"AuthContext(level={self.level.value!r})"
