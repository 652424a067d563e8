"""Route guard decisions for graduated authentication.

The guard never performs I/O: the request has already been resolved into an
``AuthContext`` upstream. It only decides whether the caller may proceed and,
if not, which recovery path the client should offer. "Not logged in" (401)
and "logged in but under-privileged" (403) are kept distinct because the
client recovers from them differently: log in versus upgrade the account.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from gradauth.service.context import AuthContext
from gradauth.service.states import AuthLevel


class GuardOutcome(str, Enum):
    ALLOW = "allow"
    AUTHENTICATION_REQUIRED = "authentication_required"
    INSUFFICIENT_LEVEL = "insufficient_level"
    INSUFFICIENT_ROLE = "insufficient_role"


_STATUS = {
    GuardOutcome.ALLOW: 200,
    GuardOutcome.AUTHENTICATION_REQUIRED: 401,
    GuardOutcome.INSUFFICIENT_LEVEL: 403,
    GuardOutcome.INSUFFICIENT_ROLE: 403,
}

_MESSAGES = {
    GuardOutcome.AUTHENTICATION_REQUIRED: "Authentication required",
    GuardOutcome.INSUFFICIENT_LEVEL: "Insufficient auth level",
    GuardOutcome.INSUFFICIENT_ROLE: "Insufficient permissions",
}


@dataclass(frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    current: AuthLevel
    required: str
    recovery_url: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is GuardOutcome.ALLOW

    @property
    def status_code(self) -> int:
        return _STATUS[self.outcome]

    @property
    def error(self) -> str:
        return self.outcome.value

    @property
    def message(self) -> str:
        return _MESSAGES.get(self.outcome, "")

    def to_body(self) -> dict[str, Any]:
        return {
            "error": self.error,
            "message": self.message,
            "current": self.current.value,
            "required": self.required,
            "recoveryUrl": self.recovery_url,
        }


def check_access(
    context: AuthContext,
    level: AuthLevel,
    role: Optional[str] = None,
    *,
    login_url: str = "/auth/login",
    graduate_url: str = "/auth/graduate",
) -> GuardDecision:
    """Decide whether ``context`` satisfies a minimum level and optional role."""
    required = AuthLevel(level)
    current = context.level
    if current is AuthLevel.ANONYMOUS and required is not AuthLevel.ANONYMOUS:
        return GuardDecision(
            GuardOutcome.AUTHENTICATION_REQUIRED,
            current=current,
            required=required.value,
            recovery_url=login_url,
        )
    if not context.has_level(required):
        recovery = graduate_url if required is AuthLevel.FULL else login_url
        return GuardDecision(
            GuardOutcome.INSUFFICIENT_LEVEL,
            current=current,
            required=required.value,
            recovery_url=recovery,
        )
    if role and not context.has_role(role):
        return GuardDecision(
            GuardOutcome.INSUFFICIENT_ROLE,
            current=current,
            required=role,
        )
    return GuardDecision(GuardOutcome.ALLOW, current=current, required=required.value)
