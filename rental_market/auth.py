"""Actor identity handed to services by the (external) authentication layer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from rental_market.errors import Unauthorized
from rental_market.models import User, UserRole


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: UserRole
    email: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "CurrentUser":
        return cls(id=user.userID, role=UserRole(user.role), email=user.email)


def require_role(actor: Optional[CurrentUser], *roles: UserRole) -> CurrentUser:
    if actor is None:
        raise Unauthorized("You must be signed in to perform this action")
    if roles and actor.role not in roles:
        allowed = ", ".join(role.value.lower() for role in roles)
        raise Unauthorized(f"Only {allowed} accounts can perform this action")
    return actor
