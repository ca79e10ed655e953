"""Access rules for ETFs, portfolios and user accounts.

Every decision here is a pure function of the actor and the resource; the
request handlers translate a :class:`Decision` into an HTTP status with
:func:`enforce`.
"""

import enum
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import or_

from .models.user import Role


class Decision(enum.Enum):
    ALLOW = "allow"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    BAD_REQUEST = "bad_request"


_STATUS = {
    Decision.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Decision.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    Decision.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
}


@dataclass(frozen=True)
class Actor:
    """The authenticated principal making a request."""

    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(id=user.id, role=Role(user.role))


def can_read(actor: Actor, resource) -> Decision:
    """Admins, owners and anyone for public records may read."""
    if resource is None:
        return Decision.NOT_FOUND
    if actor.is_admin or resource.user_id == actor.id or resource.is_public:
        return Decision.ALLOW
    return Decision.FORBIDDEN


def can_write(actor: Actor, resource) -> Decision:
    """Only admins and owners may modify; visibility grants nothing here."""
    if resource is None:
        return Decision.NOT_FOUND
    if actor.is_admin or resource.user_id == actor.id:
        return Decision.ALLOW
    return Decision.FORBIDDEN


def can_delete_user(actor: Actor, target) -> Decision:
    """Nobody may delete their own account, admins included."""
    if target is None:
        return Decision.NOT_FOUND
    if target.id == actor.id:
        return Decision.BAD_REQUEST
    return Decision.ALLOW


def scope_clause(model, actor: Actor):
    """Return the listing restriction for ``actor`` or ``None`` for admins."""
    if actor.is_admin:
        return None
    return or_(model.user_id == actor.id, model.is_public.is_(True))


def enforce(decision: Decision, resource_name: str) -> None:
    """Raise the HTTP error matching a denied decision."""
    if decision is Decision.ALLOW:
        return
    reason = {
        Decision.NOT_FOUND: f"{resource_name} not found",
        Decision.FORBIDDEN: "Access denied",
        # only the self-deletion guard answers BAD_REQUEST
        Decision.BAD_REQUEST: "Cannot delete your own account",
    }[decision]
    raise HTTPException(status_code=_STATUS[decision], detail=reason)
