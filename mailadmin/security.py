"""Access policy gate: the single place where role hierarchy is evaluated."""
from __future__ import annotations

import logging
from typing import Optional

from .errors import Forbidden, Unauthenticated
from .models import Role, User

logger = logging.getLogger("mailadmin.security")


def require_authenticated(user: Optional[User]) -> User:
    if user is None or not user.is_active:
        raise Unauthenticated()
    return user


def require_role(user: Optional[User], minimum: Role, *, message: Optional[str] = None) -> User:
    """Authentication is always checked first so anonymous callers never see 403."""

    principal = require_authenticated(user)
    if not principal.role.at_least(minimum):
        logger.warning(
            "Denied %s access to user %s with role %s",
            minimum.value,
            principal.id,
            principal.role.value,
        )
        raise Forbidden(message)
    return principal


def require_admin_or_above(user: Optional[User]) -> User:
    return require_role(user, Role.ADMIN)


def require_super_admin(user: Optional[User]) -> User:
    return require_role(user, Role.SUPER_ADMIN, message="Super admin access required")


def ensure_can_modify(actor: User, target: User, new_role: Optional[Role] = None) -> None:
    """Admins may edit admins and clients but never touch super admin privilege."""

    require_admin_or_above(actor)
    if actor.role is Role.SUPER_ADMIN:
        return
    if target.role is Role.SUPER_ADMIN:
        raise Forbidden("Only a super admin can modify a super admin account")
    if new_role is Role.SUPER_ADMIN:
        raise Forbidden("Only a super admin can grant the super admin role")


__all__ = [
    "ensure_can_modify",
    "require_admin_or_above",
    "require_authenticated",
    "require_role",
    "require_super_admin",
]
