"""Domain models for the webmail administration service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    """Privilege levels, ordered ``super_admin > admin > client``."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    CLIENT = "client"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank


_ROLE_RANKS = {Role.CLIENT: 0, Role.ADMIN: 1, Role.SUPER_ADMIN: 2}


class Folder(str, Enum):
    """Tags partitioning a user's messages."""

    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    SPAM = "spam"
    TRASH = "trash"


@dataclass(frozen=True)
class User:
    """Represents an account stored in the credential store."""

    id: str
    username: str
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    role: Role
    is_active: bool
    domain_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None


@dataclass(frozen=True)
class Domain:
    id: str
    domain: str
    description: Optional[str]
    is_active: bool
    created_by: str
    created_at: datetime


@dataclass(frozen=True)
class Email:
    """A message record owned by exactly one user."""

    id: str
    user_id: str
    sender: str
    recipient: str
    subject: str
    body: str
    is_read: bool
    is_starred: bool
    folder: Folder
    created_at: datetime


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    user_id: str
    action: str
    created_at: datetime
    target_user_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = field(default=None)


@dataclass(frozen=True)
class UserStats:
    """Counters shown on the admin dashboard.

    ``admins`` counts the ``admin`` role only; super admins are part of
    ``total`` but of neither bucket.
    """

    total: int
    admins: int
    clients: int
    active_today: int


__all__ = ["AuditLogEntry", "Domain", "Email", "Folder", "Role", "User", "UserStats"]
