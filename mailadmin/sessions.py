"""Credential checks and persisted sessions for the webmail API."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from .database import (
    Database,
    burn_password_check,
    hash_password,
    password_needs_rehash,
    verify_password,
)
from .errors import Unauthenticated
from .models import User

logger = logging.getLogger("mailadmin.sessions")

INVALID_CREDENTIALS = "Invalid credentials"


def authenticate(database: Database, username: str, password: str) -> User:
    """Return the matching active user or raise :class:`Unauthenticated`.

    Unknown usernames, inactive accounts and wrong passwords all produce the
    same error so callers cannot enumerate accounts.
    """

    record = database.get_credentials(username)
    if record is None:
        burn_password_check(password)
        raise Unauthenticated(INVALID_CREDENTIALS)

    user, stored_hash = record
    password_ok = verify_password(password, stored_hash)
    if not password_ok or not user.is_active:
        raise Unauthenticated(INVALID_CREDENTIALS)

    if password_needs_rehash(stored_hash):
        database.set_password_hash(user.id, hash_password(password))
        logger.info("Upgraded password hash for user %s", user.id)
    return user


class SessionManager:
    """Generate, validate, and revoke sessions stored in the database.

    Sessions carry an absolute expiry; resolving one does not extend it.
    """

    def __init__(self, database: Database, *, ttl: timedelta = timedelta(hours=24)) -> None:
        self._database = database
        self._ttl = ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cookie_max_age(self) -> int:
        return int(self._ttl.total_seconds())

    def create(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._database.insert_session(token, user_id, created_at=self._now(), ttl=self._ttl)
        return token

    def resolve(self, token: str) -> Optional[str]:
        if not token:
            return None
        record = self._database.get_session(token)
        if record is None:
            return None
        user_id, expires_at = record
        if expires_at <= self._now():
            self._database.delete_session(token)
            return None
        return user_id

    def destroy(self, token: str) -> None:
        if token:
            self._database.delete_session(token)

    def purge_expired(self) -> int:
        removed = self._database.purge_expired_sessions(self._now())
        if removed:
            logger.info("Purged %s expired session(s)", removed)
        return removed

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


def record_login(database: Database, user_id: str) -> None:
    """Best-effort ``last_login_at`` update; failures are logged, never raised."""

    try:
        database.touch_last_login(user_id, datetime.now(timezone.utc))
    except Exception:
        logger.exception("Failed to update last login time for user %s", user_id)


__all__ = ["INVALID_CREDENTIALS", "SessionManager", "authenticate", "record_login"]
