from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mailadmin import sessions as sessions_module
from mailadmin.database import Database
from mailadmin.errors import Unauthenticated
from mailadmin.models import Role
from mailadmin.sessions import INVALID_CREDENTIALS, SessionManager, authenticate, record_login


def test_authenticate_returns_active_user(database: Database, make_user) -> None:
    user = make_user("alice")

    assert authenticate(database, "alice", "correct-horse-battery").id == user.id


@pytest.mark.parametrize(
    "username, password",
    [
        ("ghost", "correct-horse-battery"),
        ("alice", "wrong-password"),
        ("dormant", "correct-horse-battery"),
    ],
)
def test_authenticate_failures_are_indistinguishable(database: Database, make_user, username, password) -> None:
    make_user("alice")
    make_user("dormant", is_active=False)

    with pytest.raises(Unauthenticated) as excinfo:
        authenticate(database, username, password)

    assert excinfo.value.message == INVALID_CREDENTIALS
    assert excinfo.value.status_code == 401


def test_unknown_user_still_runs_a_password_check(database: Database, monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(sessions_module, "burn_password_check", lambda password: calls.append(password))

    with pytest.raises(Unauthenticated):
        authenticate(database, "ghost", "guess")

    assert calls == ["guess"]


def test_legacy_bcrypt_hash_is_upgraded_on_login(database: Database, make_user) -> None:
    from passlib.hash import bcrypt

    user = make_user("legacy")
    database.set_password_hash(user.id, bcrypt.hash("old-secret"))

    authenticate(database, "legacy", "old-secret")

    _, stored = database.get_credentials("legacy")
    assert stored.startswith("$pbkdf2-sha256$")


def test_session_round_trip_and_destroy(database: Database, make_user) -> None:
    user = make_user("alice")
    manager = SessionManager(database)

    token = manager.create(user.id)

    assert len(token) >= 43
    assert manager.resolve(token) == user.id
    manager.destroy(token)
    assert manager.resolve(token) is None


def test_session_has_absolute_expiry(database: Database, make_user, monkeypatch) -> None:
    user = make_user("alice")
    manager = SessionManager(database, ttl=timedelta(hours=24))
    start = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    clock = {"now": start}
    monkeypatch.setattr(manager, "_now", lambda: clock["now"])

    token = manager.create(user.id)

    clock["now"] = start + timedelta(hours=23, minutes=59)
    assert manager.resolve(token) == user.id

    # Resolving just before expiry must not extend the session.
    clock["now"] = start + timedelta(hours=24)
    assert manager.resolve(token) is None
    assert database.get_session(token) is None


def test_purge_expired_removes_only_stale_sessions(database: Database, make_user, monkeypatch) -> None:
    user = make_user("alice")
    manager = SessionManager(database, ttl=timedelta(hours=1))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    clock = {"now": start}
    monkeypatch.setattr(manager, "_now", lambda: clock["now"])

    stale = manager.create(user.id)
    clock["now"] = start + timedelta(minutes=30)
    fresh = manager.create(user.id)
    clock["now"] = start + timedelta(hours=1, minutes=10)

    assert manager.purge_expired() == 1
    assert database.get_session(stale) is None
    assert manager.resolve(fresh) == user.id


def test_cookie_max_age_matches_ttl(database: Database) -> None:
    assert SessionManager(database, ttl=timedelta(hours=24)).cookie_max_age == 86400


def test_record_login_sets_last_login(database: Database, make_user) -> None:
    user = make_user("alice", Role.ADMIN)

    record_login(database, user.id)

    refreshed = database.get_user(user.id)
    assert refreshed.last_login_at is not None
    assert refreshed.last_login_at.tzinfo is not None


def test_record_login_swallows_store_failures(database: Database, monkeypatch, caplog) -> None:
    def explode(user_id, when):
        raise RuntimeError("disk full")

    monkeypatch.setattr(database, "touch_last_login", explode)

    record_login(database, "someone")

    assert "Failed to update last login time" in caplog.text
