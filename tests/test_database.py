from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from mailadmin.database import Database, hash_password, verify_password
from mailadmin.models import Folder, Role


def test_insert_user_and_lookup(database: Database, make_user) -> None:
    user = make_user("alice", Role.ADMIN, first_name="Alice", last_name="Liddell")

    assert user.role is Role.ADMIN
    assert user.is_active is True
    assert user.last_login_at is None
    assert database.get_user(user.id) == user
    assert database.get_user_by_username("alice") == user

    record = database.get_credentials("alice")
    assert record is not None
    assert record[0].id == user.id
    assert verify_password("correct-horse-battery", record[1])


def test_duplicate_username_and_email_raise_integrity_errors(database: Database, make_user) -> None:
    make_user("alice")

    with pytest.raises(sqlite3.IntegrityError):
        make_user("alice", email="other@example.com")
    with pytest.raises(sqlite3.IntegrityError):
        make_user("alice2", email="alice@example.com")


def test_list_users_orders_newest_first_and_filters_by_role(database: Database, make_user) -> None:
    first = make_user("first", Role.CLIENT)
    second = make_user("second", Role.ADMIN)
    third = make_user("third", Role.CLIENT)

    assert [user.id for user in database.list_users()] == [third.id, second.id, first.id]
    assert [user.id for user in database.list_users(Role.CLIENT)] == [third.id, first.id]
    assert [user.id for user in database.list_users(Role.SUPER_ADMIN)] == []


def test_search_users_is_case_sensitive_substring(database: Database, make_user) -> None:
    make_user("jsmith", first_name="John", last_name="Smith", email="john@corp.example")
    make_user("adoe", first_name="Anna", last_name="Doe", email="anna@home.example")

    assert [user.username for user in database.search_users("Smi")] == ["jsmith"]
    assert database.search_users("smi") == []
    assert [user.username for user in database.search_users("home.")] == ["adoe"]


def test_count_users_by_role_includes_empty_buckets(database: Database, make_user) -> None:
    make_user("root", Role.SUPER_ADMIN)
    make_user("client1")
    make_user("client2")

    counts = database.count_users_by_role()

    assert counts == {Role.SUPER_ADMIN: 1, Role.ADMIN: 0, Role.CLIENT: 2}


def test_count_active_logins_between_uses_half_open_range(database: Database, make_user) -> None:
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    inside = make_user("inside")
    boundary = make_user("boundary")
    inactive = make_user("inactive", is_active=False)
    make_user("never")

    database.touch_last_login(inside.id, start + timedelta(hours=13, minutes=5))
    database.touch_last_login(boundary.id, end)
    database.touch_last_login(inactive.id, start + timedelta(hours=1))

    assert database.count_active_logins_between(start, end) == 1


def test_update_user_fields_returns_none_for_missing_user(database: Database) -> None:
    assert database.update_user_fields("missing", {"first_name": "Nobody"}) is None


def test_update_user_fields_applies_partial_patch(database: Database, make_user) -> None:
    user = make_user("bob", first_name="Bob")

    updated = database.update_user_fields(user.id, {"role": Role.ADMIN, "is_active": False})

    assert updated is not None
    assert updated.role is Role.ADMIN
    assert updated.is_active is False
    assert updated.first_name == "Bob"
    assert updated.updated_at >= user.updated_at


def test_set_password_hash_replaces_credentials(database: Database, make_user) -> None:
    user = make_user("carol")

    assert database.set_password_hash(user.id, hash_password("new-password"))
    _, stored = database.get_credentials("carol")
    assert verify_password("new-password", stored)
    assert not verify_password("correct-horse-battery", stored)
    assert database.set_password_hash("missing", hash_password("whatever")) is False


def test_domain_lifecycle(database: Database, make_user) -> None:
    owner = make_user("root", Role.SUPER_ADMIN)

    domain = database.insert_domain(domain="mail.example.org", description=None, created_by=owner.id)
    assert domain.is_active is True
    assert database.list_domains() == [domain]

    disabled = database.set_domain_active(domain.id, False)
    assert disabled is not None and disabled.is_active is False
    assert database.set_domain_active("missing", True) is None

    with pytest.raises(sqlite3.IntegrityError):
        database.insert_domain(domain="mail.example.org", description="dup", created_by=owner.id)


def test_email_updates_are_scoped_to_owner(database: Database, make_user) -> None:
    owner = make_user("owner")
    stranger = make_user("stranger")
    email = database.insert_email(
        owner.id,
        sender="someone@example.com",
        recipient="owner@example.com",
        subject="Hello",
        body="Body",
    )

    assert database.list_emails(owner.id, Folder.INBOX) == [email]
    assert database.list_emails(stranger.id, Folder.INBOX) == []
    assert database.update_email_flags(email.id, stranger.id, is_read=True) is None
    assert database.move_email(email.id, stranger.id, Folder.TRASH) is None

    flagged = database.update_email_flags(email.id, owner.id, is_starred=True)
    assert flagged is not None
    assert flagged.is_starred is True
    assert flagged.is_read is False

    moved = database.move_email(email.id, owner.id, Folder.TRASH)
    assert moved is not None and moved.folder is Folder.TRASH
    assert database.list_emails(owner.id, Folder.INBOX) == []


def test_audit_log_is_append_only(database: Database, make_user) -> None:
    actor = make_user("root", Role.SUPER_ADMIN)
    entry = database.insert_audit_entry(
        user_id=actor.id,
        action="CREATE_USER",
        target_user_id=actor.id,
        details={"userEmail": actor.email},
    )

    assert database.list_audit_entries() == [entry]

    with database.transaction() as conn, pytest.raises(sqlite3.DatabaseError):
        conn.execute("DELETE FROM audit_logs WHERE id = ?", (entry.id,))
    with database.transaction() as conn, pytest.raises(sqlite3.DatabaseError):
        conn.execute("UPDATE audit_logs SET action = 'X' WHERE id = ?", (entry.id,))

    assert database.list_audit_entries() == [entry]


def test_list_audit_entries_respects_limit(database: Database, make_user) -> None:
    actor = make_user("root", Role.SUPER_ADMIN)
    for index in range(5):
        database.insert_audit_entry(
            user_id=actor.id,
            action="UPDATE_USER",
            target_user_id=actor.id,
            details={"index": index},
        )

    entries = database.list_audit_entries(limit=3)

    assert [entry.details for entry in entries] == [{"index": 4}, {"index": 3}, {"index": 2}]


def test_initialize_is_idempotent(tmp_path) -> None:
    database = Database(tmp_path / "nested" / "mailadmin.sqlite3")
    database.initialize()
    database.initialize()

    assert database.path.exists()
