"""SQLite-backed persistence for users, domains, messages, audit logs and sessions."""
from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from passlib.context import CryptContext

from .models import AuditLogEntry, Domain, Email, Folder, Role, User

# New hashes use pbkdf2_sha256; bcrypt hashes written by earlier deployments
# still verify and are flagged for rehashing.
_pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

_dummy_hash: Optional[str] = None


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return _as_utc(value).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(str(value))


def _new_id() -> str:
    return str(uuid.uuid4())


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password must not be empty")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def password_needs_rehash(hashed: str) -> bool:
    try:
        return _pwd_context.needs_update(hashed)
    except ValueError:
        return False


def burn_password_check(password: str) -> None:
    """Spend the same effort as a real verification against a throwaway hash."""

    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = _pwd_context.hash(uuid.uuid4().hex)
    _pwd_context.verify(password, _dummy_hash)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE COLLATE NOCASE,
    password_hash TEXT NOT NULL,
    email TEXT UNIQUE,
    first_name TEXT,
    last_name TEXT,
    domain_id TEXT REFERENCES domains(id),
    role TEXT NOT NULL DEFAULT 'client' CHECK (role IN ('super_admin', 'admin', 'client')),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_login_at TEXT
);

CREATE TABLE IF NOT EXISTS domains (
    id TEXT PRIMARY KEY,
    domain TEXT NOT NULL UNIQUE,
    description TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_by TEXT NOT NULL REFERENCES users(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    folder TEXT NOT NULL DEFAULT 'inbox'
        CHECK (folder IN ('inbox', 'sent', 'drafts', 'spam', 'trash')),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    action TEXT NOT NULL,
    target_user_id TEXT REFERENCES users(id),
    details TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    sid TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at);
CREATE INDEX IF NOT EXISTS idx_emails_user_folder ON emails(user_id, folder);
CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_session_expire ON sessions(expires_at);

CREATE TRIGGER IF NOT EXISTS audit_logs_no_update
BEFORE UPDATE ON audit_logs
BEGIN
    SELECT RAISE(ABORT, 'audit_logs is append-only');
END;

CREATE TRIGGER IF NOT EXISTS audit_logs_no_delete
BEFORE DELETE ON audit_logs
BEGIN
    SELECT RAISE(ABORT, 'audit_logs is append-only');
END;
"""

_USER_COLUMNS = {
    "first_name": "first_name",
    "last_name": "last_name",
    "role": "role",
    "is_active": "is_active",
    "last_login_at": "last_login_at",
}


class Database:
    """Simple wrapper around SQLite for the credential, message and audit stores.

    Every public method accepts an optional ``conn`` so that several
    statements can share one transaction opened with :meth:`transaction`.
    Without it each call runs in its own short transaction.
    """

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and roll back on error."""

        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def _using(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as owned:
            yield owned

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self.transaction() as conn:
            conn.executescript(_SCHEMA)

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def insert_user(
        self,
        *,
        username: str,
        password_hash: str,
        email: Optional[str],
        role: Role,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        domain_id: Optional[str] = None,
        is_active: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> User:
        """Insert a user row. Uniqueness violations surface as ``sqlite3.IntegrityError``."""

        user_id = _new_id()
        now = _serialize_datetime(current_timestamp())
        with self._using(conn) as db:
            db.execute(
                """
                INSERT INTO users (
                    id, username, password_hash, email, first_name, last_name,
                    domain_id, role, is_active, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    username,
                    password_hash,
                    email,
                    first_name,
                    last_name,
                    domain_id,
                    Role(role).value,
                    int(bool(is_active)),
                    now,
                    now,
                ),
            )
            user = self.get_user(user_id, conn=db)
        if user is None:
            raise RuntimeError("Failed to load user after creation")
        return user

    def get_user(self, user_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self._using(conn) as db:
            row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        row = self._get_user_row_by_username(username)
        if row is None:
            return None
        return self._row_to_user(row)

    def get_credentials(self, username: str) -> Optional[Tuple[User, str]]:
        """Return the user together with its stored password hash."""

        row = self._get_user_row_by_username(username)
        if row is None:
            return None
        return self._row_to_user(row), str(row["password_hash"])

    def _get_user_row_by_username(self, username: str) -> Optional[sqlite3.Row]:
        with self._using(None) as db:
            return db.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()

    def list_users(self, role: Optional[Role] = None) -> List[User]:
        with self._using(None) as db:
            if role is not None:
                rows = db.execute(
                    "SELECT * FROM users WHERE role = ? ORDER BY created_at DESC, rowid DESC",
                    (Role(role).value,),
                ).fetchall()
            else:
                rows = db.execute("SELECT * FROM users ORDER BY created_at DESC, rowid DESC").fetchall()
        return [self._row_to_user(row) for row in rows]

    def search_users(self, query: str) -> List[User]:
        """Case-sensitive substring match over first name, last name and email."""

        with self._using(None) as db:
            rows = db.execute(
                """
                SELECT * FROM users
                 WHERE instr(COALESCE(first_name, ''), ?) > 0
                    OR instr(COALESCE(last_name, ''), ?) > 0
                    OR instr(COALESCE(email, ''), ?) > 0
                 ORDER BY created_at DESC, rowid DESC
                """,
                (query, query, query),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users_by_role(self) -> Dict[Role, int]:
        counts = {role: 0 for role in Role}
        with self._using(None) as db:
            rows = db.execute("SELECT role, COUNT(*) AS total FROM users GROUP BY role").fetchall()
        for row in rows:
            counts[Role(row["role"])] = int(row["total"])
        return counts

    def count_active_logins_between(self, start: datetime, end: datetime) -> int:
        """Count active users whose last login falls in ``[start, end)``."""

        with self._using(None) as db:
            row = db.execute(
                """
                SELECT COUNT(*) AS total FROM users
                 WHERE is_active = 1
                   AND last_login_at IS NOT NULL
                   AND last_login_at >= ?
                   AND last_login_at < ?
                """,
                (_serialize_datetime(start), _serialize_datetime(end)),
            ).fetchone()
        return int(row["total"])

    def update_user_fields(
        self,
        user_id: str,
        fields: Mapping[str, object],
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[User]:
        """Apply a partial update; returns ``None`` when the user does not exist."""

        updates: List[str] = []
        values: List[object] = []
        for key, column in _USER_COLUMNS.items():
            if key not in fields:
                continue
            value = fields[key]
            if column == "role" and value is not None:
                value = Role(value).value  # type: ignore[arg-type]
            elif column == "is_active":
                value = int(bool(value))
            elif column == "last_login_at" and isinstance(value, datetime):
                value = _serialize_datetime(value)
            updates.append(f"{column} = ?")
            values.append(value)

        updates.append("updated_at = ?")
        values.append(_serialize_datetime(current_timestamp()))
        values.append(user_id)
        query = f"UPDATE users SET {', '.join(updates)} WHERE id = ?"

        with self._using(conn) as db:
            cursor = db.execute(query, values)
            if cursor.rowcount == 0:
                return None
            return self.get_user(user_id, conn=db)

    def set_password_hash(
        self,
        user_id: str,
        password_hash: str,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        with self._using(conn) as db:
            cursor = db.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (password_hash, _serialize_datetime(current_timestamp()), user_id),
            )
            return cursor.rowcount > 0

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._using(None) as db:
            db.execute(
                "UPDATE users SET last_login_at = ? WHERE id = ?",
                (_serialize_datetime(when), user_id),
            )

    # ------------------------------------------------------------------
    # Domain management
    # ------------------------------------------------------------------
    def list_domains(self) -> List[Domain]:
        with self._using(None) as db:
            rows = db.execute("SELECT * FROM domains ORDER BY created_at DESC, rowid DESC").fetchall()
        return [self._row_to_domain(row) for row in rows]

    def get_domain(self, domain_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Domain]:
        with self._using(conn) as db:
            row = db.execute("SELECT * FROM domains WHERE id = ?", (domain_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_domain(row)

    def insert_domain(
        self,
        *,
        domain: str,
        description: Optional[str],
        created_by: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Domain:
        domain_id = _new_id()
        with self._using(conn) as db:
            db.execute(
                """
                INSERT INTO domains (id, domain, description, is_active, created_by, created_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (domain_id, domain, description, created_by, _serialize_datetime(current_timestamp())),
            )
            created = self.get_domain(domain_id, conn=db)
        if created is None:
            raise RuntimeError("Failed to load domain after creation")
        return created

    def set_domain_active(
        self,
        domain_id: str,
        is_active: bool,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Domain]:
        with self._using(conn) as db:
            cursor = db.execute(
                "UPDATE domains SET is_active = ? WHERE id = ?",
                (int(bool(is_active)), domain_id),
            )
            if cursor.rowcount == 0:
                return None
            return self.get_domain(domain_id, conn=db)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def list_emails(self, user_id: str, folder: Folder) -> List[Email]:
        with self._using(None) as db:
            rows = db.execute(
                """
                SELECT * FROM emails
                 WHERE user_id = ? AND folder = ?
                 ORDER BY created_at DESC, rowid DESC
                """,
                (user_id, Folder(folder).value),
            ).fetchall()
        return [self._row_to_email(row) for row in rows]

    def get_email_for_owner(
        self,
        email_id: str,
        user_id: str,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Email]:
        with self._using(conn) as db:
            row = db.execute(
                "SELECT * FROM emails WHERE id = ? AND user_id = ?",
                (email_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_email(row)

    def insert_email(
        self,
        user_id: str,
        *,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        folder: Folder = Folder.INBOX,
    ) -> Email:
        email_id = _new_id()
        with self._using(None) as db:
            db.execute(
                """
                INSERT INTO emails (
                    id, user_id, sender, recipient, subject, body,
                    is_read, is_starred, folder, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                """,
                (
                    email_id,
                    user_id,
                    sender,
                    recipient,
                    subject,
                    body,
                    Folder(folder).value,
                    _serialize_datetime(current_timestamp()),
                ),
            )
            created = self.get_email_for_owner(email_id, user_id, conn=db)
        if created is None:
            raise RuntimeError("Failed to load message after creation")
        return created

    def update_email_flags(
        self,
        email_id: str,
        user_id: str,
        *,
        is_read: Optional[bool] = None,
        is_starred: Optional[bool] = None,
    ) -> Optional[Email]:
        """Update read/starred flags on a message owned by ``user_id``."""

        updates: List[str] = []
        values: List[object] = []
        if is_read is not None:
            updates.append("is_read = ?")
            values.append(int(is_read))
        if is_starred is not None:
            updates.append("is_starred = ?")
            values.append(int(is_starred))

        with self._using(None) as db:
            if updates:
                values.extend([email_id, user_id])
                db.execute(
                    f"UPDATE emails SET {', '.join(updates)} WHERE id = ? AND user_id = ?",
                    values,
                )
            return self.get_email_for_owner(email_id, user_id, conn=db)

    def move_email(self, email_id: str, user_id: str, folder: Folder) -> Optional[Email]:
        with self._using(None) as db:
            cursor = db.execute(
                "UPDATE emails SET folder = ? WHERE id = ? AND user_id = ?",
                (Folder(folder).value, email_id, user_id),
            )
            if cursor.rowcount == 0:
                return None
            return self.get_email_for_owner(email_id, user_id, conn=db)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def insert_audit_entry(
        self,
        *,
        user_id: str,
        action: str,
        target_user_id: Optional[str],
        details: Optional[Mapping[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> AuditLogEntry:
        entry_id = _new_id()
        created_at = current_timestamp()
        payload = json.dumps(dict(details), default=str) if details is not None else None
        with self._using(conn) as db:
            db.execute(
                """
                INSERT INTO audit_logs (id, user_id, action, target_user_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entry_id, user_id, action, target_user_id, payload, _serialize_datetime(created_at)),
            )
        return AuditLogEntry(
            id=entry_id,
            user_id=user_id,
            action=action,
            target_user_id=target_user_id,
            details=json.loads(payload) if payload is not None else None,
            created_at=created_at,
        )

    def list_audit_entries(self, limit: int = 100) -> List[AuditLogEntry]:
        with self._using(None) as db:
            rows = db.execute(
                "SELECT * FROM audit_logs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [self._row_to_audit_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def insert_session(self, sid: str, user_id: str, *, created_at: datetime, ttl: timedelta) -> datetime:
        expires_at = created_at + ttl
        with self._using(None) as db:
            db.execute(
                "INSERT INTO sessions (sid, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (sid, user_id, _serialize_datetime(created_at), _serialize_datetime(expires_at)),
            )
        return expires_at

    def get_session(self, sid: str) -> Optional[Tuple[str, datetime]]:
        """Return ``(user_id, expires_at)`` for a stored session."""

        with self._using(None) as db:
            row = db.execute("SELECT user_id, expires_at FROM sessions WHERE sid = ?", (sid,)).fetchone()
        if row is None:
            return None
        return str(row["user_id"]), _parse_datetime(str(row["expires_at"]))

    def delete_session(self, sid: str) -> None:
        with self._using(None) as db:
            db.execute("DELETE FROM sessions WHERE sid = ?", (sid,))

    def delete_user_sessions(self, user_id: str, *, conn: Optional[sqlite3.Connection] = None) -> int:
        with self._using(conn) as db:
            cursor = db.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._using(None) as db:
            cursor = db.execute("DELETE FROM sessions WHERE expires_at <= ?", (_serialize_datetime(now),))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=str(row["id"]),
            username=str(row["username"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=Role(row["role"]),
            is_active=bool(row["is_active"]),
            domain_id=row["domain_id"],
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            last_login_at=_parse_optional_datetime(row["last_login_at"]),
        )

    def _row_to_domain(self, row: sqlite3.Row) -> Domain:
        return Domain(
            id=str(row["id"]),
            domain=str(row["domain"]),
            description=row["description"],
            is_active=bool(row["is_active"]),
            created_by=str(row["created_by"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_email(self, row: sqlite3.Row) -> Email:
        return Email(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            sender=str(row["sender"]),
            recipient=str(row["recipient"]),
            subject=str(row["subject"]),
            body=str(row["body"]),
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            folder=Folder(row["folder"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_audit_entry(self, row: sqlite3.Row) -> AuditLogEntry:
        details = row["details"]
        return AuditLogEntry(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            action=str(row["action"]),
            target_user_id=row["target_user_id"],
            details=json.loads(details) if details else None,
            created_at=_parse_datetime(str(row["created_at"])),
        )


__all__ = [
    "Database",
    "burn_password_check",
    "current_timestamp",
    "hash_password",
    "password_needs_rehash",
    "verify_password",
]
