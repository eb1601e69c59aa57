"""Resource handlers: access policy first, store mutation, audit entry in the same transaction."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from . import audit
from .audit import AuditRecorder
from .config import Settings
from .database import Database, current_timestamp, hash_password
from .errors import ConflictError, MailAdminError, NotFound, ValidationError
from .models import AuditLogEntry, Domain, Email, Folder, Role, User, UserStats
from .schemas import (
    CreateDomainRequest,
    CreateEmailRequest,
    CreateUserRequest,
    EmailStatusRequest,
    UpdateUserRequest,
)
from .security import (
    ensure_can_modify,
    require_admin_or_above,
    require_authenticated,
    require_super_admin,
)

logger = logging.getLogger("mailadmin.handlers")

MAX_AUDIT_LOG_LIMIT = 500

_UNIQUE_FIELDS = {
    "users.username": ("username", "Username already exists"),
    "users.email": ("email", "Email already exists"),
    "domains.domain": ("domain", "Domain already exists"),
}


def translate_integrity_error(exc: sqlite3.IntegrityError, *, reference_field: str = "id") -> MailAdminError:
    """Map a constraint violation onto the service error taxonomy."""

    message = str(exc)
    if "UNIQUE constraint failed" in message:
        for column, (_, text) in _UNIQUE_FIELDS.items():
            if column in message:
                return ConflictError(text)
        return ConflictError()
    if "FOREIGN KEY constraint failed" in message:
        return ValidationError.single(reference_field, "Referenced record does not exist")
    return ValidationError.single(reference_field, "Invalid value")


def calendar_day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class UserHandlers:
    def __init__(self, database: Database, recorder: AuditRecorder) -> None:
        self._database = database
        self._recorder = recorder

    def get_current(self, actor: Optional[User]) -> User:
        return require_authenticated(actor)

    def list_users(
        self,
        actor: Optional[User],
        *,
        role: Optional[Role] = None,
        search: Optional[str] = None,
    ) -> List[User]:
        """List users; a non-empty ``search`` takes precedence over ``role``."""

        require_admin_or_above(actor)
        if search:
            return self._database.search_users(search)
        return self._database.list_users(role)

    def get_user_stats(self, actor: Optional[User], *, now: Optional[datetime] = None) -> UserStats:
        """Count users per bucket; "active today" means a login on the current UTC calendar day."""

        require_admin_or_above(actor)
        counts = self._database.count_users_by_role()
        moment = now or current_timestamp()
        today = moment.astimezone(timezone.utc).date()
        start, end = calendar_day_bounds(today)
        return UserStats(
            total=sum(counts.values()),
            admins=counts[Role.ADMIN],
            clients=counts[Role.CLIENT],
            active_today=self._database.count_active_logins_between(start, end),
        )

    def create_user(self, actor: Optional[User], request: CreateUserRequest) -> User:
        principal = require_super_admin(actor)
        user = self._insert_user(request, actor_id=principal.id)
        logger.info(
            "User %s created account %s (%s) with role %s",
            principal.id,
            user.id,
            user.username,
            user.role.value,
        )
        return user

    def bootstrap_user(self, request: CreateUserRequest) -> User:
        """Create an account from the command line; the new user is recorded as the actor."""

        user = self._insert_user(request, actor_id=None)
        logger.info("Bootstrapped account %s (%s) with role %s", user.id, user.username, user.role.value)
        return user

    def _insert_user(self, request: CreateUserRequest, *, actor_id: Optional[str]) -> User:
        password_hash = hash_password(request.temp_password)
        try:
            with self._database.transaction() as conn:
                if request.domain_id and self._database.get_domain(request.domain_id, conn=conn) is None:
                    raise ValidationError.single("domainId", "Domain does not exist")
                user = self._database.insert_user(
                    username=request.username,
                    password_hash=password_hash,
                    email=request.email,
                    role=request.role,
                    first_name=request.first_name,
                    last_name=request.last_name,
                    domain_id=request.domain_id,
                    conn=conn,
                )
                details = {"userEmail": user.email, "userRole": user.role.value}
                if actor_id is None:
                    details["source"] = "cli"
                self._recorder.record(conn, actor_id or user.id, audit.CREATE_USER, user.id, details)
        except sqlite3.IntegrityError as exc:
            raise translate_integrity_error(exc, reference_field="domainId") from exc
        return user

    def update_user(self, actor: Optional[User], user_id: str, request: UpdateUserRequest) -> User:
        principal = require_admin_or_above(actor)
        patch = request.to_patch()
        with self._database.transaction() as conn:
            target = self._database.get_user(user_id, conn=conn)
            if target is None:
                raise NotFound("User not found")
            ensure_can_modify(principal, target, patch.get("role"))
            updated = self._database.update_user_fields(user_id, patch, conn=conn)
            if updated is None:
                raise NotFound("User not found")
            self._recorder.record(conn, principal.id, audit.UPDATE_USER, user_id, request.audit_payload())
            if patch.get("is_active") is False:
                self._database.delete_user_sessions(user_id, conn=conn)

        logger.info("User %s updated account %s (%s)", principal.id, user_id, ", ".join(sorted(patch)) or "no fields")
        return updated

    def reset_password(self, actor: Optional[User], user_id: str, password: str) -> User:
        principal = require_super_admin(actor)
        return self._reset_password(principal.id, user_id, password)

    def bootstrap_password(self, username: str, password: str) -> User:
        """Reset a password from the command line; the account itself is recorded as the actor."""

        user = self._database.get_user_by_username(username)
        if user is None:
            raise NotFound("User not found")
        return self._reset_password(user.id, user.id, password)

    def _reset_password(self, actor_id: str, user_id: str, password: str) -> User:
        if len(password) < 6:
            raise ValidationError.single("password", "Password must be at least 6 characters")
        password_hash = hash_password(password)
        with self._database.transaction() as conn:
            target = self._database.get_user(user_id, conn=conn)
            if target is None:
                raise NotFound("User not found")
            self._database.set_password_hash(user_id, password_hash, conn=conn)
            self._database.delete_user_sessions(user_id, conn=conn)
            self._recorder.record(conn, actor_id, audit.RESET_PASSWORD, user_id, {"username": target.username})
        logger.info("Password reset for account %s by %s", user_id, actor_id)
        return target


class DomainHandlers:
    def __init__(self, database: Database, recorder: AuditRecorder) -> None:
        self._database = database
        self._recorder = recorder

    def list_domains(self, actor: Optional[User]) -> List[Domain]:
        require_super_admin(actor)
        return self._database.list_domains()

    def create_domain(self, actor: Optional[User], request: CreateDomainRequest) -> Domain:
        principal = require_super_admin(actor)
        try:
            with self._database.transaction() as conn:
                domain = self._database.insert_domain(
                    domain=request.domain,
                    description=request.description,
                    created_by=principal.id,
                    conn=conn,
                )
                self._recorder.record(
                    conn,
                    principal.id,
                    audit.CREATE_DOMAIN,
                    None,
                    {"domain": domain.domain, "domainId": domain.id},
                )
        except sqlite3.IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        logger.info("User %s created domain %s", principal.id, domain.domain)
        return domain

    def set_domain_active(self, actor: Optional[User], domain_id: str, is_active: bool) -> Domain:
        principal = require_super_admin(actor)
        with self._database.transaction() as conn:
            current = self._database.get_domain(domain_id, conn=conn)
            if current is None:
                raise NotFound("Domain not found")
            updated = self._database.set_domain_active(domain_id, is_active, conn=conn)
            if updated is None:
                raise NotFound("Domain not found")
            self._recorder.record(
                conn,
                principal.id,
                audit.UPDATE_DOMAIN_STATUS,
                None,
                {
                    "domain": current.domain,
                    "domainId": domain_id,
                    "isActive": bool(is_active),
                    "previous": current.is_active,
                },
            )
        logger.info(
            "User %s set domain %s active=%s",
            principal.id,
            current.domain,
            bool(is_active),
        )
        return updated


class MessageHandlers:
    """Message operations, always scoped to the calling user's own records."""

    def __init__(self, database: Database, *, sender_domain: str) -> None:
        self._database = database
        self._sender_domain = sender_domain

    def list_for_owner(self, actor: Optional[User], folder: Folder = Folder.INBOX) -> List[Email]:
        principal = require_authenticated(actor)
        return self._database.list_emails(principal.id, Folder(folder))

    def send(self, actor: Optional[User], request: CreateEmailRequest) -> Email:
        principal = require_authenticated(actor)
        return self._database.insert_email(
            principal.id,
            sender=self.sender_address(principal),
            recipient=request.recipient,
            subject=request.subject,
            body=request.body,
            folder=Folder.SENT,
        )

    def set_status(self, actor: Optional[User], email_id: str, request: EmailStatusRequest) -> Email:
        principal = require_authenticated(actor)
        updated = self._database.update_email_flags(
            email_id,
            principal.id,
            is_read=request.is_read,
            is_starred=request.is_starred,
        )
        if updated is None:
            raise NotFound("Email not found")
        return updated

    def move(self, actor: Optional[User], email_id: str, folder: Folder) -> Email:
        principal = require_authenticated(actor)
        updated = self._database.move_email(email_id, principal.id, Folder(folder))
        if updated is None:
            raise NotFound("Email not found")
        return updated

    def sender_address(self, user: User) -> str:
        domain_name = self._sender_domain
        if user.domain_id:
            domain = self._database.get_domain(user.domain_id)
            if domain is not None and domain.is_active:
                domain_name = domain.domain
        return f"{user.username.lower()}@{domain_name}"


class AuditLogHandlers:
    def __init__(self, database: Database, *, default_limit: int = 100) -> None:
        self._database = database
        self._default_limit = default_limit

    def list_audit_logs(self, actor: Optional[User], limit: Optional[int] = None) -> List[AuditLogEntry]:
        require_admin_or_above(actor)
        effective = self._default_limit if limit is None else limit
        if effective < 1 or effective > MAX_AUDIT_LOG_LIMIT:
            raise ValidationError.single("limit", f"must be between 1 and {MAX_AUDIT_LOG_LIMIT}")
        return self._database.list_audit_entries(effective)


@dataclass(frozen=True)
class Handlers:
    users: UserHandlers
    domains: DomainHandlers
    messages: MessageHandlers
    audit_logs: AuditLogHandlers


def build_handlers(database: Database, settings: Settings) -> Handlers:
    recorder = AuditRecorder(database, strict=settings.strict_audit)
    return Handlers(
        users=UserHandlers(database, recorder),
        domains=DomainHandlers(database, recorder),
        messages=MessageHandlers(database, sender_domain=settings.sender_domain),
        audit_logs=AuditLogHandlers(database, default_limit=settings.audit_log_limit),
    )


__all__ = [
    "AuditLogHandlers",
    "DomainHandlers",
    "Handlers",
    "MessageHandlers",
    "UserHandlers",
    "build_handlers",
    "calendar_day_bounds",
    "translate_integrity_error",
]
