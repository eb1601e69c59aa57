"""Request and response schemas for the JSON API (camelCase on the wire)."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import FieldError, ValidationError
from .models import AuditLogEntry, Domain, Email, Folder, Role, User, UserStats

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+$"
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(CamelModel):
    """Request bodies reject keys they do not declare."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


def _normalise_email(value: str) -> str:
    stripped = value.strip().lower()
    if not _EMAIL_PATTERN.match(stripped):
        raise ValueError("must be a valid email address")
    return stripped


def _strip_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class LoginRequest(RequestModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)


class CreateUserRequest(RequestModel):
    username: str = Field(..., min_length=3, max_length=64)
    email: str = Field(..., max_length=254)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: Role
    domain_id: Optional[str] = Field(default=None, max_length=64)
    temp_password: str = Field(..., min_length=6, max_length=256)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        stripped = value.strip()
        if not _USERNAME_PATTERN.match(stripped):
            raise ValueError("may only contain letters, digits, '.', '_' and '-'")
        return stripped

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalise_email(value)

    @field_validator("first_name", "last_name", "domain_id")
    @classmethod
    def _normalize_optional(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)


class UpdateUserRequest(RequestModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    last_login_at: Optional[datetime] = None

    @field_validator("role", "is_active")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("must not be null")
        return value

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_optional(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)

    def to_patch(self) -> Dict[str, Any]:
        """Return only the fields the caller supplied, keyed by column name."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    def audit_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class ResetPasswordRequest(RequestModel):
    password: str = Field(..., min_length=6, max_length=256)


class CreateEmailRequest(RequestModel):
    recipient: str = Field(..., max_length=254)
    subject: str = Field(..., max_length=998)
    body: str = Field(..., max_length=100_000)

    @field_validator("recipient")
    @classmethod
    def _normalize_recipient(cls, value: str) -> str:
        return _normalise_email(value)


class EmailStatusRequest(RequestModel):
    is_read: Optional[bool] = None
    is_starred: Optional[bool] = None


class MoveEmailRequest(RequestModel):
    folder: Folder


class CreateDomainRequest(RequestModel):
    domain: str = Field(..., min_length=1, max_length=253)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        cleaned = value.strip().lower().rstrip(".")
        if not _DOMAIN_PATTERN.match(cleaned):
            raise ValueError("must be a valid domain name")
        return cleaned

    @field_validator("description")
    @classmethod
    def _normalize_description(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)


class DomainStatusRequest(RequestModel):
    is_active: bool


class UserResponse(CamelModel):
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
    last_login_at: Optional[datetime]


class UserStatsResponse(CamelModel):
    total: int
    admins: int
    clients: int
    active_today: int


class DomainResponse(CamelModel):
    id: str
    domain: str
    description: Optional[str]
    is_active: bool
    created_by: str
    created_at: datetime


class EmailResponse(CamelModel):
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


class AuditLogResponse(CamelModel):
    id: str
    user_id: str
    action: str
    target_user_id: Optional[str]
    details: Optional[Dict[str, Any]]
    created_at: datetime


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        is_active=user.is_active,
        domain_id=user.domain_id,
        created_at=user.created_at,
        updated_at=user.updated_at,
        last_login_at=user.last_login_at,
    )


def stats_to_response(stats: UserStats) -> UserStatsResponse:
    return UserStatsResponse(
        total=stats.total,
        admins=stats.admins,
        clients=stats.clients,
        active_today=stats.active_today,
    )


def domain_to_response(domain: Domain) -> DomainResponse:
    return DomainResponse(
        id=domain.id,
        domain=domain.domain,
        description=domain.description,
        is_active=domain.is_active,
        created_by=domain.created_by,
        created_at=domain.created_at,
    )


def email_to_response(email: Email) -> EmailResponse:
    return EmailResponse(
        id=email.id,
        user_id=email.user_id,
        sender=email.sender,
        recipient=email.recipient,
        subject=email.subject,
        body=email.body,
        is_read=email.is_read,
        is_starred=email.is_starred,
        folder=email.folder,
        created_at=email.created_at,
    )


def audit_entry_to_response(entry: AuditLogEntry) -> AuditLogResponse:
    return AuditLogResponse(
        id=entry.id,
        user_id=entry.user_id,
        action=entry.action,
        target_user_id=entry.target_user_id,
        details=entry.details,
        created_at=entry.created_at,
    )


def field_errors(errors: List[Dict[str, Any]]) -> List[FieldError]:
    """Flatten pydantic error dicts into one :class:`FieldError` per failure."""

    flattened: List[FieldError] = []
    for error in errors:
        location = [part for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        # A bare position means the body itself could not be decoded.
        if len(location) == 1 and isinstance(location[0], int):
            location = []
        field = ".".join(str(part) for part in location) or "body"
        message = str(error.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        flattened.append(FieldError(field, message))
    return flattened


def parse_request(model: type[BaseModel], data: Dict[str, Any]) -> Any:
    """Validate ``data`` outside of FastAPI, raising the service :class:`ValidationError`."""

    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(field_errors(exc.errors())) from exc


__all__ = [
    "AuditLogResponse",
    "CreateDomainRequest",
    "CreateEmailRequest",
    "CreateUserRequest",
    "DomainResponse",
    "DomainStatusRequest",
    "EmailResponse",
    "EmailStatusRequest",
    "HealthResponse",
    "LoginRequest",
    "MessageResponse",
    "MoveEmailRequest",
    "ResetPasswordRequest",
    "UpdateUserRequest",
    "UserResponse",
    "UserStatsResponse",
    "audit_entry_to_response",
    "domain_to_response",
    "email_to_response",
    "field_errors",
    "parse_request",
    "stats_to_response",
    "user_to_response",
]
