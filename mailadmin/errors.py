"""Error taxonomy shared by the handlers and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


class MailAdminError(Exception):
    """Base class for errors that map onto a stable HTTP status."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(MailAdminError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(MailAdminError):
    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(MailAdminError):
    status_code = 404
    default_message = "Not found"


class ConflictError(MailAdminError):
    status_code = 409
    default_message = "Resource already exists"


class ValidationError(MailAdminError):
    """Malformed input; carries every failing field."""

    status_code = 400
    default_message = "Validation error"

    def __init__(self, errors: Iterable[FieldError], message: Optional[str] = None) -> None:
        self.errors: List[FieldError] = list(errors)
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldError(field, message)])


class AuditError(MailAdminError):
    """Raised when an audit entry could not be appended."""


__all__ = [
    "AuditError",
    "ConflictError",
    "FieldError",
    "Forbidden",
    "MailAdminError",
    "NotFound",
    "Unauthenticated",
    "ValidationError",
]
