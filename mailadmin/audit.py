"""Append-only audit trail for privileged mutations."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Mapping, Optional

from .database import Database
from .errors import AuditError
from .models import AuditLogEntry

logger = logging.getLogger("mailadmin.audit")

CREATE_USER = "CREATE_USER"
UPDATE_USER = "UPDATE_USER"
RESET_PASSWORD = "RESET_PASSWORD"
CREATE_DOMAIN = "CREATE_DOMAIN"
UPDATE_DOMAIN_STATUS = "UPDATE_DOMAIN_STATUS"

_SAVEPOINT = "audit_append"


class AuditRecorder:
    """Write audit entries inside the transaction of the triggering mutation.

    In strict mode a failed append raises :class:`AuditError`, which rolls the
    whole transaction back so no privileged change is left unrecorded. With
    ``strict=False`` the append runs under a savepoint; a failure is logged
    and the mutation still commits.
    """

    def __init__(self, database: Database, *, strict: bool = True) -> None:
        self._database = database
        self._strict = strict

    @property
    def strict(self) -> bool:
        return self._strict

    def record(
        self,
        conn: sqlite3.Connection,
        actor_id: str,
        action: str,
        target_user_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        if self._strict:
            try:
                return self._append(conn, actor_id, action, target_user_id, details)
            except sqlite3.Error as exc:
                logger.exception("Failed to record audit entry %s by %s", action, actor_id)
                raise AuditError() from exc

        conn.execute(f"SAVEPOINT {_SAVEPOINT}")
        try:
            entry = self._append(conn, actor_id, action, target_user_id, details)
        except sqlite3.Error:
            conn.execute(f"ROLLBACK TO SAVEPOINT {_SAVEPOINT}")
            conn.execute(f"RELEASE SAVEPOINT {_SAVEPOINT}")
            logger.exception(
                "Failed to record audit entry %s by %s; keeping the mutation",
                action,
                actor_id,
            )
            return None
        conn.execute(f"RELEASE SAVEPOINT {_SAVEPOINT}")
        return entry

    def _append(
        self,
        conn: sqlite3.Connection,
        actor_id: str,
        action: str,
        target_user_id: Optional[str],
        details: Optional[Mapping[str, Any]],
    ) -> AuditLogEntry:
        entry = self._database.insert_audit_entry(
            user_id=actor_id,
            action=action,
            target_user_id=target_user_id,
            details=details,
            conn=conn,
        )
        logger.debug("Recorded audit entry %s by %s (target=%s)", action, actor_id, target_user_id)
        return entry


__all__ = [
    "AuditRecorder",
    "CREATE_DOMAIN",
    "CREATE_USER",
    "RESET_PASSWORD",
    "UPDATE_DOMAIN_STATUS",
    "UPDATE_USER",
]
