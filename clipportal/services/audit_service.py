"""
clipportal.services.audit_service — Bounded Audit Trail
========================================================

Append-only record of security-relevant actions.  ``record`` never raises:
a broken audit table must not fail the login or deletion that triggered
it.  After each insert the table is trimmed to the newest ``cap`` rows.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from clipportal.constants import isoformat
from clipportal.database.engine import get_session
from clipportal.database.models import AuditEntry
from clipportal.errors import Internal
from clipportal.services.crypto import FieldCipher

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, engine: Engine, cipher: FieldCipher, cap: int = 1000) -> None:
        self.engine = engine
        self.cipher = cipher
        self.cap = cap

    def record(
        self,
        user_id: str | None,
        action: str,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Append an entry; failures are logged and swallowed."""
        try:
            payload = json.dumps(details or {}, default=str)
            with get_session(self.engine) as session:
                session.add(AuditEntry(
                    user_id=user_id,
                    action=str(action),
                    details=self.cipher.encrypt(payload),
                    ip_address=ip_address,
                    user_agent=(user_agent or "")[:255] or None,
                ))
                session.flush()
                self._trim(session)
        except (Internal, SQLAlchemyError, TypeError, ValueError):
            logger.warning("Audit record %s for user %s was not stored", action, user_id)

    def _trim(self, session) -> None:
        total = session.scalar(select(func.count()).select_from(AuditEntry)) or 0
        excess = total - self.cap
        if excess <= 0:
            return
        oldest = session.scalars(
            select(AuditEntry.id).order_by(AuditEntry.id.asc()).limit(excess)
        ).all()
        session.execute(delete(AuditEntry).where(AuditEntry.id.in_(oldest)))

    def entries(
        self, user_id: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Newest-first entries with decrypted details (admin view)."""
        stmt = select(AuditEntry).order_by(AuditEntry.id.desc())
        if user_id:
            stmt = stmt.where(AuditEntry.user_id == user_id)
        stmt = stmt.limit(max(1, min(limit, self.cap))).offset(max(0, offset))
        with get_session(self.engine) as session:
            rows = session.scalars(stmt).all()
            return [self._to_dict(row) for row in rows]

    def count(self) -> int:
        with get_session(self.engine) as session:
            return session.scalar(select(func.count()).select_from(AuditEntry)) or 0

    def _to_dict(self, row: AuditEntry) -> dict[str, Any]:
        raw = self.cipher.decrypt(row.details)
        try:
            details = json.loads(raw) if raw else {}
        except (json.JSONDecodeError, TypeError):
            details = {"raw": raw}
        return {
            "id": row.id,
            "user_id": row.user_id,
            "action": row.action,
            "details": details,
            "ip_address": row.ip_address,
            "user_agent": row.user_agent,
            "timestamp": isoformat(row.timestamp),
        }
