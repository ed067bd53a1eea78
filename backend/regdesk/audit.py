from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy import select

from .db import Database
from .models import AdminLog

logger = logging.getLogger("regdesk.audit")

SECURITY_ACTIONS = ("security_event", "ip_blocked", "ip_unblocked", "suspicious_activity")


def key_hint(key: Optional[str]) -> Optional[str]:
    if not key:
        return None
    return f"{key[:4]}..."


def _dump(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=True, default=str)


def _serialize(row: AdminLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "old_value": row.old_value,
        "new_value": row.new_value,
        "admin_key_hint": row.admin_key_hint,
        "ip_address": row.ip_address,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
    }


class AuditLog:
    """Append-only trail of admin and security actions in ``admin_logs``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def record(
        self,
        action: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        admin_key_hint: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        with self.db.session() as session:
            session.add(
                AdminLog(
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    old_value=_dump(old_value),
                    new_value=_dump(new_value),
                    admin_key_hint=admin_key_hint,
                    ip_address=ip,
                )
            )

    def security_event(self, ip: str, reason: str, *, path: Optional[str] = None, user_agent: Optional[str] = None) -> None:
        logger.warning("Security event", extra={"event": "security_event", "ip": ip, "reason": reason, "path": path})
        self.record(
            "security_event",
            entity_type="security",
            entity_id=ip,
            ip=ip,
            new_value={"reason": reason, "path": path, "user_agent": (user_agent or "")[:200]},
        )

    def recent(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.db.session() as session:
            rows = session.execute(select(AdminLog).order_by(AdminLog.timestamp.desc(), AdminLog.id.desc()).limit(limit))
            return [_serialize(row) for row in rows.scalars()]

    def security_events(self, limit: int = 50) -> list[dict[str, Any]]:
        with self.db.session() as session:
            rows = session.execute(
                select(AdminLog)
                .where(AdminLog.action.in_(SECURITY_ACTIONS))
                .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
                .limit(limit)
            )
            return [_serialize(row) for row in rows.scalars()]
