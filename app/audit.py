from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.models import AuditActorType, AuditLog

logger = logging.getLogger("app.audit")


@dataclass(frozen=True, slots=True)
class AuditContext:
    """Who triggered an attendance change, and from where."""

    actor_type: AuditActorType
    actor_id: str
    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @classmethod
    def for_employee(cls, employee_id: int) -> AuditContext:
        return cls(actor_type=AuditActorType.EMPLOYEE, actor_id=str(employee_id))


def log_audit(
    db: Session,
    context: AuditContext,
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    success: bool = True,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    Nothing is committed here: the row lands with the same commit as the
    attendance write it describes, or not at all.
    """
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=context.actor_type,
        actor_id=context.actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=context.ip,
        user_agent=context.user_agent,
        success=success,
        details=details or {},
    )
    db.add(audit)
    logger.info(
        "audit_event",
        extra={
            "request_id": context.request_id,
            "action": action,
            "actor_type": context.actor_type.value,
            "actor_id": context.actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )
    return audit
