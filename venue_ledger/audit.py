import logging
from typing import Optional

from sqlalchemy import select

from .db import SessionLocal
from .models import AuditLog

logger = logging.getLogger(__name__)


def record_decision(
    decision_id: str,
    venue_id: str,
    operator_id: str,
    action: str,
    entity_kind: str,
    entity_id: Optional[str],
    status: str,
    reason_code: str,
) -> None:
    # Own session: a rejected decision has already rolled its work back.
    db = SessionLocal()
    try:
        db.add(AuditLog(
            decision_id=decision_id,
            venue_id=venue_id,
            operator_id=operator_id,
            action=action,
            entity_kind=entity_kind,
            entity_id=entity_id,
            status=status,
            reason_code=reason_code,
        ))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("failed to write audit row decision_id=%s action=%s", decision_id, action)
    finally:
        db.close()


def recent_decisions(db, venue_id: Optional[str] = None, limit: int = 80) -> list:
    q = select(AuditLog)
    if venue_id:
        q = q.where(AuditLog.venue_id == venue_id)
    rows = db.execute(q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)).scalars().all()
    return [
        {
            "created_at": str(log.created_at),
            "decision_id": log.decision_id,
            "venue_id": log.venue_id,
            "operator_id": log.operator_id,
            "action": log.action,
            "entity_kind": log.entity_kind,
            "entity_id": log.entity_id,
            "status": log.status,
            "reason_code": log.reason_code,
        }
        for log in rows
    ]
