"""
Simple audit logging helper.
- record_audit(session, action, actor, target_type, target_id, details)
  adds an AuditLog row to the caller's transaction and logs a structured entry.
- get_audit_events to query recent audit events (for operators).
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from subbilling.db import session_scope
from subbilling.models import AuditLog
from subbilling.timeutil import utcnow

logger = logging.getLogger("subbilling.audit")


def record_audit(session: Session, action: str, actor: str, target_type: str, target_id: Optional[str],
                 details: Optional[Dict[str, Any]] = None) -> AuditLog:
    """
    Add an audit event to the session; it commits (or rolls back) with the
    state change it describes.
    - action: short action string (e.g., 'billing.charge_failed')
    - actor: who triggered it ('scheduler', 'operator:<sub>', 'webhook')
    """
    ev = AuditLog(action=action, actor=actor, target_type=target_type,
                  target_id=str(target_id) if target_id is not None else None,
                  details=details or {}, created_at=utcnow())
    session.add(ev)
    logger.info("audit", extra={"action": action, "actor": actor, "target_type": target_type,
                                "target_id": target_id, "details": details or {}})
    return ev


def get_audit_events(limit: int = 100, session_factory=None) -> List[Dict[str, Any]]:
    with session_scope(session_factory) as session:
        q = session.query(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        return [{"id": e.id, "action": e.action, "actor": e.actor, "target_type": e.target_type,
                 "target_id": e.target_id, "details": e.details, "created_at": e.created_at.isoformat()} for e in q]
