"""
Audit logging service.
Append-only lifecycle trail with integrity hashing.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def _integrity_hash(canonical_data: Dict[str, Any], secret: str) -> str:
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Append an audit entry to the caller's transaction.

    The entry is flushed but not committed: lifecycle transitions commit it
    together with the rows it describes, so a rolled back transition leaves
    no trail behind.

    Args:
        db: Database session
        entity_type: report|assignment
        entity_id: Entity ID
        action: CREATE_REPORT|CREATE_ASSIGNMENT|SUBMIT_COMPLETION|APPROVE|REJECT|RESUBMIT|RECONCILE
        actor_id: Profile ID who performed the action
        actor_role: user|reviewer|assignee|system
        source: api|script|system
        changes_json: Before/after diff
        context: Additional context (report_id, evidence count, ...)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)
    entity_id = str(entity_id)
    seq = (
        db.query(func.count(AuditLog.id))
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .scalar()
        or 0
    ) + 1

    if integrity_secret is None:
        integrity_secret = settings.jwt_secret
    integrity_hash = None
    if integrity_secret:
        integrity_hash = _integrity_hash(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "actor_id": str(actor_id) if actor_id else None,
                "actor_role": actor_role,
                "source": source,
                "seq": seq,
                "timestamp_utc": timestamp_utc.isoformat(),
                "changes": changes_json,
                "context": context,
            },
            integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=str(actor_id) if actor_id else None,
        actor_role=actor_role,
        source=source or "system",
        changes_json=changes_json,
        context=context,
        seq=seq,
        timestamp_utc=timestamp_utc,
        integrity_hash=integrity_hash,
    )
    db.add(audit_log)
    db.flush()
    return audit_log


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Oldest first, so a report's history reads as its lifecycle."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    query = query.order_by(AuditLog.timestamp_utc.asc(), AuditLog.seq.asc())
    return query.limit(limit).offset(offset).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Before/after values for the keys whose value changed."""
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff
