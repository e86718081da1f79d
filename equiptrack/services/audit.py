"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from ..models.models import AuditLog, User
from ..config import settings


def compute_integrity_hash(
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str],
    actor_role: Optional[str],
    timestamp_utc: datetime,
    changes_json: Optional[Dict],
    context: Optional[Dict],
    integrity_secret: str,
) -> str:
    canonical_data = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "timestamp_utc": timestamp_utc.replace(tzinfo=None).isoformat(),
        "changes": changes_json,
        "context": context,
    }
    # Drop None values and sort keys so the hash is stable
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{integrity_secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: Any,
    action: str,
    actor: Optional[User] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an append-only audit entry to the caller's transaction.

    The row is flushed, not committed: it lands or disappears together with
    the change it describes.

    Args:
        db: Database session
        entity_type: request|transfer|equipment|site|user
        entity_id: Entity ID
        action: CREATE|UPDATE|APPROVE|REJECT|CANCEL|DELETE
        actor: User who performed the action
        changes_json: Before/after diff
        context: Additional context (site ids, quantities)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    actor_id = actor.id if actor is not None else None
    actor_role = actor.role if actor is not None else "system"

    integrity_hash = None
    if integrity_secret:
        integrity_hash = compute_integrity_hash(
            entity_type, str(entity_id), action, actor_id, actor_role,
            timestamp_utc, changes_json, context, integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
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
    offset: int = 0
) -> list:
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))

    query = query.order_by(AuditLog.timestamp_utc.desc())
    return query.limit(limit).offset(offset).all()


def verify_audit_log(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """Recompute the hash of a stored entry and compare."""
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret
    if not entry.integrity_hash:
        return False
    expected = compute_integrity_hash(
        entry.entity_type, entry.entity_id, entry.action, entry.actor_id, entry.actor_role,
        entry.timestamp_utc, entry.changes_json, entry.context, integrity_secret,
    )
    return expected == entry.integrity_hash


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff
