from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import require_admin
from ..db import get_db
from ..schemas.audit import AuditLogResponse
from ..services.audit import get_audit_logs, verify_audit_log


router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=List[AuditLogResponse])
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    entries = get_audit_logs(db, entity_type=entity_type, entity_id=entity_id, limit=limit, offset=offset)
    return [
        AuditLogResponse(
            id=e.id,
            entity_type=e.entity_type,
            entity_id=e.entity_id,
            action=e.action,
            actor_id=e.actor_id,
            actor_role=e.actor_role,
            changes_json=e.changes_json,
            context=e.context,
            timestamp_utc=e.timestamp_utc,
            verified=verify_audit_log(e),
        )
        for e in entries
    ]
