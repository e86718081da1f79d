import uuid
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import require_admin
from ..db import get_db
from ..models.models import ConstructionSite, User, ROLE_SUPERVISOR
from ..schemas.users import RoleUpdate, UserResponse
from ..services.audit import create_audit_log


router = APIRouter(prefix="/users", tags=["users"])
log = structlog.get_logger(__name__)


def _get_user_or_404(db: Session, user_id: uuid.UUID) -> User:
    u = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return u


@router.get("", response_model=List[UserResponse])
def list_users(
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    query = db.query(User)
    if q:
        like = f"%{q}%"
        query = query.filter((User.username.ilike(like)) | (User.email.ilike(like)))
    return query.order_by(User.username.asc()).all()


@router.get("/supervisors", response_model=List[UserResponse])
def list_supervisors(db: Session = Depends(get_db), _=Depends(require_admin)):
    return (
        db.query(User)
        .filter(User.role == ROLE_SUPERVISOR, User.is_active == True)  # noqa: E712
        .order_by(User.username.asc())
        .all()
    )


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    return _get_user_or_404(db, user_id)


@router.patch("/{user_id}/role", response_model=UserResponse)
def set_role(
    user_id: uuid.UUID,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    u = _get_user_or_404(db, user_id)
    if u.id == admin.id and payload.role != u.role:
        raise HTTPException(status_code=400, detail="You cannot change your own role")
    before = u.role
    if before == payload.role:
        return u
    u.role = payload.role
    if payload.role != ROLE_SUPERVISOR:
        # admins do not supervise sites
        for site in db.query(ConstructionSite).filter(ConstructionSite.supervisor_id == u.id).all():
            site.supervisor_id = None
        u.site_id = None
    create_audit_log(
        db,
        entity_type="user",
        entity_id=u.id,
        action="UPDATE",
        actor=admin,
        changes_json={"role": {"before": before, "after": payload.role}},
    )
    db.commit()
    db.refresh(u)
    log.info("user_role_changed", user_id=str(u.id), before=before, after=u.role)
    return u


@router.delete("/{user_id}")
def delete_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    u = _get_user_or_404(db, user_id)
    if u.id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    for site in db.query(ConstructionSite).filter(ConstructionSite.supervisor_id == u.id).all():
        site.supervisor_id = None
    snapshot = {"email": u.email, "username": u.username, "role": u.role}
    try:
        db.delete(u)
        create_audit_log(
            db,
            entity_type="user",
            entity_id=user_id,
            action="DELETE",
            actor=admin,
            changes_json={"before": snapshot},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=409,
            detail="User is referenced by requests or transfers and cannot be deleted",
        )
    log.info("user_deleted", user_id=str(user_id))
    return {"status": "ok"}
