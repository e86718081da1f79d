import uuid
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin
from ..db import get_db
from ..models.models import ConstructionSite, User, ROLE_SUPERVISOR
from ..schemas.sites import SiteCreate, SiteResponse, SupervisorAssignment
from ..services.audit import create_audit_log


router = APIRouter(prefix="/sites", tags=["sites"])
log = structlog.get_logger(__name__)


def get_site_or_404(db: Session, site_id: uuid.UUID) -> ConstructionSite:
    site = db.query(ConstructionSite).filter(ConstructionSite.id == site_id).first()
    if not site:
        raise HTTPException(status_code=404, detail="Site not found")
    return site


def _resolve_supervisor(db: Session, supervisor_id: Optional[uuid.UUID]) -> Optional[User]:
    if supervisor_id is None:
        return None
    u = db.query(User).filter(User.id == supervisor_id).first()
    if not u:
        raise HTTPException(status_code=404, detail="Supervisor not found")
    if u.role != ROLE_SUPERVISOR:
        raise HTTPException(status_code=400, detail="User is not a supervisor")
    return u


def assign_supervisor(db: Session, site: ConstructionSite, supervisor: Optional[User]) -> None:
    """Point the site at `supervisor` and keep both sides of the link in step."""
    if site.supervisor_id and (supervisor is None or site.supervisor_id != supervisor.id):
        previous = db.query(User).filter(User.id == site.supervisor_id).first()
        if previous is not None and previous.site_id == site.id:
            previous.site_id = None
    if supervisor is not None:
        # a supervisor runs one site at a time
        for other in db.query(ConstructionSite).filter(
            ConstructionSite.supervisor_id == supervisor.id, ConstructionSite.id != site.id
        ).all():
            other.supervisor_id = None
        supervisor.site_id = site.id
        site.supervisor_id = supervisor.id
    else:
        site.supervisor_id = None


@router.post("", response_model=SiteResponse, status_code=201)
def create_site(
    payload: SiteCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    name = payload.site_name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Site name is required")
    if db.query(ConstructionSite).filter(ConstructionSite.site_name == name).first():
        raise HTTPException(status_code=409, detail="A site with this name already exists")
    supervisor = _resolve_supervisor(db, payload.supervisor_id)
    site = ConstructionSite(site_name=name, contractor=(payload.contractor or None))
    db.add(site)
    db.flush()
    assign_supervisor(db, site, supervisor)
    create_audit_log(
        db,
        entity_type="site",
        entity_id=site.id,
        action="CREATE",
        actor=admin,
        changes_json={"after": {
            "site_name": site.site_name,
            "contractor": site.contractor,
            "supervisor_id": str(site.supervisor_id) if site.supervisor_id else None,
        }},
    )
    db.commit()
    db.refresh(site)
    log.info("site_created", site_id=str(site.id), site_name=site.site_name)
    return site


@router.get("", response_model=List[SiteResponse])
def list_sites(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return db.query(ConstructionSite).order_by(ConstructionSite.site_name.asc()).all()


@router.get("/{site_id}", response_model=SiteResponse)
def get_site(site_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return get_site_or_404(db, site_id)


@router.put("/{site_id}/supervisor", response_model=SiteResponse)
def set_supervisor(
    site_id: uuid.UUID,
    payload: SupervisorAssignment,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    site = get_site_or_404(db, site_id)
    supervisor = _resolve_supervisor(db, payload.supervisor_id)
    before = str(site.supervisor_id) if site.supervisor_id else None
    assign_supervisor(db, site, supervisor)
    create_audit_log(
        db,
        entity_type="site",
        entity_id=site.id,
        action="UPDATE",
        actor=admin,
        changes_json={"supervisor_id": {
            "before": before,
            "after": str(site.supervisor_id) if site.supervisor_id else None,
        }},
    )
    db.commit()
    db.refresh(site)
    return site


@router.delete("/{site_id}")
def delete_site(
    site_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    site = get_site_or_404(db, site_id)
    snapshot = {"site_name": site.site_name, "contractor": site.contractor}
    try:
        db.delete(site)
        create_audit_log(
            db,
            entity_type="site",
            entity_id=site_id,
            action="DELETE",
            actor=admin,
            changes_json={"before": snapshot},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=409,
            detail="Site still has equipment, requests or transfers and cannot be deleted",
        )
    log.info("site_deleted", site_id=str(site_id))
    return {"status": "ok"}
