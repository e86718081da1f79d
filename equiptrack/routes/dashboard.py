from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..auth.security import require_admin, require_site, require_supervisor
from ..db import get_db
from ..models.models import ConstructionSite, EquipmentRequest, EquipmentTransfer, User, ROLE_SUPERVISOR
from ..schemas.dashboard import AdminDashboardResponse, SupervisorDashboardResponse
from ..services import inventory
from .transfers import to_response


router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/admin", response_model=AdminDashboardResponse)
def admin_dashboard(db: Session = Depends(get_db), _=Depends(require_admin)):
    return AdminDashboardResponse(
        total_sites=db.query(func.count(ConstructionSite.id)).scalar() or 0,
        total_users=db.query(func.count(User.id)).scalar() or 0,
        total_supervisors=db.query(func.count(User.id)).filter(User.role == ROLE_SUPERVISOR).scalar() or 0,
        unassigned_sites=db.query(func.count(ConstructionSite.id)).filter(ConstructionSite.supervisor_id.is_(None)).scalar() or 0,
        total_equipment_units=inventory.total_units(db),
        pending_requests=db.query(func.count(EquipmentRequest.id)).filter(EquipmentRequest.status == "pending").scalar() or 0,
        pending_transfers=db.query(func.count(EquipmentTransfer.id)).filter(EquipmentTransfer.status == "pending").scalar() or 0,
    )


@router.get("/supervisor", response_model=SupervisorDashboardResponse)
def supervisor_dashboard(db: Session = Depends(get_db), user: User = Depends(require_supervisor)):
    site = require_site(user, db)
    incoming = (
        db.query(EquipmentTransfer)
        .filter(EquipmentTransfer.to_site_id == site.id, EquipmentTransfer.status == "pending")
        .order_by(EquipmentTransfer.requested_at.desc())
        .all()
    )
    outgoing = (
        db.query(EquipmentTransfer)
        .filter(EquipmentTransfer.from_site_id == site.id)
        .order_by(EquipmentTransfer.requested_at.desc())
        .all()
    )
    return SupervisorDashboardResponse(
        inventory=inventory.site_inventory(db, site),
        incoming_pending=[to_response(t) for t in incoming],
        outgoing=[to_response(t) for t in outgoing],
    )
