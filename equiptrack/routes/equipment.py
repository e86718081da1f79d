import uuid
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, is_admin, require_admin, require_site, require_supervisor
from ..db import get_db
from ..models.models import ConstructionSite, Equipment, User
from ..schemas.equipment import (
    EquipmentCreate,
    EquipmentGroup,
    EquipmentResponse,
    EquipmentUpdate,
    GroupBulkEdit,
    GroupDelete,
    InventoryExportRequest,
    SiteInventory,
)
from ..services import inventory
from ..services.audit import compute_diff, create_audit_log
from ..services.mailer import MailerError, MailerNotConfigured, render_inventory_html, send_html_email
from .errors import inventory_http_error


router = APIRouter(prefix="/equipment", tags=["equipment"])
log = structlog.get_logger(__name__)


def _site_names(db: Session) -> dict:
    return {s.id: s.site_name for s in db.query(ConstructionSite.id, ConstructionSite.site_name).all()}


def _grouped(db: Session, site_id: Optional[uuid.UUID] = None) -> List[dict]:
    query = db.query(Equipment)
    if site_id is not None:
        query = query.filter(Equipment.site_id == site_id)
    rows = query.order_by(Equipment.name.asc(), Equipment.id.asc()).all()
    return inventory.group_rows(rows, _site_names(db))


@router.get("", response_model=List[EquipmentGroup])
def list_equipment(
    site_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    return _grouped(db, site_id)


@router.get("/mine", response_model=SiteInventory)
def my_equipment(db: Session = Depends(get_db), user: User = Depends(require_supervisor)):
    site = require_site(user, db)
    return inventory.site_inventory(db, site)


@router.get("/options", response_model=List[EquipmentResponse])
def equipment_options(
    site_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Rows a request or transfer can point at."""
    if is_admin(user):
        if site_id is None:
            raise HTTPException(status_code=400, detail="site_id is required")
    else:
        site_id = require_site(user, db).id
    return (
        db.query(Equipment)
        .filter(Equipment.site_id == site_id, Equipment.quantity > 0)
        .order_by(Equipment.name.asc(), Equipment.id.asc())
        .all()
    )


@router.post("", response_model=EquipmentResponse, status_code=201)
def create_equipment(
    payload: EquipmentCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if payload.site_id is not None and not db.query(ConstructionSite).filter(ConstructionSite.id == payload.site_id).first():
        raise HTTPException(status_code=404, detail="Site not found")
    row = Equipment(
        name=payload.name,
        site_id=payload.site_id,
        quantity=payload.quantity,
        is_rental=payload.is_rental,
        status=payload.status.value,
        date_bought=datetime.now(timezone.utc),
    )
    db.add(row)
    db.flush()
    create_audit_log(
        db,
        entity_type="equipment",
        entity_id=row.id,
        action="CREATE",
        actor=admin,
        changes_json={"after": {
            "name": row.name,
            "site_id": str(row.site_id) if row.site_id else None,
            "quantity": row.quantity,
            "is_rental": row.is_rental,
        }},
    )
    db.commit()
    db.refresh(row)
    return row


@router.put("/groups", response_model=List[EquipmentResponse])
def bulk_edit_groups(
    payload: GroupBulkEdit,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Apply every group edit in one transaction; quantity is spread over the group's rows."""
    site_ids = {g.site_id for g in payload.groups if g.site_id is not None}
    if site_ids:
        found = {s.id for s in db.query(ConstructionSite.id).filter(ConstructionSite.id.in_(site_ids)).all()}
        if found != site_ids:
            raise HTTPException(status_code=404, detail="Site not found")
    seen = set()
    for g in payload.groups:
        if seen.intersection(g.ids):
            raise HTTPException(status_code=400, detail="An equipment row appears in more than one group")
        seen.update(g.ids)

    updated = []
    try:
        for g in payload.groups:
            rows = inventory.edit_group(db, g.ids, g.quantity, g.site_id)
            updated.extend(rows)
            create_audit_log(
                db,
                entity_type="equipment",
                entity_id=",".join(str(i) for i in g.ids)[:64],
                action="UPDATE",
                actor=admin,
                context={
                    "ids": g.ids,
                    "quantity": g.quantity,
                    "site_id": str(g.site_id) if g.site_id else None,
                },
            )
        db.commit()
    except inventory.InventoryError as e:
        db.rollback()
        raise inventory_http_error(e)
    for row in updated:
        db.refresh(row)
    log.info("equipment_groups_updated", groups=len(payload.groups), rows=len(updated))
    return updated


@router.delete("/groups")
def delete_groups(
    payload: GroupDelete,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    try:
        count = inventory.delete_group(db, payload.ids)
        create_audit_log(
            db,
            entity_type="equipment",
            entity_id=",".join(str(i) for i in payload.ids)[:64],
            action="DELETE",
            actor=admin,
            context={"ids": payload.ids},
        )
        db.commit()
    except inventory.InventoryError as e:
        db.rollback()
        raise inventory_http_error(e)
    return {"deleted": count}


@router.patch("/{equipment_id}", response_model=EquipmentResponse)
def update_equipment(
    equipment_id: int,
    payload: EquipmentUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    row = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Equipment not found")
    before = {"quantity": row.quantity, "is_rental": row.is_rental, "status": row.status}
    data = payload.model_dump(exclude_unset=True)
    if data.get("status") is not None:
        data["status"] = data["status"].value
    for field, value in data.items():
        if value is not None:
            setattr(row, field, value)
    row.updated_at = datetime.now(timezone.utc)
    after = {"quantity": row.quantity, "is_rental": row.is_rental, "status": row.status}
    changes = compute_diff(before, after)
    if changes:
        create_audit_log(
            db,
            entity_type="equipment",
            entity_id=row.id,
            action="UPDATE",
            actor=admin,
            changes_json=changes,
        )
    db.commit()
    db.refresh(row)
    return row


@router.post("/export")
def export_inventory(
    payload: InventoryExportRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Email the grouped inventory as an HTML table."""
    site_id = payload.site_id
    if not is_admin(user):
        own = require_site(user, db)
        if site_id is not None and site_id != own.id:
            raise HTTPException(status_code=403, detail="Forbidden")
        site_id = own.id

    if site_id is not None:
        site = db.query(ConstructionSite).filter(ConstructionSite.id == site_id).first()
        if not site:
            raise HTTPException(status_code=404, detail="Site not found")
        title = "Equipment at " + " ".join(site.site_name.split())
    else:
        title = "Equipment across all sites"

    groups = _grouped(db, site_id)
    body = render_inventory_html(title, groups, generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"))
    try:
        send_html_email(payload.recipient, payload.subject or title, body)
    except MailerNotConfigured:
        raise HTTPException(status_code=503, detail="Email is not configured")
    except MailerError:
        raise HTTPException(status_code=502, detail="Email delivery failed")
    return {"status": "sent", "recipient": payload.recipient, "lines": len(groups)}
