import uuid
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, is_admin, require_admin, require_site, require_supervisor
from ..db import get_db
from ..models.models import Equipment, EquipmentRequest, User
from ..schemas.equipment_requests import (
    EquipmentRequestCreate,
    EquipmentRequestResponse,
    EquipmentRequestUpdate,
    REMOVAL_TYPES,
    RequestStatus,
)
from ..services import inventory
from ..services.audit import compute_diff, create_audit_log
from .errors import inventory_http_error


router = APIRouter(prefix="/requests", tags=["requests"])
log = structlog.get_logger(__name__)


def _to_response(req: EquipmentRequest) -> EquipmentRequestResponse:
    return EquipmentRequestResponse(
        id=req.id,
        site_id=req.site_id,
        site_name=req.site.site_name if req.site else None,
        supervisor_id=req.supervisor_id,
        supervisor_username=req.supervisor.username if req.supervisor else None,
        type=req.type,
        equipment_id=req.equipment_id,
        equipment_name=req.equipment_name,
        quantity=req.quantity,
        is_rental=req.is_rental,
        status=req.status,
        decided_by=req.decided_by,
        decided_at=req.decided_at,
        created_at=req.created_at,
    )


@router.post("", response_model=EquipmentRequestResponse, status_code=201)
def create_request(
    payload: EquipmentRequestCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    site = require_site(user, db)
    name = payload.equipment_name
    is_rental = payload.is_rental
    if payload.equipment_id is not None:
        row = db.query(Equipment).filter(Equipment.id == payload.equipment_id).first()
        if not row or row.site_id != site.id:
            raise HTTPException(status_code=400, detail="Equipment is not at your site")
        name = row.name
        is_rental = row.is_rental
        if payload.type in REMOVAL_TYPES and payload.quantity > row.quantity:
            raise HTTPException(status_code=400, detail=f"Only {row.quantity} unit(s) of {row.name} available")

    req = EquipmentRequest(
        site_id=site.id,
        supervisor_id=user.id,
        type=payload.type.value,
        equipment_id=payload.equipment_id,
        equipment_name=name,
        quantity=payload.quantity,
        is_rental=is_rental,
        status="pending",
    )
    db.add(req)
    db.flush()
    create_audit_log(
        db,
        entity_type="request",
        entity_id=req.id,
        action="CREATE",
        actor=user,
        context={"type": req.type, "site_id": str(site.id), "quantity": req.quantity},
    )
    db.commit()
    db.refresh(req)
    log.info("request_created", request_id=str(req.id), type=req.type, site_id=str(site.id))
    return _to_response(req)


@router.get("", response_model=List[EquipmentRequestResponse])
def list_requests(
    status: Optional[RequestStatus] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    query = db.query(EquipmentRequest)
    if not is_admin(user):
        query = query.filter(EquipmentRequest.supervisor_id == user.id)
    if status is not None:
        query = query.filter(EquipmentRequest.status == status.value)
    rows = query.order_by(EquipmentRequest.created_at.desc()).all()
    return [_to_response(r) for r in rows]


@router.put("/{request_id}", response_model=EquipmentRequestResponse)
def update_request(
    request_id: uuid.UUID,
    payload: EquipmentRequestUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    req = (
        db.query(EquipmentRequest)
        .filter(EquipmentRequest.id == request_id)
        .with_for_update()
        .first()
    )
    if not req:
        raise HTTPException(status_code=404, detail="Request not found")
    if req.status != "pending":
        raise HTTPException(status_code=409, detail=f"Request is already {req.status}")
    before = {"equipment_name": req.equipment_name, "quantity": req.quantity, "is_rental": req.is_rental}
    data = payload.model_dump(exclude_unset=True)
    if data.get("equipment_name") is not None:
        name = data["equipment_name"].strip()
        if not name:
            raise HTTPException(status_code=400, detail="Equipment name cannot be blank")
        if req.equipment_id is not None and name != req.equipment_name:
            raise HTTPException(status_code=400, detail="Cannot rename a request tied to an equipment row")
        req.equipment_name = name
    if data.get("quantity") is not None:
        req.quantity = data["quantity"]
    if data.get("is_rental") is not None and req.equipment_id is None:
        req.is_rental = data["is_rental"]
    after = {"equipment_name": req.equipment_name, "quantity": req.quantity, "is_rental": req.is_rental}
    changes = compute_diff(before, after)
    if changes:
        create_audit_log(db, entity_type="request", entity_id=req.id, action="UPDATE", actor=admin, changes_json=changes)
    db.commit()
    db.refresh(req)
    return _to_response(req)


@router.post("/{request_id}/approve", response_model=EquipmentRequestResponse)
def approve_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    try:
        req = inventory.approve_request(db, request_id, admin)
        db.commit()
    except inventory.InventoryError as e:
        db.rollback()
        raise inventory_http_error(e)
    db.refresh(req)
    return _to_response(req)


@router.post("/{request_id}/reject", response_model=EquipmentRequestResponse)
def reject_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    try:
        req = inventory.reject_request(db, request_id, admin)
        db.commit()
    except inventory.InventoryError as e:
        db.rollback()
        raise inventory_http_error(e)
    db.refresh(req)
    return _to_response(req)
