from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy import case
from sqlalchemy.orm import Session

from ..auth.security import can_decide_transfer, is_admin, require_admin, require_site, require_supervisor, get_current_user
from ..config import settings
from ..db import get_db
from ..models.models import ConstructionSite, Equipment, EquipmentTransfer, User
from ..schemas.transfers import PhotoUploadResponse, TransferCreate, TransferResponse, TransferStatus
from ..services import inventory
from ..services.audit import create_audit_log
from ..storage.factory import get_storage
from ..storage.provider import StorageProvider
from .errors import inventory_http_error
from .files import canonical_key, store_upload


router = APIRouter(prefix="/transfers", tags=["transfers"])
log = structlog.get_logger(__name__)


def to_response(t: EquipmentTransfer) -> TransferResponse:
    return TransferResponse(
        id=t.id,
        equipment_id=t.equipment_id,
        equipment_name=t.equipment_name,
        is_rental=t.is_rental,
        from_site_id=t.from_site_id,
        from_site_name=t.from_site.site_name if t.from_site else None,
        to_site_id=t.to_site_id,
        to_site_name=t.to_site.site_name if t.to_site else None,
        requested_by=t.requested_by,
        requested_by_username=t.requester.username if t.requester else None,
        requested_by_email=t.requester.email if t.requester else None,
        approved_by=t.approved_by,
        quantity=t.quantity,
        status=t.status,
        accepted=t.status == "approved",
        comment=t.comment,
        vehicle_number=t.vehicle_number,
        remarks=t.remarks,
        image_url=t.image_url,
        requested_at=t.requested_at,
        decided_at=t.decided_at,
    )


@router.post("", response_model=TransferResponse, status_code=201)
def create_transfer(
    payload: TransferCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    site = require_site(user, db)
    row = db.query(Equipment).filter(Equipment.id == payload.equipment_id).first()
    if not row or row.site_id != site.id:
        raise HTTPException(status_code=400, detail="Equipment is not at your site")
    if payload.to_site_id == site.id:
        raise HTTPException(status_code=400, detail="Destination must be a different site")
    if not db.query(ConstructionSite).filter(ConstructionSite.id == payload.to_site_id).first():
        raise HTTPException(status_code=404, detail="Destination site not found")
    if payload.quantity > row.quantity:
        raise HTTPException(status_code=400, detail=f"Only {row.quantity} unit(s) of {row.name} available")

    t = EquipmentTransfer(
        equipment_id=row.id,
        equipment_name=row.name,
        is_rental=row.is_rental,
        from_site_id=site.id,
        to_site_id=payload.to_site_id,
        requested_by=user.id,
        quantity=payload.quantity,
        status="pending",
        comment=payload.comment,
        vehicle_number=payload.vehicle_number,
        remarks=payload.remarks,
        image_url=payload.image_url,
    )
    db.add(t)
    db.flush()
    create_audit_log(
        db,
        entity_type="transfer",
        entity_id=t.id,
        action="CREATE",
        actor=user,
        context={
            "equipment_id": row.id,
            "from_site_id": str(site.id),
            "to_site_id": str(payload.to_site_id),
            "quantity": payload.quantity,
        },
    )
    db.commit()
    db.refresh(t)
    log.info("transfer_requested", transfer_id=t.id, equipment_id=row.id, quantity=t.quantity)
    return to_response(t)


@router.post("/photo", response_model=PhotoUploadResponse, status_code=201)
async def upload_transfer_photo(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
    storage: StorageProvider = Depends(get_storage),
):
    content_type = file.content_type or "application/octet-stream"
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image uploads are accepted")
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="File too large")
    key = canonical_key("transfers", file.filename)
    fo = store_upload(db, storage, key, content, content_type, user)
    db.commit()
    return PhotoUploadResponse(key=fo.key, url=fo.public_url)


@router.get("", response_model=List[TransferResponse])
def transaction_log(
    status: Optional[TransferStatus] = None,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    """Every transfer, pending ones first, then oldest first."""
    query = db.query(EquipmentTransfer)
    if status is not None:
        query = query.filter(EquipmentTransfer.status == status.value)
    pending_first = case((EquipmentTransfer.status == "pending", 0), else_=1)
    rows = query.order_by(pending_first, EquipmentTransfer.requested_at.asc(), EquipmentTransfer.id.asc()).all()
    return [to_response(t) for t in rows]


@router.get("/incoming", response_model=List[TransferResponse])
def incoming_transfers(
    status: Optional[TransferStatus] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    site = require_site(user, db)
    query = db.query(EquipmentTransfer).filter(EquipmentTransfer.to_site_id == site.id)
    if status is not None:
        query = query.filter(EquipmentTransfer.status == status.value)
    rows = query.order_by(EquipmentTransfer.requested_at.desc(), EquipmentTransfer.id.desc()).all()
    return [to_response(t) for t in rows]


@router.get("/outgoing", response_model=List[TransferResponse])
def outgoing_transfers(
    status: Optional[TransferStatus] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    site = require_site(user, db)
    query = db.query(EquipmentTransfer).filter(EquipmentTransfer.from_site_id == site.id)
    if status is not None:
        query = query.filter(EquipmentTransfer.status == status.value)
    rows = query.order_by(EquipmentTransfer.requested_at.desc(), EquipmentTransfer.id.desc()).all()
    return [to_response(t) for t in rows]


def _decide(db: Session, transfer_id: int, user: User, action: str) -> EquipmentTransfer:
    try:
        t = inventory.locked_transfer(db, transfer_id)
        if action == "cancel":
            if not (is_admin(user) or t.requested_by == user.id):
                raise HTTPException(status_code=403, detail="Forbidden")
            inventory.close_transfer(db, t, user, "cancelled")
        else:
            if not can_decide_transfer(user, t.to_site):
                raise HTTPException(status_code=403, detail="Forbidden")
            if action == "approve":
                inventory.approve_transfer(db, t, user)
            else:
                inventory.close_transfer(db, t, user, "rejected")
        db.commit()
    except inventory.InventoryError as e:
        db.rollback()
        raise inventory_http_error(e)
    except HTTPException:
        db.rollback()
        raise
    db.refresh(t)
    return t


@router.post("/{transfer_id}/approve", response_model=TransferResponse)
def approve_transfer(transfer_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return to_response(_decide(db, transfer_id, user, "approve"))


@router.post("/{transfer_id}/reject", response_model=TransferResponse)
def reject_transfer(transfer_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return to_response(_decide(db, transfer_id, user, "reject"))


@router.post("/{transfer_id}/cancel", response_model=TransferResponse)
def cancel_transfer(transfer_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return to_response(_decide(db, transfer_id, user, "cancel"))
