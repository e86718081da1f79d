"""
Inventory rules for equipment rows, requests and transfers.

Functions here change rows inside the caller's session and never commit.
Routes commit once per workflow, so every approval either lands completely
or not at all. Rows taking part in a workflow are read with
``SELECT ... FOR UPDATE`` so two approvers acting on the same request or
transfer are serialised by the database.
"""
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import (
    ConstructionSite,
    Equipment,
    EquipmentRequest,
    EquipmentTransfer,
    User,
)
from .audit import create_audit_log


log = structlog.get_logger(__name__)

NOT_ASSIGNED = "Not Assigned"

ADDING_REQUEST_TYPES = ("buy",)
REMOVING_REQUEST_TYPES = ("sell", "rent", "return")


class InventoryError(Exception):
    """Base class for inventory rule violations."""


class NotFound(InventoryError):
    pass


class NotPending(InventoryError):
    pass


class InsufficientQuantity(InventoryError):
    pass


class InvalidRequest(InventoryError):
    pass


class StaleEquipment(InventoryError):
    """The equipment row a request or transfer points at was removed or moved."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------- GROUPING ----------
def group_rows(rows: Iterable[Equipment], site_names: Dict[uuid.UUID, str]) -> List[dict]:
    """Collapse rows sharing (name, site, rental flag) into one line with a summed quantity."""
    grouped: Dict[Tuple[str, Optional[uuid.UUID], bool], dict] = {}
    for row in rows:
        key = (row.name, row.site_id, bool(row.is_rental))
        group = grouped.get(key)
        if group is None:
            grouped[key] = {
                "name": row.name,
                "site_id": row.site_id,
                "site_name": site_names.get(row.site_id, NOT_ASSIGNED) if row.site_id else NOT_ASSIGNED,
                "is_rental": bool(row.is_rental),
                "total_quantity": row.quantity or 0,
                "ids": [row.id],
            }
        else:
            group["total_quantity"] += row.quantity or 0
            group["ids"].append(row.id)
    return list(grouped.values())


def count_by_name(rows: Iterable[Equipment]) -> List[dict]:
    counts: Dict[str, int] = {}
    for row in rows:
        counts[row.name] = counts.get(row.name, 0) + (row.quantity or 0)
    return [{"name": name, "count": count} for name, count in counts.items()]


def site_inventory(db: Session, site: ConstructionSite) -> dict:
    """Owned and rental lines of one site, each grouped by name."""
    rows = (
        db.query(Equipment)
        .filter(Equipment.site_id == site.id)
        .order_by(Equipment.name.asc(), Equipment.id.asc())
        .all()
    )
    return {
        "site_id": site.id,
        "site_name": site.site_name,
        "owned": count_by_name(r for r in rows if not r.is_rental),
        "rental": count_by_name(r for r in rows if r.is_rental),
    }


def redistribute(total: int, parts: int) -> List[int]:
    """Split `total` over `parts` rows: equal shares, remainder on the first row."""
    if parts <= 0:
        raise InvalidRequest("A group needs at least one row")
    if total < 0:
        raise InvalidRequest("Quantity must not be negative")
    share, remainder = divmod(total, parts)
    return [share + remainder] + [share] * (parts - 1)


# ---------- ROW MUTATIONS ----------
def _lock_rows(db: Session, ids: Sequence[int]) -> Dict[int, Equipment]:
    rows = db.query(Equipment).filter(Equipment.id.in_(list(ids))).with_for_update().all()
    by_id = {row.id: row for row in rows}
    missing = [i for i in ids if i not in by_id]
    if missing:
        raise NotFound(f"Equipment not found: {', '.join(str(i) for i in missing)}")
    return by_id


def edit_group(db: Session, ids: Sequence[int], quantity: int, site_id: Optional[uuid.UUID]) -> List[Equipment]:
    """Set a group's total quantity and site, spreading the quantity over its rows in the given order."""
    if len(set(ids)) != len(ids):
        raise InvalidRequest("Duplicate equipment ids in group")
    by_id = _lock_rows(db, ids)
    now = _now()
    updated = []
    for row_id, qty in zip(ids, redistribute(quantity, len(ids))):
        row = by_id[row_id]
        row.quantity = qty
        row.site_id = site_id
        row.updated_at = now
        updated.append(row)
    db.flush()
    return updated


def delete_group(db: Session, ids: Sequence[int]) -> int:
    by_id = _lock_rows(db, ids)
    for row in by_id.values():
        db.delete(row)
    db.flush()
    return len(by_id)


def add_to_group(
    db: Session,
    site_id: uuid.UUID,
    name: str,
    is_rental: bool,
    quantity: int,
) -> Equipment:
    """Add units to the (site, name, rental) group, inserting an available row when the group is empty."""
    row = (
        db.query(Equipment)
        .filter(
            Equipment.site_id == site_id,
            Equipment.name == name,
            Equipment.is_rental == is_rental,
        )
        .order_by(Equipment.id.asc())
        .with_for_update()
        .first()
    )
    now = _now()
    if row is not None:
        row.quantity = (row.quantity or 0) + quantity
        row.updated_at = now
    else:
        row = Equipment(
            name=name,
            site_id=site_id,
            quantity=quantity,
            is_rental=is_rental,
            status="available",
            date_bought=now,
        )
        db.add(row)
    db.flush()
    return row


def remove_from_row(db: Session, row: Equipment, quantity: int) -> Optional[Equipment]:
    """Take units out of one row; the row is deleted when nothing is left. Returns None when deleted."""
    available = row.quantity or 0
    if quantity > available:
        raise InsufficientQuantity(
            f"Only {available} unit(s) of {row.name} available, {quantity} requested"
        )
    remaining = available - quantity
    if remaining == 0:
        db.delete(row)
        db.flush()
        return None
    row.quantity = remaining
    row.updated_at = _now()
    db.flush()
    return row


# ---------- REQUESTS ----------
def _locked_request(db: Session, request_id: uuid.UUID) -> EquipmentRequest:
    req = (
        db.query(EquipmentRequest)
        .filter(EquipmentRequest.id == request_id)
        .with_for_update()
        .first()
    )
    if req is None:
        raise NotFound("Request not found")
    if req.status != "pending":
        raise NotPending(f"Request is already {req.status}")
    return req


def approve_request(db: Session, request_id: uuid.UUID, actor: User) -> EquipmentRequest:
    """Mark a pending request approved and apply its effect on the site's inventory."""
    req = _locked_request(db, request_id)

    if req.type in ADDING_REQUEST_TYPES:
        row = add_to_group(db, req.site_id, req.equipment_name, bool(req.is_rental), req.quantity)
        effect = {"equipment_id": row.id, "added": req.quantity}
    elif req.type in REMOVING_REQUEST_TYPES:
        if req.equipment_id is None:
            raise StaleEquipment(f"Equipment for this {req.type} request no longer exists")
        row = db.query(Equipment).filter(Equipment.id == req.equipment_id).with_for_update().first()
        if row is None:
            raise StaleEquipment(f"Equipment for this {req.type} request no longer exists")
        if row.site_id != req.site_id:
            raise StaleEquipment("Equipment is no longer at the requesting site")
        before_qty = row.quantity
        equipment_id = row.id
        remove_from_row(db, row, req.quantity)
        effect = {"equipment_id": equipment_id, "removed": req.quantity, "before": before_qty}
    else:
        raise InvalidRequest(f"Unknown request type: {req.type}")

    req.status = "approved"
    req.decided_by = actor.id
    req.decided_at = _now()
    create_audit_log(
        db,
        entity_type="request",
        entity_id=req.id,
        action="APPROVE",
        actor=actor,
        changes_json={"status": {"before": "pending", "after": "approved"}},
        context={"type": req.type, "site_id": str(req.site_id), **effect},
    )
    log.info("request_approved", request_id=str(req.id), type=req.type, quantity=req.quantity)
    return req


def reject_request(db: Session, request_id: uuid.UUID, actor: User) -> EquipmentRequest:
    req = _locked_request(db, request_id)
    req.status = "rejected"
    req.decided_by = actor.id
    req.decided_at = _now()
    create_audit_log(
        db,
        entity_type="request",
        entity_id=req.id,
        action="REJECT",
        actor=actor,
        changes_json={"status": {"before": "pending", "after": "rejected"}},
    )
    db.flush()
    log.info("request_rejected", request_id=str(req.id))
    return req


# ---------- TRANSFERS ----------
def locked_transfer(db: Session, transfer_id: int) -> EquipmentTransfer:
    transfer = (
        db.query(EquipmentTransfer)
        .filter(EquipmentTransfer.id == transfer_id)
        .with_for_update()
        .first()
    )
    if transfer is None:
        raise NotFound("Transfer not found")
    if transfer.status != "pending":
        raise NotPending(f"Transfer is already {transfer.status}")
    return transfer


def approve_transfer(db: Session, transfer: EquipmentTransfer, actor: User) -> EquipmentTransfer:
    """
    Move the transfer's units from the source row to the destination site.

    Source decrement, destination increment and the status change happen in
    the caller's transaction, so the total quantity across all sites is the
    same before and after.
    """
    if transfer.status != "pending":
        raise NotPending(f"Transfer is already {transfer.status}")
    if transfer.equipment_id is None:
        raise StaleEquipment("Equipment for this transfer no longer exists")
    source = (
        db.query(Equipment)
        .filter(Equipment.id == transfer.equipment_id)
        .with_for_update()
        .first()
    )
    if source is None:
        raise StaleEquipment("Equipment for this transfer no longer exists")
    if source.site_id != transfer.from_site_id:
        raise StaleEquipment("Equipment is no longer at the source site")

    source_id = source.id
    name, is_rental = source.name, bool(source.is_rental)
    remove_from_row(db, source, transfer.quantity)
    destination = add_to_group(db, transfer.to_site_id, name, is_rental, transfer.quantity)

    transfer.status = "approved"
    transfer.approved_by = actor.id
    transfer.decided_at = _now()
    create_audit_log(
        db,
        entity_type="transfer",
        entity_id=transfer.id,
        action="APPROVE",
        actor=actor,
        changes_json={"status": {"before": "pending", "after": "approved"}},
        context={
            "from_site_id": str(transfer.from_site_id),
            "to_site_id": str(transfer.to_site_id),
            "source_equipment_id": source_id,
            "destination_equipment_id": destination.id,
            "quantity": transfer.quantity,
        },
    )
    db.flush()
    log.info(
        "transfer_approved",
        transfer_id=transfer.id,
        quantity=transfer.quantity,
        from_site_id=str(transfer.from_site_id),
        to_site_id=str(transfer.to_site_id),
    )
    return transfer


def close_transfer(db: Session, transfer: EquipmentTransfer, actor: User, new_status: str) -> EquipmentTransfer:
    """Reject or cancel a pending transfer; inventory is untouched."""
    if new_status not in ("rejected", "cancelled"):
        raise InvalidRequest(f"Cannot close a transfer as {new_status}")
    if transfer.status != "pending":
        raise NotPending(f"Transfer is already {transfer.status}")
    transfer.status = new_status
    transfer.decided_at = _now()
    create_audit_log(
        db,
        entity_type="transfer",
        entity_id=transfer.id,
        action="REJECT" if new_status == "rejected" else "CANCEL",
        actor=actor,
        changes_json={"status": {"before": "pending", "after": new_status}},
    )
    db.flush()
    log.info("transfer_closed", transfer_id=transfer.id, status=new_status)
    return transfer


def total_units(db: Session) -> int:
    return int(db.query(func.coalesce(func.sum(Equipment.quantity), 0)).scalar() or 0)
