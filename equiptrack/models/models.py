import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    BigInteger,
    Text,
    Index,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


ROLE_ADMIN = "admin"
ROLE_SUPERVISOR = "supervisor"
ROLES = (ROLE_ADMIN, ROLE_SUPERVISOR)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))  # null for OAuth-only accounts
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ROLE_SUPERVISOR, index=True)  # admin|supervisor
    site_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("construction_sites.id", ondelete="SET NULL", use_alter=True, name="fk_users_site_id"),
        index=True,
    )
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    oauth_provider: Mapped[Optional[str]] = mapped_column(String(50))
    oauth_subject: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    site = relationship("ConstructionSite", foreign_keys=[site_id])

    __table_args__ = (
        UniqueConstraint("oauth_provider", "oauth_subject", name="uq_user_oauth_identity"),
    )


class ConstructionSite(Base):
    __tablename__ = "construction_sites"

    id: Mapped[uuid.UUID] = uuid_pk()
    site_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    contractor: Mapped[Optional[str]] = mapped_column(String(255))
    supervisor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    supervisor = relationship("User", foreign_keys=[supervisor_id])


class Equipment(Base):
    """One inventory line. Several rows may share (name, site, is_rental); the UI shows them as one group."""
    __tablename__ = "equipment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    site_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("construction_sites.id"), index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_rental: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")  # available|in use|transferring
    date_bought: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    site = relationship("ConstructionSite")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_equipment_quantity_non_negative"),
        Index("idx_equipment_group", "site_id", "name", "is_rental"),
    )


class EquipmentRequest(Base):
    """Supervisor ask to buy/sell/rent/return equipment, decided by an admin."""
    __tablename__ = "equipment_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    site_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("construction_sites.id"), nullable=False, index=True)
    supervisor_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # buy|sell|rent|return
    equipment_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("equipment.id", ondelete="SET NULL"))
    equipment_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    is_rental: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # pending|approved|rejected
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)

    site = relationship("ConstructionSite")
    supervisor = relationship("User", foreign_keys=[supervisor_id])

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_request_quantity_positive"),
    )


class EquipmentTransfer(Base):
    """Site-to-site move of part of one equipment row."""
    __tablename__ = "equipment_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    equipment_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("equipment.id", ondelete="SET NULL"), index=True)
    equipment_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_rental: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    from_site_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("construction_sites.id"), nullable=False, index=True)
    to_site_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("construction_sites.id"), nullable=False, index=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # pending|approved|rejected|cancelled
    comment: Mapped[Optional[str]] = mapped_column(Text)
    vehicle_number: Mapped[Optional[str]] = mapped_column(String(50))
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(String(1024))
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    from_site = relationship("ConstructionSite", foreign_keys=[from_site_id])
    to_site = relationship("ConstructionSite", foreign_keys=[to_site_id])
    requester = relationship("User", foreign_keys=[requested_by])

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_transfer_quantity_positive"),
        CheckConstraint("from_site_id <> to_site_id", name="ck_transfer_distinct_sites"),
    )


class FileObject(Base):
    __tablename__ = "file_objects"

    id: Mapped[uuid.UUID] = uuid_pk()
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    container: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    content_type: Mapped[Optional[str]] = mapped_column(String(255))
    checksum_sha256: Mapped[Optional[str]] = mapped_column(String(128))
    public_url: Mapped[Optional[str]] = mapped_column(String(1024))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class AuditLog(Base):
    """Append-only audit log for approvals, rejections and admin mutations"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # request|transfer|equipment|site|user
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|APPROVE|REJECT|CANCEL|DELETE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )
