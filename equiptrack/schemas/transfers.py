import uuid
from datetime import datetime
from typing import Optional
from enum import Enum

from pydantic import BaseModel, Field


class TransferStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


class TransferCreate(BaseModel):
    equipment_id: int
    to_site_id: uuid.UUID
    quantity: int = Field(default=1, ge=1)
    comment: Optional[str] = None
    vehicle_number: Optional[str] = Field(default=None, max_length=50)
    remarks: Optional[str] = None
    image_url: Optional[str] = Field(default=None, max_length=1024)


class TransferResponse(BaseModel):
    id: int
    equipment_id: Optional[int] = None
    equipment_name: str
    is_rental: bool
    from_site_id: uuid.UUID
    from_site_name: Optional[str] = None
    to_site_id: uuid.UUID
    to_site_name: Optional[str] = None
    requested_by: uuid.UUID
    requested_by_username: Optional[str] = None
    requested_by_email: Optional[str] = None
    approved_by: Optional[uuid.UUID] = None
    quantity: int
    status: str
    accepted: bool
    comment: Optional[str] = None
    vehicle_number: Optional[str] = None
    remarks: Optional[str] = None
    image_url: Optional[str] = None
    requested_at: datetime
    decided_at: Optional[datetime] = None


class PhotoUploadResponse(BaseModel):
    key: str
    url: str
