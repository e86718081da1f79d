import uuid
from datetime import datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, EmailStr, Field, field_validator


class EquipmentStatus(str, Enum):
    available = "available"
    in_use = "in use"
    transferring = "transferring"


class EquipmentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    site_id: Optional[uuid.UUID] = None
    quantity: int = Field(ge=0)
    is_rental: bool = False
    status: EquipmentStatus = EquipmentStatus.available

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class EquipmentUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=0)
    is_rental: Optional[bool] = None
    status: Optional[EquipmentStatus] = None


class EquipmentResponse(BaseModel):
    id: int
    name: str
    site_id: Optional[uuid.UUID] = None
    quantity: int
    is_rental: bool
    status: str
    date_bought: Optional[datetime] = None

    class Config:
        from_attributes = True


class EquipmentGroup(BaseModel):
    """Rows sharing (name, site, rental flag), shown as one line."""
    name: str
    site_id: Optional[uuid.UUID] = None
    site_name: str
    is_rental: bool
    total_quantity: int
    ids: List[int]


class NameCount(BaseModel):
    name: str
    count: int


class SiteInventory(BaseModel):
    site_id: uuid.UUID
    site_name: str
    owned: List[NameCount]
    rental: List[NameCount]


class GroupEdit(BaseModel):
    ids: List[int] = Field(min_length=1)
    quantity: int = Field(ge=0)
    site_id: Optional[uuid.UUID] = None


class GroupBulkEdit(BaseModel):
    groups: List[GroupEdit] = Field(min_length=1)


class GroupDelete(BaseModel):
    ids: List[int] = Field(min_length=1)


class InventoryExportRequest(BaseModel):
    recipient: EmailStr
    site_id: Optional[uuid.UUID] = None
    subject: Optional[str] = Field(default=None, max_length=255)

    @field_validator("subject")
    @classmethod
    def single_line_subject(cls, v):
        if v is not None and ("\r" in v or "\n" in v):
            raise ValueError("Subject must be a single line")
        return v
