import uuid
from datetime import datetime
from typing import Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class RequestType(str, Enum):
    buy = "buy"
    sell = "sell"
    rent = "rent"
    return_ = "return"


# requests that take units off an existing row
REMOVAL_TYPES = (RequestType.sell, RequestType.rent, RequestType.return_)


class RequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class EquipmentRequestCreate(BaseModel):
    type: RequestType
    equipment_id: Optional[int] = None
    equipment_name: Optional[str] = Field(default=None, max_length=255)
    quantity: int = Field(default=1, ge=1)
    is_rental: bool = False

    @field_validator("equipment_name", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @model_validator(mode="after")
    def check_target(self):
        if self.equipment_id is None and not self.equipment_name:
            raise ValueError("Please select or enter equipment")
        if self.type in REMOVAL_TYPES and self.equipment_id is None:
            raise ValueError(f"equipment_id is required for {self.type.value} requests")
        return self


class EquipmentRequestUpdate(BaseModel):
    equipment_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    quantity: Optional[int] = Field(default=None, ge=1)
    is_rental: Optional[bool] = None


class EquipmentRequestResponse(BaseModel):
    id: uuid.UUID
    site_id: uuid.UUID
    site_name: Optional[str] = None
    supervisor_id: uuid.UUID
    supervisor_username: Optional[str] = None
    type: str
    equipment_id: Optional[int] = None
    equipment_name: str
    quantity: int
    is_rental: bool
    status: str
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None
    created_at: datetime
