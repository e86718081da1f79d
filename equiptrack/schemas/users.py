import uuid
from datetime import datetime
from typing import Optional, Literal

from pydantic import BaseModel


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    username: str
    role: str
    phone: Optional[str] = None
    site_id: Optional[uuid.UUID] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoleUpdate(BaseModel):
    role: Literal["admin", "supervisor"]


class UserSummary(BaseModel):
    id: uuid.UUID
    username: str
    email: str

    class Config:
        from_attributes = True
