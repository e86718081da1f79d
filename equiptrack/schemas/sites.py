import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .users import UserSummary


class SiteCreate(BaseModel):
    site_name: str = Field(min_length=1, max_length=255)
    contractor: Optional[str] = Field(default=None, max_length=255)
    supervisor_id: Optional[uuid.UUID] = None


class SupervisorAssignment(BaseModel):
    # null clears the assignment
    supervisor_id: Optional[uuid.UUID] = None


class SiteResponse(BaseModel):
    id: uuid.UUID
    site_name: str
    contractor: Optional[str] = None
    supervisor_id: Optional[uuid.UUID] = None
    supervisor: Optional[UserSummary] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
