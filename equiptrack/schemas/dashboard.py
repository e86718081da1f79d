from typing import List

from pydantic import BaseModel

from .equipment import SiteInventory
from .transfers import TransferResponse


class AdminDashboardResponse(BaseModel):
    total_sites: int
    total_users: int
    total_supervisors: int
    unassigned_sites: int
    total_equipment_units: int
    pending_requests: int
    pending_transfers: int


class SupervisorDashboardResponse(BaseModel):
    inventory: SiteInventory
    incoming_pending: List[TransferResponse]
    outgoing: List[TransferResponse]
