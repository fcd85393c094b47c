from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .timestamps import Instant, utc_now


class Project(BaseModel):
    """
    A customer project.

    ``spent`` only ever reflects approved travel expenses and is mutated
    solely through spend adjustments. Materials spend is never stored here;
    it is recomputed from the ledger and live orders.
    """
    id: str
    name: str
    code: Optional[str] = None
    client: Optional[str] = None
    budget: Optional[float] = None
    spent: float = 0.0


class TravelStatus(str, Enum):
    PENDING_APPROVAL = "Pending Approval"
    APPROVED         = "Approved"
    REJECTED         = "Rejected"
    CANCELLED        = "Cancelled"


class TravelReport(BaseModel):
    """A technician's travel-expense report charged to a project."""
    id: Optional[str] = None
    code: Optional[str] = None
    project_id: str = ""
    project_name: Optional[str] = None
    technician_name: Optional[str] = None
    total: float = Field(default=0.0, ge=0)
    status: TravelStatus = TravelStatus.PENDING_APPROVAL
    approved_by: Optional[str] = None
    notes: Optional[str] = None
    decided_at: Optional[Instant] = None


class SpendAdjustment(BaseModel):
    """Signed change to a project's travel spend (approve = +, cancel/delete = -)."""
    id: Optional[str] = None
    project_id: str
    report_id: str
    amount: float
    reason: str
    created_at: Instant = Field(default_factory=utc_now)
