"""
Pydantic models for dashboard API requests.
"""
from pydantic import BaseModel, Field
from typing import List, Optional

from models.ledger import ReceivedLine
from models.purchase_order import PurchaseOrderItem


class TransitionRequest(BaseModel):
    status: str
    approval_code: Optional[str] = None
    comment: Optional[str] = None
    received_lines: Optional[List[ReceivedLine]] = None
    location_id: Optional[str] = None


class OrderDraft(BaseModel):
    project_id: str
    project_name: Optional[str] = None
    supplier_name: str
    supplier_id: Optional[str] = None
    delivery_location_id: Optional[str] = None
    estimated_delivery_date: Optional[str] = None
    items: List[PurchaseOrderItem] = Field(min_length=1)


class TravelDecision(BaseModel):
    approver: str
    reason: Optional[str] = None   # Required to reject or cancel


class TravelBulkDelete(BaseModel):
    ids: List[str] = Field(min_length=1)
