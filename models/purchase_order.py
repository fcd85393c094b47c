from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from .timestamps import Instant, utc_now


class OrderStatus(str, Enum):
    PENDING_APPROVAL   = "Pending Approval"
    APPROVED           = "Approved"
    SENT_TO_SUPPLIER   = "Sent to Supplier"
    RECEIVED           = "Received"
    PARTIALLY_RECEIVED = "Partially Received"
    REJECTED           = "Rejected"


class LineType(str, Enum):
    MATERIAL = "Material"
    SERVICE  = "Service"


# Orders whose total is financially obligated but not yet in the warehouse
COMMITTED_STATUSES = (OrderStatus.APPROVED, OrderStatus.SENT_TO_SUPPLIER)

# Orders whose Material lines belong in the purchase ledger
LEDGER_STATUSES = (
    OrderStatus.RECEIVED,
    OrderStatus.PARTIALLY_RECEIVED,
    OrderStatus.SENT_TO_SUPPLIER,
)

RECEIPT_STATUSES = (OrderStatus.RECEIVED, OrderStatus.PARTIALLY_RECEIVED)


class PurchaseOrderItem(BaseModel):
    """A single line item on a Purchase Order."""
    item_id: Optional[str] = None          # None for ad hoc lines
    sku: str = ""
    name: str
    quantity: float = Field(gt=0)
    price: float = Field(ge=0)             # Unit price
    unit: str = "ud"
    type: LineType = LineType.MATERIAL

    @property
    def line_total(self) -> float:
        return self.quantity * self.price


class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: Instant = Field(default_factory=utc_now)
    comment: Optional[str] = None


class DeliveryNoteAttachment(BaseModel):
    """Metadata for a delivery note ingested against an order (content lives elsewhere)."""
    file_name: str
    file_type: str = "application/pdf"
    file_size: int = 0
    uploaded_at: Instant = Field(default_factory=utc_now)


class PurchaseOrder(BaseModel):
    """
    A procurement request.

    ``total`` is always recomputed from the line items; whatever total the
    caller supplied is discarded.
    """
    id: Optional[str] = None
    order_number: Optional[str] = None
    project_id: str = ""
    project_name: Optional[str] = None      # Denormalised
    supplier_name: str = ""
    supplier_id: Optional[str] = None
    delivery_location_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING_APPROVAL
    date: Instant = Field(default_factory=utc_now)
    estimated_delivery_date: Optional[Instant] = None
    items: List[PurchaseOrderItem] = Field(default_factory=list)
    total: float = 0.0
    rejection_reason: Optional[str] = None
    reception_notes: Optional[str] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    original_order_id: Optional[str] = None  # Set on backorders
    backorder_ids: List[str] = Field(default_factory=list)
    delivery_notes: List[DeliveryNoteAttachment] = Field(default_factory=list)
    approval_code: Optional[str] = None      # Short numeric code sent out of band

    @model_validator(mode="after")
    def _recompute_total(self) -> "PurchaseOrder":
        self.total = sum(item.line_total for item in self.items)
        return self

    @property
    def material_lines(self) -> List[PurchaseOrderItem]:
        """Material lines that reference an inventory item."""
        return [i for i in self.items if i.type == LineType.MATERIAL and i.item_id]

    def find_line(self, item_id: str) -> Optional[PurchaseOrderItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def has_been_received(self) -> bool:
        """True once any receipt has been recorded in the status history."""
        return any(h.status in RECEIPT_STATUSES for h in self.status_history)
