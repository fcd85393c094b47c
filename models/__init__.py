from .purchase_order import (
    PurchaseOrder, PurchaseOrderItem, StatusHistoryEntry, DeliveryNoteAttachment,
    OrderStatus, LineType,
)
from .ledger import LedgerEntry, ReceivedLine
from .project import Project, TravelReport, TravelStatus, SpendAdjustment
from .supplier import Supplier
from .inventory import InventoryItem, InventoryLocationStock
from .result import (
    OperationResult, TransitionResult, ReconcileSummary, IntegrityIssue, IntegrityReport,
    LedgerWriteResult, BulkDeleteResult,
)

__all__ = [
    "PurchaseOrder", "PurchaseOrderItem", "StatusHistoryEntry", "DeliveryNoteAttachment",
    "OrderStatus", "LineType",
    "LedgerEntry", "ReceivedLine",
    "Project", "TravelReport", "TravelStatus", "SpendAdjustment",
    "Supplier",
    "InventoryItem", "InventoryLocationStock",
    "OperationResult", "TransitionResult", "ReconcileSummary", "IntegrityIssue", "IntegrityReport",
    "LedgerWriteResult", "BulkDeleteResult",
]
