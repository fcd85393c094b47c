"""
Read models produced by the aggregation layer.

Nothing here is persisted; every report is computed on request from the
ledger and live orders.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .inventory import InventoryItem
from .ledger import LedgerEntry


class PriceMetrics(BaseModel):
    min_price: float = 0.0
    max_price: float = 0.0
    avg_price: float = 0.0                  # Quantity-weighted: total_spent / total_quantity
    total_purchases: int = 0
    total_quantity: float = 0.0
    total_spent: float = 0.0
    price_variation: float = 0.0            # (max - min) / avg * 100
    last_price: float = 0.0
    last_purchase_date: Optional[datetime] = None


class ItemPriceHistory(BaseModel):
    history: List[LedgerEntry] = Field(default_factory=list)   # Ascending by date
    metrics: Optional[PriceMetrics] = None                      # None when no history
    item: Optional[InventoryItem] = None


class SupplierPriceComparison(BaseModel):
    supplier_id: str
    supplier_name: str
    avg_price: float
    min_price: float
    max_price: float
    last_price: float
    purchase_count: int
    total_quantity: float = 0.0


class TopPriceVariation(BaseModel):
    item_id: str
    item_name: str
    item_sku: str
    price_variation: float
    last_price: float
    avg_price: float
    purchase_count: int


class PurchaseDetail(BaseModel):
    entry_id: Optional[str] = None
    date: datetime
    supplier_id: str
    supplier_name: str
    order_id: str
    order_number: str
    order_status: str                       # Live status, "Unknown" if the order is gone
    quantity: float
    unit_price: float
    total_price: float
    project_id: str
    project_name: str


class PriceVariationItem(BaseModel):
    item_id: str
    item_name: str
    item_sku: str
    unique_prices: int
    min_price: float
    max_price: float
    variation_percent: float                # (max - min) / min * 100
    weighted_avg_price: float
    total_quantity: float
    total_amount: float
    suppliers_count: int
    suppliers: List[str] = Field(default_factory=list)
    last_price: float
    last_supplier: str
    last_date: Optional[datetime] = None
    impact: float                           # Saving had every purchase been at min_price
    purchases: List[PurchaseDetail] = Field(default_factory=list)   # Newest first


class PriceVariationReport(BaseModel):
    items: List[PriceVariationItem] = Field(default_factory=list)
    total_items: int = 0
    total_impact: float = 0.0
    avg_variation: float = 0.0


class ItemPurchaseSummary(BaseModel):
    """Per-item roll-up used by the supplier and project drill-downs."""
    item_id: str
    sku: str
    name: str
    unit: str
    purchase_count: int
    avg_price: float
    last_price: float
    last_purchase_date: Optional[datetime] = None
    total_spent: float


class LastPurchase(BaseModel):
    date: Optional[datetime] = None
    supplier: str = ""
    price: float = 0.0
    order_number: str = ""


class MaterialConsumption(BaseModel):
    item_id: str
    item_name: str
    item_sku: str
    total_quantity: float
    transaction_count: int
    total_amount: float
    avg_price: float                        # Weighted
    min_price: float                        # Lowest positive price, 0 when none
    max_price: float
    last_purchase: LastPurchase
    suppliers: List[str] = Field(default_factory=list)
    supplier_count: int = 0


class MonthlySpend(BaseModel):
    month: str                              # YYYY-MM
    amount: float


class CommittedOrder(BaseModel):
    order_id: str
    order_number: str
    supplier_name: str
    status: str
    total: float
    date: Optional[datetime] = None


class ProjectRef(BaseModel):
    id: str
    name: str
    client: Optional[str] = None
    budget: Optional[float] = None


class ReportPeriod(BaseModel):
    start_date: Optional[datetime] = None
    end_date: datetime


class ConsumptionSummary(BaseModel):
    materials_received: float = 0.0
    materials_committed: float = 0.0
    travel_approved: float = 0.0
    travel_pending: float = 0.0
    total_spent: float = 0.0                # materials_received + travel_approved
    total_committed: float = 0.0            # materials_committed + travel_pending
    total_projected: float = 0.0            # total_spent + total_committed
    budget_used_percent: Optional[float] = None   # total_projected / budget * 100
    unique_items: int = 0
    unique_suppliers: int = 0
    total_transactions: int = 0
    pending_orders_count: int = 0
    project_match: Literal["id", "name", "none"] = "none"


class ProjectConsumptionReport(BaseModel):
    project: ProjectRef
    period: ReportPeriod
    summary: ConsumptionSummary
    materials: List[MaterialConsumption] = Field(default_factory=list)
    top_by_amount: List[MaterialConsumption] = Field(default_factory=list)
    top_by_quantity: List[MaterialConsumption] = Field(default_factory=list)
    monthly_evolution: List[MonthlySpend] = Field(default_factory=list)
    committed_orders: List[CommittedOrder] = Field(default_factory=list)


class ProjectRanking(BaseModel):
    id: str
    name: str
    client: Optional[str] = None
    budget: Optional[float] = None
    materials_received: float = 0.0
    materials_committed: float = 0.0
    travel_approved: float = 0.0
    travel_pending: float = 0.0
    total_spent: float = 0.0
    total_committed: float = 0.0
    total_projected: float = 0.0
    item_count: int = 0


class SearchHit(BaseModel):
    type: Literal["item", "supplier", "project"]
    id: str
    name: str
    subtitle: Optional[str] = None
    item_count: int = 0
    last_purchase: Optional[datetime] = None
    score: float = 0.0
