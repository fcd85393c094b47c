from typing import Optional, Tuple

from pydantic import BaseModel, Field

from .timestamps import Instant


LedgerKey = Tuple[str, str]   # (order_id, item_id)


class LedgerEntry(BaseModel):
    """
    One historical purchase fact: N units of an item bought from a supplier
    under an order at a unit price on a date, attributed to a project.

    Entries are immutable once written. supplier_id may be empty when the
    supplier name did not match the master list at reconciliation time.
    """
    id: Optional[str] = None
    item_id: str
    item_sku: str = ""
    item_name: str = ""
    supplier_id: str = ""
    supplier_name: str = ""
    order_id: str
    order_number: str = ""
    quantity: float = 0.0
    unit_price: float = 0.0
    total_price: float = 0.0
    unit: str = "ud"
    date: Instant
    project_id: str = ""
    project_name: str = ""
    migrated_at: Optional[Instant] = None   # Set on entries created by backfill

    @property
    def key(self) -> LedgerKey:
        return (self.order_id, self.item_id)


class ReceivedLine(BaseModel):
    """A quantity of one order line marked as received."""
    item_id: str
    quantity: float = Field(ge=0)
