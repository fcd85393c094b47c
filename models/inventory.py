from pydantic import BaseModel
from typing import Optional


class InventoryItem(BaseModel):
    """An article from the inventory catalogue."""
    id: str
    sku: str = ""
    name: str
    unit: str = "ud"
    unit_cost: float = 0.0
    family: Optional[str] = None


class InventoryLocationStock(BaseModel):
    """On-hand quantity of one item at one location."""
    id: Optional[str] = None
    item_id: str
    location_id: str
    quantity: float = 0.0
