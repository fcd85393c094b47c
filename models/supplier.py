from pydantic import BaseModel
from typing import Optional


class Supplier(BaseModel):
    """A supplier from the supplier master list. Matched by exact name."""
    id: str
    name: str
    contact: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
