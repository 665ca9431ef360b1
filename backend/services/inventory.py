"""
Inventory Service - seeded stock levels behind the checkInventory tool.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


@dataclass
class StockLevel:
    quantity: int
    next_restock: datetime


class InventoryService:
    """In-memory stock levels keyed by product id."""

    def __init__(self, seed: bool = True):
        self._stock: Dict[str, StockLevel] = {}
        if seed:
            now = datetime.now(timezone.utc)
            self._stock["PROD-001"] = StockLevel(quantity=10, next_restock=now + timedelta(days=7))
            self._stock["PROD-002"] = StockLevel(quantity=0, next_restock=now + timedelta(days=3))

    def set(self, product_id: str, level: StockLevel) -> None:
        self._stock[product_id] = level

    async def check(self, product_id: str) -> Optional[StockLevel]:
        return self._stock.get(product_id)
