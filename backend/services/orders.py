"""
Order Service - seeded in-memory order store behind the lookupOrder and
updateShippingAddress tools.

Swap for a real order backend by providing the same find_by_id /
update_address coroutines.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class Order:
    id: str
    status: str
    items: List[Dict[str, Any]]
    total: float
    shipping_address: str
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_address(new_address: Union[str, Dict[str, Any]]) -> str:
    """Flatten an address payload into a single display line."""
    if isinstance(new_address, dict):
        if new_address.get("address"):
            return str(new_address["address"])
        return ", ".join(str(v) for v in new_address.values() if v not in (None, ""))
    return str(new_address)


class OrderService:
    """In-memory order store seeded with one shipped sample order."""

    def __init__(self, seed: bool = True):
        self._orders: Dict[str, Order] = {}
        if seed:
            now = datetime.now(timezone.utc)
            self._orders["ORD-12345"] = Order(
                id="ORD-12345",
                status="shipped",
                items=[{"name": "Product A", "quantity": 2, "price": 49.99}],
                total=99.99,
                shipping_address="123 Main St, City, State 12345",
                tracking_number="TRACK123",
                estimated_delivery=now + timedelta(days=2),
                created_at=now,
            )

    def add(self, order: Order) -> None:
        self._orders[order.id] = order

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    async def update_address(self, order_id: str, new_address: Union[str, Dict[str, Any]]) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order is None:
            return None
        order.shipping_address = format_address(new_address)
        logger.info(f"Order {order_id} shipping address updated")
        return order
