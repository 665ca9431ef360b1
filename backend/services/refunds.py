"""
Refund Service - records refund requests behind the processRefund tool.

Refunds start in "pending"; settlement happens downstream.
"""

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class Refund:
    id: str
    order_id: str
    amount: float
    reason: str
    status: str = "pending"


class RefundService:
    def __init__(self):
        self._refunds: Dict[str, Refund] = {}
        self._seq = itertools.count(1)

    def _next_id(self) -> str:
        refund_id = f"REF-{int(time.time() * 1000)}"
        while refund_id in self._refunds:
            refund_id = f"REF-{int(time.time() * 1000)}-{next(self._seq)}"
        return refund_id

    async def process(self, order_id: str, amount: float, reason: str) -> Refund:
        refund = Refund(id=self._next_id(), order_id=order_id, amount=amount, reason=reason)
        self._refunds[refund.id] = refund
        logger.info(f"Refund {refund.id} recorded for {order_id}: {amount:.2f}")
        return refund

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        return self._refunds.get(refund_id)
