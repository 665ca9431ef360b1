"""
Ticket Service - support tickets behind the createTicket tool.

New tickets are announced on the Redis list ``csr:queue:tickets`` so a
notification worker can pick them up. Queue failures never block ticket
creation.

Usage:
    from services.tickets import TicketService

    tickets = TicketService(notify=True)
    ticket = await tickets.create("Damaged item", "Box arrived crushed", priority="high")
"""

import itertools
import json
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

TICKET_QUEUE_KEY = "csr:queue:tickets"
PRIORITIES = ("low", "medium", "high")


@dataclass
class Ticket:
    id: str
    subject: str
    description: str
    priority: str = "medium"
    status: str = "open"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TicketService:
    """In-memory ticket store with best-effort queue notification."""

    def __init__(self, notify: bool = True):
        """
        Args:
            notify: Push a "created" event onto the ticket queue
        """
        self.notify = notify
        self._tickets: Dict[str, Ticket] = {}
        self._seq = itertools.count(1)

    def _next_id(self) -> str:
        ticket_id = f"TKT-{int(time.time() * 1000)}"
        while ticket_id in self._tickets:
            ticket_id = f"TKT-{int(time.time() * 1000)}-{next(self._seq)}"
        return ticket_id

    async def create(self, subject: str, description: str, priority: Optional[str] = None) -> Ticket:
        priority = (priority or "medium").lower()
        if priority not in PRIORITIES:
            logger.warning(f"Unknown ticket priority {priority!r}, using 'medium'")
            priority = "medium"

        ticket = Ticket(id=self._next_id(), subject=subject, description=description, priority=priority)
        self._tickets[ticket.id] = ticket

        if self.notify:
            await self._enqueue_created(ticket)

        return ticket

    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        return self._tickets.get(ticket_id)

    async def _enqueue_created(self, ticket: Ticket) -> None:
        from .redis_client import get_redis

        payload = json.dumps({"event": "created", "ticketId": ticket.id, "subject": ticket.subject})
        try:
            redis = await get_redis()
            await redis.rpush(TICKET_QUEUE_KEY, payload)
        except (RedisError, OSError) as e:
            # Ticket is already stored; notification is best effort
            logger.warning(f"Ticket queue unavailable for {ticket.id}: {e}")
