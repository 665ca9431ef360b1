"""
CSR Tools - customer support tool set registered on a ToolRegistry.

Tools:
    lookupOrder            order status, items, tracking
    checkInventory         stock level and next restock date
    processRefund          records a refund (requires approval)
    updateShippingAddress  changes an order's address (requires approval)
    createTicket           escalation ticket, announced on the ticket queue
    searchKnowledgeBase    ranked FAQ / policy search via the RetrievalRouter

Handlers are closures over the business services, wrapped by
handle_async_tool_errors so failures come back in-band as
{"success": False, "error": {...}} dicts.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from errors import ValidationError, handle_async_tool_errors

from .registry import ToolDefinition, ToolParameter, ToolRegistry

logger = logging.getLogger(__name__)

KNOWLEDGE_SEARCH_TOOL = "searchKnowledgeBase"
MAX_SEARCH_RESULTS = 20


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def register_csr_tools(
    registry: ToolRegistry,
    orders,
    inventory,
    refunds,
    tickets,
    retrieval,
    min_score: float = 0.5,
    default_top_k: int = 5,
) -> None:
    """Register the six CSR tools.

    Args:
        registry: Target registry
        orders: OrderService-like provider
        inventory: InventoryService-like provider
        refunds: RefundService-like provider
        tickets: TicketService-like provider
        retrieval: RetrievalRouter for knowledge search
        min_score: Relevance floor for knowledge search hits
        default_top_k: Hits returned when the model omits topK
    """

    @handle_async_tool_errors("lookupOrder")
    async def lookup_order(orderId: str) -> Dict[str, Any]:
        order = await orders.find_by_id(orderId)
        if order is None:
            return {"found": False, "message": f"Order {orderId} not found"}

        return {
            "found": True,
            "orderId": order.id,
            "status": order.status,
            "items": order.items,
            "total": order.total,
            "shippingAddress": order.shipping_address,
            "trackingNumber": order.tracking_number,
            "estimatedDelivery": _iso(order.estimated_delivery),
        }

    @handle_async_tool_errors("checkInventory")
    async def check_inventory(productId: str) -> Dict[str, Any]:
        level = await inventory.check(productId)
        if level is None:
            return {"productId": productId, "inStock": False, "message": "Product not found"}

        return {
            "productId": productId,
            "inStock": level.quantity > 0,
            "quantity": level.quantity,
            "availableDate": _iso(level.next_restock),
        }

    @handle_async_tool_errors("processRefund")
    async def process_refund(orderId: str, amount: float, reason: str) -> Dict[str, Any]:
        if amount <= 0:
            raise ValidationError(
                "Invalid refund amount",
                details="Amount must be positive",
                parameter="amount",
            )

        refund = await refunds.process(orderId, amount, reason)
        return {
            "success": True,
            "refundId": refund.id,
            "amount": refund.amount,
            "status": refund.status,
            "estimatedProcessingDays": 5,
        }

    @handle_async_tool_errors("updateShippingAddress")
    async def update_shipping_address(orderId: str, newAddress: Dict[str, Any]) -> Dict[str, Any]:
        updated = await orders.update_address(orderId, newAddress)
        if updated is None:
            return {"success": False, "error": f"Order {orderId} not found"}

        return {"success": True, "orderId": orderId, "newAddress": updated.shipping_address}

    @handle_async_tool_errors("createTicket")
    async def create_ticket(subject: str, description: str, priority: Optional[str] = None) -> Dict[str, Any]:
        ticket = await tickets.create(subject, description, priority=priority)
        return {
            "success": True,
            "ticketId": ticket.id,
            "status": ticket.status,
            "priority": ticket.priority,
            "message": f"Ticket {ticket.id} created. Our team will follow up within 24 hours.",
        }

    async def search_knowledge_base(
        query: str, topK: Optional[int] = None, includeMetadata: bool = True
    ) -> Dict[str, Any]:
        top_k = max(1, min(int(topK or default_top_k), MAX_SEARCH_RESULTS))
        result = await retrieval.search(query, top_k=top_k, min_score=min_score)
        if not result.success:
            return {"success": False, "error": result.error, "documents": []}

        documents = []
        for doc in result:
            entry = {"id": doc.id, "content": doc.content, "score": doc.score}
            if includeMetadata:
                entry["metadata"] = doc.metadata or {}
            documents.append(entry)

        return {"success": True, "query": query, "documents": documents, "totalResults": len(documents)}

    registry.register(ToolDefinition(
        name="lookupOrder",
        description="Look up order information by order ID",
        parameters=(
            ToolParameter("orderId", "string", "The order ID to lookup (format: ORD-XXXXX)"),
        ),
        handler=lookup_order,
    ))
    registry.register(ToolDefinition(
        name="checkInventory",
        description="Check product inventory and availability",
        parameters=(
            ToolParameter("productId", "string", "The product ID to check"),
        ),
        handler=check_inventory,
    ))
    registry.register(ToolDefinition(
        name="processRefund",
        description="Process a refund for an order",
        parameters=(
            ToolParameter("orderId", "string", "The order ID to refund"),
            ToolParameter("amount", "number", "Refund amount in dollars"),
            ToolParameter("reason", "string", "Reason for refund"),
        ),
        handler=process_refund,
        requires_approval=True,
        timeout=60.0,
    ))
    registry.register(ToolDefinition(
        name="updateShippingAddress",
        description="Update shipping address for an order",
        parameters=(
            ToolParameter("orderId", "string", "The order ID"),
            ToolParameter("newAddress", "object", "New shipping address"),
        ),
        handler=update_shipping_address,
        requires_approval=True,
    ))
    registry.register(ToolDefinition(
        name="createTicket",
        description="Create a support ticket for escalation or complex issues",
        parameters=(
            ToolParameter("subject", "string", "Brief subject of the ticket"),
            ToolParameter("description", "string", "Detailed description of the issue"),
            ToolParameter("priority", "string", "Priority: low, medium, high", required=False),
        ),
        handler=create_ticket,
    ))
    registry.register(ToolDefinition(
        name=KNOWLEDGE_SEARCH_TOOL,
        description="Search the knowledge base for FAQs, policies, and documentation",
        parameters=(
            ToolParameter("query", "string", "Search query for relevant documents"),
            ToolParameter("topK", "number", "Number of documents to retrieve (default: 5)", required=False),
            ToolParameter("includeMetadata", "boolean", "Include document metadata (default: true)",
                          required=False),
        ),
        handler=search_knowledge_base,
    ))

    logger.info(f"Registered {len(registry)} CSR tools")
