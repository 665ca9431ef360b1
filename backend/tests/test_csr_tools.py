"""
CSR tool tests - each tool executed through the registry against the
seeded in-memory services and a local knowledge store.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.inventory import InventoryService
from services.orders import OrderService, format_address
from services.redis_client import get_redis
from services.refunds import RefundService
from services.tickets import TICKET_QUEUE_KEY, TicketService
from tools.csr_tools import KNOWLEDGE_SEARCH_TOOL, MAX_SEARCH_RESULTS, register_csr_tools
from tools.knowledge import HashingEmbedder, LocalVectorStore, RetrievalRouter
from tools.knowledge.router import SEARCH_UNAVAILABLE, SearchResult
from tools.registry import ToolRegistry


def _build(retrieval=None, notify=False, min_score=0.0):
    if retrieval is None:
        embedder = HashingEmbedder(dimension=256)
        retrieval = RetrievalRouter(candidates=[], fallback=lambda: LocalVectorStore(embedder))

    registry = ToolRegistry()
    services = {
        "orders": OrderService(),
        "inventory": InventoryService(),
        "refunds": RefundService(),
        "tickets": TicketService(notify=notify),
    }
    register_csr_tools(registry, retrieval=retrieval, min_score=min_score, **services)
    return registry, services, retrieval


def _run(registry, name, args):
    return asyncio.run(registry.execute(name, args))


class TestRegistration:
    def test_six_tools(self):
        registry, _, _ = _build()
        assert sorted(registry.names()) == sorted([
            "lookupOrder",
            "checkInventory",
            "processRefund",
            "updateShippingAddress",
            "createTicket",
            KNOWLEDGE_SEARCH_TOOL,
        ])

    def test_approval_flags(self):
        registry, _, _ = _build()
        gated = {name for name in registry.names() if registry.get(name).requires_approval}
        assert gated == {"processRefund", "updateShippingAddress"}


class TestLookupOrder:
    def test_found(self):
        registry, _, _ = _build()
        result = _run(registry, "lookupOrder", {"orderId": "ORD-12345"})

        assert result.success is True
        out = result.output
        assert out["found"] is True
        assert out["status"] == "shipped"
        assert out["trackingNumber"] == "TRACK123"
        assert out["total"] == 99.99
        assert isinstance(out["estimatedDelivery"], str)

    def test_not_found(self):
        registry, _, _ = _build()
        result = _run(registry, "lookupOrder", {"orderId": "ORD-00000"})
        assert result.success is True
        assert result.output == {"found": False, "message": "Order ORD-00000 not found"}


class TestCheckInventory:
    def test_in_stock(self):
        registry, _, _ = _build()
        out = _run(registry, "checkInventory", {"productId": "PROD-001"}).output
        assert out["inStock"] is True
        assert out["quantity"] == 10
        assert out["availableDate"]

    def test_out_of_stock(self):
        registry, _, _ = _build()
        out = _run(registry, "checkInventory", {"productId": "PROD-002"}).output
        assert out["inStock"] is False
        assert out["quantity"] == 0

    def test_unknown_product(self):
        registry, _, _ = _build()
        out = _run(registry, "checkInventory", {"productId": "PROD-999"}).output
        assert out == {"productId": "PROD-999", "inStock": False, "message": "Product not found"}


class TestProcessRefund:
    def test_records_pending_refund(self):
        registry, services, _ = _build()
        result = _run(registry, "processRefund", {"orderId": "ORD-12345", "amount": 49.99, "reason": "damaged"})

        assert result.success is True
        out = result.output
        assert out["refundId"].startswith("REF-")
        assert out["amount"] == 49.99
        assert out["status"] == "pending"
        assert out["estimatedProcessingDays"] == 5

        stored = asyncio.run(services["refunds"].get_by_id(out["refundId"]))
        assert stored.order_id == "ORD-12345"

    def test_non_positive_amount(self):
        registry, _, _ = _build()
        result = _run(registry, "processRefund", {"orderId": "ORD-12345", "amount": 0, "reason": "x"})

        assert result.success is False
        assert "Invalid refund amount" in result.error
        assert result.output["error"]["code"] == "VALIDATION_MISSING_PARAM"


class TestUpdateShippingAddress:
    def test_updates_address(self):
        registry, services, _ = _build()
        address = {"street": "9 Elm St", "city": "Springfield", "zip": "00001"}
        result = _run(registry, "updateShippingAddress", {"orderId": "ORD-12345", "newAddress": address})

        assert result.success is True
        assert result.output["newAddress"] == "9 Elm St, Springfield, 00001"
        order = asyncio.run(services["orders"].find_by_id("ORD-12345"))
        assert order.shipping_address == "9 Elm St, Springfield, 00001"

    def test_unknown_order(self):
        registry, _, _ = _build()
        result = _run(registry, "updateShippingAddress", {"orderId": "ORD-0", "newAddress": {"address": "x"}})
        assert result.success is False
        assert result.output["error"] == "Order ORD-0 not found"

    def test_string_address_rejected_by_schema(self):
        registry, _, _ = _build()
        result = _run(registry, "updateShippingAddress", {"orderId": "ORD-12345", "newAddress": "1 Main"})
        assert result.success is False

    def test_format_address_prefers_single_line(self):
        assert format_address({"address": "1 Main St", "city": "ignored"}) == "1 Main St"
        assert format_address("22 Side Rd") == "22 Side Rd"


class TestCreateTicket:
    def test_default_priority(self):
        registry, _, _ = _build()
        out = _run(registry, "createTicket", {"subject": "Broken", "description": "Arrived broken"}).output

        assert out["success"] is True
        assert out["ticketId"].startswith("TKT-")
        assert out["priority"] == "medium"
        assert out["status"] == "open"
        assert out["message"] == f"Ticket {out['ticketId']} created. Our team will follow up within 24 hours."

    def test_unknown_priority_falls_back(self):
        registry, _, _ = _build()
        out = _run(registry, "createTicket", {"subject": "s", "description": "d", "priority": "URGENT"}).output
        assert out["priority"] == "medium"

    def test_ticket_announced_on_queue(self):
        registry, _, _ = _build(notify=True)

        async def scenario():
            result = await registry.execute("createTicket", {"subject": "Lost parcel", "description": "d"})
            redis = await get_redis()
            return result, await redis.lrange(TICKET_QUEUE_KEY)

        result, queued = asyncio.run(scenario())
        events = [json.loads(item) for item in queued]
        assert {"event": "created", "ticketId": result.output["ticketId"], "subject": "Lost parcel"} in events


class TestSearchKnowledgeBase:
    def test_ranked_documents(self):
        registry, _, retrieval = _build()

        async def scenario():
            await retrieval.index("Refund Policy\n\nFull refunds are available within 30 days of delivery.",
                                  {"title": "Refund Policy"})
            await retrieval.index("Shipping\n\nStandard shipping takes 5 business days.", {"title": "Shipping"})
            return await registry.execute(KNOWLEDGE_SEARCH_TOOL, {"query": "refund policy days"})

        result = asyncio.run(scenario())
        out = result.output
        assert out["success"] is True
        assert out["query"] == "refund policy days"
        assert out["totalResults"] == len(out["documents"]) >= 1
        assert out["documents"][0]["metadata"]["title"] == "Refund Policy"
        scores = [d["score"] for d in out["documents"]]
        assert scores == sorted(scores, reverse=True)

    def test_metadata_can_be_omitted(self):
        registry, _, retrieval = _build()

        async def scenario():
            await retrieval.index("Returns\n\nReturns accepted within 30 days.", {"title": "Returns"})
            return await registry.execute(KNOWLEDGE_SEARCH_TOOL, {"query": "returns", "includeMetadata": False})

        out = asyncio.run(scenario()).output
        assert out["documents"]
        assert all("metadata" not in d for d in out["documents"])

    def test_top_k_clamped(self):
        retrieval = MagicMock()
        retrieval.search = AsyncMock(return_value=SearchResult([]))
        registry, _, _ = _build(retrieval=retrieval, min_score=0.5)

        _run(registry, KNOWLEDGE_SEARCH_TOOL, {"query": "q", "topK": 500})
        retrieval.search.assert_awaited_with("q", top_k=MAX_SEARCH_RESULTS, min_score=0.5)

        _run(registry, KNOWLEDGE_SEARCH_TOOL, {"query": "q", "topK": 0})
        retrieval.search.assert_awaited_with("q", top_k=5, min_score=0.5)

        _run(registry, KNOWLEDGE_SEARCH_TOOL, {"query": "q", "topK": 3.0})
        retrieval.search.assert_awaited_with("q", top_k=3, min_score=0.5)

    def test_backend_failure_reported(self):
        retrieval = MagicMock()
        retrieval.search = AsyncMock(return_value=SearchResult([], success=False, error=SEARCH_UNAVAILABLE))
        registry, _, _ = _build(retrieval=retrieval)

        result = _run(registry, KNOWLEDGE_SEARCH_TOOL, {"query": "anything"})
        assert result.success is False
        assert result.to_step_result()["documents"] == []
        assert SEARCH_UNAVAILABLE in result.error

    @pytest.mark.parametrize("args", [{}, {"query": 42}])
    def test_invalid_query(self, args):
        registry, _, _ = _build()
        assert _run(registry, KNOWLEDGE_SEARCH_TOOL, args).success is False
