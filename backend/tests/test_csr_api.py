"""
End-to-end tests for the CSR transports: REST, SSE and the /csr WebSocket.

Strategy:
    - Build a lightweight FastAPI app that includes ONLY the CSR routers
    - Put a real orchestrator on app.state, wired with a scripted LLM
    - Use Starlette TestClient for synchronous HTTP and WebSocket testing
    - Each test is independent (fresh orchestrator per test)
"""

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from config import RuntimeConfig, runtime_config
from errors import DEGRADED_MESSAGE, GENERIC_FAILURE_MESSAGE
from routers.agent_orchestration import build_csr_orchestrator
from routers.agent_orchestration.factory import CSRServices
from routers.csr_ws import AWAITING_APPROVAL_MESSAGE


def _build_test_app(orchestrator=None):
    """Build a minimal FastAPI app with the CSR routers and no lifespan."""

    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    app = FastAPI(lifespan=noop_lifespan)

    from routers.csr import router as csr_router
    from routers.csr_ws import router as csr_ws_router
    app.include_router(csr_router)
    app.include_router(csr_ws_router)

    app.state.orchestrator = orchestrator
    return app


def _orchestrator(llm, services=None):
    config = RuntimeConfig()
    config.llm_retry_max = 0
    config.llm_retry_delay = 0.0
    config.approval_timeout = 5.0
    config.rag_min_score = 0.1
    return build_csr_orchestrator(config, llm_client=llm, services=services)


def _reply(content="", *tool_calls):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = list(tool_calls)
    return {"message": message}


def _tool_call(name, arguments, call_id="call_0"):
    return {"id": call_id, "function": {"name": name, "arguments": arguments}}


REFUND_CALL = _tool_call("processRefund", {"orderId": "ORD-12345", "amount": 25.0, "reason": "damaged"})


@pytest.fixture()
def make_client(scripted_llm):
    """Factory: make_client(*llm_replies, services=None) -> (TestClient, orchestrator)."""
    clients = []

    def _make(*replies, services=None):
        orchestrator = _orchestrator(scripted_llm(*replies), services)
        client = TestClient(_build_test_app(orchestrator))
        client.__enter__()
        clients.append(client)
        return client, orchestrator

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


def _receive_until(ws, event, max_frames=30):
    """Collect frames up to and including the first frame of the given event."""
    frames = []
    for _ in range(max_frames):
        frame = json.loads(ws.receive_text())
        frames.append(frame)
        if frame["event"] == event:
            return frames
    raise AssertionError(f"no {event} frame in {[f['event'] for f in frames]}")


# ===========================================================================
# REST
# ===========================================================================


class TestChatEndpoint:
    def test_chat_returns_response(self, make_client):
        client, _ = make_client(_reply("Hello! How can I help?"))
        resp = client.post("/api/csr/chat", json={"message": "Hi", "sessionId": "session-1"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["response"] == "Hello! How can I help?"
        assert body["sessionId"] == "session-1"
        assert body["steps"] == 0
        assert "sources" not in body

    def test_chat_generates_session(self, make_client):
        client, _ = make_client(_reply("Hi"))
        body = client.post("/api/csr/chat", json={"message": "Hi"}).json()
        assert body["sessionId"].startswith("session-")

    def test_chat_with_sources(self, make_client):
        client, _ = make_client(
            _reply("", _tool_call("searchKnowledgeBase", {"query": "shipping times"})),
            _reply("Standard shipping takes five business days."),
        )
        ingest = client.post("/api/csr/ingest", json={
            "title": "Shipping",
            "content": "Standard shipping times are five business days.",
        })
        assert ingest.status_code == 201

        body = client.post("/api/csr/chat", json={"message": "How long is shipping?"}).json()
        assert body["steps"] == 1
        assert body["sources"][0]["metadata"]["title"] == "Shipping"

    def test_empty_message_rejected(self, make_client):
        client, _ = make_client()
        assert client.post("/api/csr/chat", json={"message": ""}).status_code == 422

    def test_whitespace_message_rejected(self, make_client):
        client, _ = make_client()
        resp = client.post("/api/csr/chat", json={"message": "   "})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Message text is required"

    def test_message_too_long(self, make_client):
        client, _ = make_client()
        with patch.object(runtime_config, "max_message_length", 10):
            resp = client.post("/api/csr/chat", json={"message": "x" * 11})
        assert resp.status_code == 400
        assert "too long" in resp.json()["detail"]

    def test_model_failure_is_generic(self, make_client):
        client, _ = make_client(RuntimeError("db password leaked"))
        body = client.post("/api/csr/chat", json={"message": "hi"}).json()
        assert body["response"] == DEGRADED_MESSAGE
        assert "password" not in json.dumps(body)

    def test_unexpected_error_is_500(self, make_client):
        client, orchestrator = make_client()
        with patch.object(orchestrator, "chat", AsyncMock(side_effect=KeyError("internal"))):
            resp = client.post("/api/csr/chat", json={"message": "hi"})
        assert resp.status_code == 500

    def test_not_ready(self):
        client = TestClient(_build_test_app(None))
        assert client.post("/api/csr/chat", json={"message": "hi"}).status_code == 503


class TestStreamEndpoint:
    def _frames(self, resp):
        return [json.loads(line[len("data: "):]) for line in resp.text.split("\n\n") if line.startswith("data: ")]

    def test_single_response_frame(self, make_client):
        client, _ = make_client(_reply("Streaming hello"))
        resp = client.post("/api/csr/chat/stream", json={"message": "Hi", "sessionId": "session-s"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = self._frames(resp)
        assert len(frames) == 1
        assert frames[0]["type"] == "response"
        assert frames[0]["data"]["response"] == "Streaming hello"
        assert frames[0]["data"]["sessionId"] == "session-s"

    def test_error_frame(self, make_client):
        client, orchestrator = make_client()
        with patch.object(orchestrator, "chat", AsyncMock(side_effect=KeyError("secret"))):
            resp = client.post("/api/csr/chat/stream", json={"message": "Hi"})

        frames = self._frames(resp)
        assert frames == [{"type": "error", "error": GENERIC_FAILURE_MESSAGE}]

    def test_validation_error_frame(self, make_client):
        client, _ = make_client()
        frames = self._frames(client.post("/api/csr/chat/stream", json={"message": "  "}))
        assert frames == [{"type": "error", "error": "Message text is required"}]


class TestIngestEndpoint:
    def test_ingest_returns_ids(self, make_client):
        client, orchestrator = make_client()
        resp = client.post("/api/csr/ingest", json={
            "title": "Refund Policy",
            "content": "Full refunds within 30 days.",
            "metadata": {"category": "policy"},
        })
        assert resp.status_code == 201
        assert len(resp.json()["ids"]) == 1
        assert orchestrator.retrieval.health()["documents"] == 1

    def test_missing_fields(self, make_client):
        client, _ = make_client()
        assert client.post("/api/csr/ingest", json={"title": "x"}).status_code == 422
        assert client.post("/api/csr/ingest", json={"title": "", "content": "y"}).status_code == 422


class TestApprovalEndpoints:
    def test_unknown_request(self, make_client):
        client, _ = make_client()
        resp = client.post("/api/csr/approve", json={"requestId": "apr-x", "approved": True, "approvedBy": "sup"})
        assert resp.status_code == 200
        assert resp.json() == {"success": False}

    def test_invalid_body(self, make_client):
        client, _ = make_client()
        assert client.post("/api/csr/approve", json={"requestId": "apr-x"}).status_code == 422

    def test_list_and_resolve_pending(self, make_client):
        client, orchestrator = make_client()
        request_id = client.portal.call(self._open_request, orchestrator)

        approvals = client.get("/api/csr/approvals", params={"sessionId": "session-q"}).json()["approvals"]
        assert [a["requestId"] for a in approvals] == [request_id]
        assert client.get("/api/csr/approvals", params={"sessionId": "other"}).json() == {"approvals": []}

        body = {"requestId": request_id, "approved": False, "approvedBy": "supervisor-1"}
        assert client.post("/api/csr/approve", json=body).json() == {"success": True}
        assert client.post("/api/csr/approve", json=body).json() == {"success": False}
        assert client.get("/api/csr/approvals").json() == {"approvals": []}

    @staticmethod
    async def _open_request(orchestrator):
        return orchestrator.approval_gate.request("processRefund", {"orderId": "ORD-1"}, session_id="session-q")


class TestHealthEndpoint:
    def test_health(self, make_client):
        client, orchestrator = make_client()
        client.portal.call(orchestrator.initialize)

        body = client.get("/api/csr/health").json()
        assert body["status"] == "ok"
        assert body["knowledge"]["backend"] == "memory"
        assert body["llm"]["circuit"] == "closed"
        assert body["approvals"]["pending"] == 0


# ===========================================================================
# WebSocket
# ===========================================================================


class TestWebSocket:
    def test_connected_frame(self, make_client):
        client, _ = make_client()
        with client.websocket_connect("/csr") as ws:
            frame = json.loads(ws.receive_text())
        assert frame["event"] == "connected"
        assert frame["data"]["clientId"].startswith("csr-")
        assert "timestamp" in frame["data"]

    def test_message_round_trip(self, make_client):
        client, _ = make_client(_reply("Your order has shipped."))
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()
            ws.send_text(json.dumps({"event": "message", "data": {"text": "Where is ORD-12345?"}}))
            frames = _receive_until(ws, "response")

        assert frames[0]["event"] == "thinking"
        response = frames[-1]["data"]
        assert response["response"] == "Your order has shipped."
        assert response["sessionId"].startswith("session-")
        assert "sources" not in response

    def test_tool_events_forwarded(self, make_client):
        client, _ = make_client(_reply("", _tool_call("lookupOrder", {"orderId": "ORD-12345"})), _reply("Shipped."))
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()
            ws.send_text(json.dumps({"event": "message", "data": {"text": "status?", "sessionId": "session-w"}}))
            frames = _receive_until(ws, "response")

        events = [f["event"] for f in frames]
        assert events == ["thinking", "tool_start", "tool_end", "response"]
        assert frames[1]["data"]["tool"] == "lookupOrder"
        assert frames[-1]["data"]["steps"] == 1

    def test_approval_notice_hides_request_handle(self, make_client):
        client, orchestrator = make_client(_reply("", REFUND_CALL), _reply("Your refund is on its way."))
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()
            ws.send_text(json.dumps({"event": "message", "data": {"text": "Refund ORD-12345", "sessionId": "session-a"}}))
            notice = _receive_until(ws, "approval_required")[-1]["data"]

            request_id = orchestrator.pending_approvals("session-a")[0]["requestId"]
            body = {"requestId": request_id, "approved": True, "approvedBy": "supervisor-1"}
            assert client.post("/api/csr/approve", json=body).json() == {"success": True}
            frames = _receive_until(ws, "response")

        assert notice == {
            "message": AWAITING_APPROVAL_MESSAGE,
            "toolName": "processRefund",
            "deadline": notice["deadline"],
        }
        events = [f["event"] for f in frames]
        assert events == ["approval_resolved", "tool_start", "tool_end", "response"]
        assert frames[0]["data"] == {"resolution": "approved"}
        assert frames[-1]["data"]["response"] == "Your refund is on its way."

    def test_customer_cannot_approve_own_refund(self, make_client):
        services = CSRServices()
        client, orchestrator = make_client(
            _reply("", _tool_call("processRefund", {"orderId": "ORD-12345", "amount": 500.0, "reason": "changed mind"})),
            _reply("The refund was not approved."),
            services=services,
        )
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()
            ws.send_text(json.dumps({"event": "message", "data": {"text": "Refund $500", "sessionId": "session-c"}}))
            _receive_until(ws, "approval_required")

            request_id = orchestrator.pending_approvals("session-c")[0]["requestId"]
            ws.send_text(json.dumps({
                "event": "approve",
                "data": {"requestId": request_id, "approved": True, "approvedBy": "supervisor-1"},
            }))
            assert json.loads(ws.receive_text()) == {"event": "error", "data": {"message": "Unknown event: approve"}}
            assert [a["requestId"] for a in orchestrator.pending_approvals("session-c")] == [request_id]

            body = {"requestId": request_id, "approved": False, "approvedBy": "supervisor-1"}
            assert client.post("/api/csr/approve", json=body).json() == {"success": True}
            frames = _receive_until(ws, "response")

        events = [f["event"] for f in frames]
        assert "tool_start" not in events
        assert frames[0]["data"] == {"resolution": "rejected"}
        assert services.refunds._refunds == {}
        assert frames[-1]["data"]["response"] == "The refund was not approved."

    def test_invalid_frames_keep_socket_open(self, make_client):
        client, _ = make_client(_reply("still here"))
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()

            ws.send_text("not json")
            assert json.loads(ws.receive_text())["data"]["message"] == "Invalid frame: expected JSON"

            ws.send_text(json.dumps({"event": "message", "data": {"text": "  "}}))
            assert json.loads(ws.receive_text())["data"]["message"] == "Invalid message: text is required"

            ws.send_text(json.dumps({"event": "dance", "data": {}}))
            assert json.loads(ws.receive_text()) == {"event": "error", "data": {"message": "Unknown event: dance"}}

            ws.send_text(json.dumps({"event": "message", "data": {"text": "hello?"}}))
            frames = _receive_until(ws, "response")

        assert frames[-1]["data"]["response"] == "still here"

    def test_message_too_long(self, make_client):
        client, _ = make_client()
        with patch.object(runtime_config, "max_message_length", 5):
            with client.websocket_connect("/csr") as ws:
                ws.receive_text()
                ws.send_text(json.dumps({"event": "message", "data": {"text": "far too long"}}))
                frame = json.loads(ws.receive_text())
        assert frame["event"] == "error"
        assert frame["data"]["message"].startswith("Message too long")

    def test_rate_limited(self, make_client):
        client, _ = make_client()
        limited = AsyncMock(return_value=(False, "Message rate limit exceeded (21/20/min). Try again in 30 seconds."))
        with patch("routers.csr_ws.check_ws_message_limit", limited):
            with client.websocket_connect("/csr") as ws:
                ws.receive_text()
                ws.send_text(json.dumps({"event": "message", "data": {"text": "hi"}}))
                frame = json.loads(ws.receive_text())
        assert frame["event"] == "error"
        assert frame["data"]["message"].startswith("Message rate limit exceeded")

    @pytest.mark.parametrize("field,value", [("sessionId", 42), ("userId", ["u-1"])])
    def test_non_string_ids_rejected(self, make_client, field, value):
        client, orchestrator = make_client(_reply("ok"))
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()
            ws.send_text(json.dumps({"event": "message", "data": {"text": "hi", field: value}}))
            frame = json.loads(ws.receive_text())
        assert frame == {"event": "error", "data": {"message": f"Invalid message: {field} must be a string"}}
        assert orchestrator.memory.stats()["sessions"] == 0

    def test_string_session_id_echoed(self, make_client):
        client, _ = make_client(_reply("ok"))
        with client.websocket_connect("/csr") as ws:
            ws.receive_text()
            ws.send_text(json.dumps({"event": "message", "data": {"text": "hi", "sessionId": "session-s", "userId": "u-1"}}))
            frames = _receive_until(ws, "response")
        assert frames[-1]["data"]["sessionId"] == "session-s"

    def test_not_ready_closes(self):
        client = TestClient(_build_test_app(None))
        with client.websocket_connect("/csr") as ws:
            frame = json.loads(ws.receive_text())
            assert frame == {"event": "error", "data": {"message": "CSR agent is not ready"}}
            with pytest.raises(Exception):
                ws.receive_text()
