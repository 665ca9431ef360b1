"""
CSR WebSocket Gateway - real-time chat with the agent at /csr

Frames are JSON objects {"event": ..., "data": {...}} in both directions.

Client -> server:
    {"event": "message", "data": {"text", "sessionId"?, "userId"?}}

Server -> client:
    connected          on accept
    thinking           a message was accepted
    approval_required  notice that an action awaits supervisor approval
    approval_resolved  the supervisor decided (or the request timed out)
    tool_start / tool_end
    response           the agent's answer
    error              {"message"}; the socket stays open

Approvals are resolved by supervisors through POST /api/csr/approve. The
customer socket never sees request ids and cannot resolve a request.
Each chat message runs as its own task, so a turn waiting on approval does
not block later frames.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from config import runtime_config
from errors import GENERIC_FAILURE_MESSAGE, ValidationError, log_error
from middleware.rate_limit import check_ws_message_limit

logger = logging.getLogger(__name__)

router = APIRouter()

CONNECTED_MESSAGE = 'Connected to CSR agent. Send { event: "message", data: { text: "..." } }'
AWAITING_APPROVAL_MESSAGE = "This action is awaiting supervisor approval."
FORWARDED_EVENTS = ("approval_required", "approval_resolved", "tool_start", "tool_end")


def _customer_view(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip approval handles and resolver identity from progress events."""
    if event == "approval_required":
        return {
            "message": AWAITING_APPROVAL_MESSAGE,
            "toolName": data.get("toolName"),
            "deadline": data.get("deadline"),
        }
    if event == "approval_resolved":
        return {"resolution": data.get("resolution")}
    return data


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value or None
    raise ValueError(f"Invalid message: {key} must be a string")


class _Connection:
    """Serializes sends on one socket across concurrent chat tasks."""

    def __init__(self, websocket: WebSocket, client_id: str):
        self.websocket = websocket
        self.client_id = client_id
        self.tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()
        self.closed = False

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        if self.closed:
            return
        async with self._send_lock:
            try:
                await self.websocket.send_text(json.dumps({"event": event, "data": data}, default=str))
            except (WebSocketDisconnect, RuntimeError) as e:
                self.closed = True
                logger.debug(f"CSR client {self.client_id} gone while sending {event}: {e}")

    async def error(self, message: str) -> None:
        await self.send("error", {"message": message})


async def _handle_chat(conn: _Connection, orchestrator, text: str, session_id, user_id) -> None:
    await conn.send("thinking", {"message": "Processing your request..."})

    async def forward(event: str, data: Dict[str, Any]) -> None:
        if event in FORWARDED_EVENTS:
            await conn.send(event, _customer_view(event, data))

    try:
        result = await orchestrator.chat(text, session_id=session_id, user_id=user_id, on_event=forward)
    except asyncio.CancelledError:
        raise
    except ValidationError as e:
        await conn.error(e.message)
        return
    except Exception as e:
        log_error(logger, e, context=f"WS /csr {conn.client_id}")
        await conn.error(GENERIC_FAILURE_MESSAGE)
        return

    await conn.send("response", {k: v for k, v in result.items() if v is not None})


@router.websocket("/csr")
async def csr_websocket(websocket: WebSocket):
    """WebSocket endpoint for the CSR agent."""
    await websocket.accept()

    orchestrator = getattr(websocket.app.state, "orchestrator", None)
    client_id = f"csr-{uuid.uuid4().hex[:12]}"
    conn = _Connection(websocket, client_id)

    if orchestrator is None:
        await conn.error("CSR agent is not ready")
        await websocket.close(code=1013, reason="Agent not ready")
        return

    await conn.send("connected", {
        "message": CONNECTED_MESSAGE,
        "clientId": client_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    logger.info(f"CSR client connected: {client_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await conn.error("Invalid frame: expected JSON")
                continue
            if not isinstance(frame, dict):
                await conn.error("Invalid frame: expected JSON object")
                continue

            event = frame.get("event")
            data = frame.get("data") or {}
            if not isinstance(data, dict):
                data = {}

            if event == "message":
                text = data.get("text")
                if not text or not isinstance(text, str) or not text.strip():
                    await conn.error("Invalid message: text is required")
                    continue

                if len(text) > runtime_config.max_message_length:
                    await conn.error(f"Message too long (max {runtime_config.max_message_length:,} characters)")
                    continue

                try:
                    session_id = _optional_str(data, "sessionId")
                    user_id = _optional_str(data, "userId")
                except ValueError as e:
                    await conn.error(str(e))
                    continue

                allowed, error_msg = await check_ws_message_limit(client_id)
                if not allowed:
                    await conn.error(error_msg)
                    continue

                task = asyncio.create_task(
                    _handle_chat(conn, orchestrator, text, session_id, user_id)
                )
                conn.tasks.add(task)
                task.add_done_callback(conn.tasks.discard)

            else:
                logger.debug(f"CSR client {client_id} sent unknown event {event!r}")
                await conn.error(f"Unknown event: {event}")

    except WebSocketDisconnect:
        logger.info(f"CSR client disconnected: {client_id}")
    finally:
        conn.closed = True
        for task in list(conn.tasks):
            task.cancel()
