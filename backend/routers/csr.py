"""
CSR REST Router - chat, streaming chat, ingestion and approvals

Endpoints (prefix /api/csr):
    POST /chat          one agent turn, JSON response
    POST /chat/stream   same turn delivered as a single SSE frame
    POST /ingest        add a document to the knowledge base (201)
    POST /approve       resolve a pending tool approval
    GET  /approvals     pending approval requests
    GET  /health        knowledge, model and approval diagnostics

The orchestrator lives on app.state.orchestrator (set in main.lifespan).
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from config import runtime_config
from errors import GENERIC_FAILURE_MESSAGE, ValidationError, log_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/csr", tags=["csr"])


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    sessionId: Optional[str] = None
    userId: Optional[str] = None


class Source(BaseModel):
    id: str
    content: str
    score: float
    metadata: Optional[Dict[str, Any]] = None


class ChatResponse(BaseModel):
    response: str
    executionId: Optional[str] = None
    sessionId: str
    steps: int
    duration: int
    sources: Optional[List[Source]] = None


class IngestRequest(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class ApproveRequest(BaseModel):
    requestId: str
    approved: bool
    approvedBy: str


def _get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="CSR agent is not ready")
    return orchestrator


def _check_length(message: str) -> None:
    limit = runtime_config.max_message_length
    if len(message) > limit:
        raise HTTPException(status_code=400, detail=f"Message too long (max {limit:,} characters)")


def _to_http_error(e: Exception, context: str) -> HTTPException:
    """Map an orchestrator failure to a client-safe HTTP error."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    log_error(logger, e, context=context)
    return HTTPException(status_code=500, detail=GENERIC_FAILURE_MESSAGE)


@router.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(body: ChatRequest, request: Request):
    """Send a message to the CSR agent."""
    orchestrator = _get_orchestrator(request)
    _check_length(body.message)
    try:
        return await orchestrator.chat(body.message, session_id=body.sessionId, user_id=body.userId)
    except Exception as e:
        raise _to_http_error(e, "POST /api/csr/chat")


@router.post("/chat/stream")
async def chat_stream(body: ChatRequest, request: Request):
    """Server-Sent Events variant of /chat: exactly one data frame, then end of stream."""
    orchestrator = _get_orchestrator(request)
    _check_length(body.message)

    async def event_stream():
        try:
            result = await orchestrator.chat(body.message, session_id=body.sessionId, user_id=body.userId)
            frame = {"type": "response", "data": result}
        except ValidationError as e:
            frame = {"type": "error", "error": e.message}
        except Exception as e:
            log_error(logger, e, context="POST /api/csr/chat/stream")
            frame = {"type": "error", "error": GENERIC_FAILURE_MESSAGE}
        yield f"data: {json.dumps(frame, default=str)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/ingest", status_code=201)
async def ingest(body: IngestRequest, request: Request):
    """Add an FAQ or policy document to the knowledge base."""
    orchestrator = _get_orchestrator(request)
    try:
        ids = await orchestrator.ingest_document(body.title, body.content, body.metadata)
    except Exception as e:
        raise _to_http_error(e, "POST /api/csr/ingest")
    return {"ids": ids}


@router.post("/approve")
async def approve(body: ApproveRequest, request: Request):
    """Approve or reject a tool call waiting on human approval.

    success is False when the request is unknown or was already resolved
    (for example by its deadline).
    """
    orchestrator = _get_orchestrator(request)
    resolved = orchestrator.approve_tool(body.requestId, body.approved, body.approvedBy)
    return {"success": resolved}


@router.get("/approvals")
async def list_approvals(request: Request, sessionId: Optional[str] = None):
    orchestrator = _get_orchestrator(request)
    return {"approvals": orchestrator.pending_approvals(sessionId)}


@router.get("/health")
async def health(request: Request):
    orchestrator = _get_orchestrator(request)
    try:
        return orchestrator.health()
    except Exception as e:
        log_error(logger, e, context="GET /api/csr/health")
        return {"status": "degraded"}
