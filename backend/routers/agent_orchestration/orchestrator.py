"""
CSR Chat Orchestrator - the facade transports talk to.

Owns one AgentLoop, the RetrievalRouter, the ApprovalGate and the
ConversationMemory, and turns an Execution into the chat response dict:

    {response, executionId, sessionId, steps, duration, sources?}

Raw exception text never leaves this module; model failures surface as
the generic message chosen by the loop.
"""

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, List, Optional

from errors import EMPTY_RESPONSE_MESSAGE, ValidationError
from logging_config import log_message_in, log_message_out

from .approval import ApprovalGate
from .citations import extract_sources
from .loop import AgentLoop, EventCallback, RunOptions
from .memory import ConversationMemory

logger = logging.getLogger(__name__)


class ChatOrchestrator:
    def __init__(
        self,
        agent_loop: AgentLoop,
        retrieval,
        approval_gate: ApprovalGate,
        memory: ConversationMemory,
        agent_name: str = "csr-agent",
    ):
        """
        Args:
            agent_loop: Loop with agent_name registered
            retrieval: RetrievalRouter shared with the knowledge tool
            approval_gate: Gate shared with the loop
            memory: Memory shared with the loop
            agent_name: Agent that answers chat messages
        """
        self.agent_loop = agent_loop
        self.retrieval = retrieval
        self.approval_gate = approval_gate
        self.memory = memory
        self.agent_name = agent_name
        self._session_seq = itertools.count(1)

    def new_session_id(self) -> str:
        return f"session-{int(time.time() * 1000)}-{next(self._session_seq)}"

    async def initialize(self) -> None:
        """Select the knowledge backend. Remote failures downgrade to the local store."""
        await self.retrieval.initialize()
        knowledge = self.retrieval.health()
        logger.info(
            f"CSR orchestrator ready: agent={self.agent_name} knowledge={knowledge['backend']}"
            + (" (downgraded)" if knowledge["downgraded"] else "")
        )

    async def chat(
        self,
        message: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Dict[str, Any]:
        """Answer one user message.

        Raises:
            ValidationError: empty message
            NotFoundError: the configured agent is not registered
        """
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message text is required", parameter="message")

        sid = session_id or self.new_session_id()
        log_message_in(logger, message, sid, user=user_id)

        execution = await self.agent_loop.run(
            self.agent_name,
            message,
            session_id=sid,
            user_id=user_id,
            options=RunOptions(on_event=on_event),
        )

        sources = extract_sources(execution)
        log_message_out(
            logger,
            execution.id,
            tools_used=execution.tools_used,
            sources=len(sources or []),
            status=execution.status.value,
            duration_ms=execution.duration_ms,
        )

        result: Dict[str, Any] = {
            "response": execution.response or EMPTY_RESPONSE_MESSAGE,
            "executionId": execution.id,
            "sessionId": sid,
            "steps": len(execution.steps),
            "duration": execution.duration_ms,
        }
        if sources:
            result["sources"] = sources
        return result

    async def ingest_document(
        self, title: str, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        """Index a document as "{title}\\n\\n{content}". Returns chunk ids."""
        if not title or not content:
            raise ValidationError("Both title and content are required", parameter="content")
        return await self.retrieval.index(f"{title}\n\n{content}", {"title": title, **(metadata or {})})

    def approve_tool(self, request_id: str, approved: bool, approved_by: Optional[str] = None) -> bool:
        """Resolve a pending approval. False when unknown or already resolved."""
        return self.approval_gate.resolve(request_id, approved, approved_by)

    async def wait_for_approval(self, request_id: str, timeout: Optional[float] = None) -> Optional[bool]:
        """Wait for a decision on request_id.

        Returns:
            Whether the tool may run, or None if the request is unknown or
            still pending after timeout seconds
        """
        if self.approval_gate.get(request_id) is None:
            return None
        try:
            request = await asyncio.wait_for(self.approval_gate.wait(request_id), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.approval_gate.allows(request)

    def pending_approvals(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.approval_gate.pending(session_id)]

    def health(self) -> Dict[str, Any]:
        knowledge = self.retrieval.health()
        llm = self.agent_loop.gateway.health()
        ok = knowledge["initialized"] and llm["circuit"] != "open"
        return {
            "status": "ok" if ok else "degraded",
            "knowledge": knowledge,
            "llm": llm,
            "approvals": self.approval_gate.stats(),
            "sessions": self.memory.stats(),
        }
