"""
CSR Agent Orchestration - shared data model

Records produced by one agent turn (AgentStep, Execution), approval
bookkeeping (ApprovalRequest) and conversation state (Turn, Session).
Executions and steps are frozen once built.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from tools.knowledge.backends import RetrievedDocument


class StepType(str, Enum):
    REASON = "reason"
    USE_TOOL = "use_tool"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    FAILED = "failed"


class ApprovalResolution(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class AgentAction:
    """What a step did: reason, or use_tool with a tool name and args."""

    type: StepType
    tool_name: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def reason(cls) -> "AgentAction":
        return cls(type=StepType.REASON)

    @classmethod
    def use_tool(cls, tool_name: str, args: Dict[str, Any]) -> "AgentAction":
        return cls(type=StepType.USE_TOOL, tool_name=tool_name, args=dict(args))

    def to_dict(self) -> Dict[str, Any]:
        if self.type == StepType.REASON:
            return {"type": self.type.value}
        return {"type": self.type.value, "toolName": self.tool_name, "args": self.args}


@dataclass(frozen=True)
class AgentStep:
    index: int
    action: AgentAction
    result: Any
    timestamp: float = field(default_factory=time.time)

    @property
    def is_tool(self) -> bool:
        return self.action.type == StepType.USE_TOOL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "action": self.action.to_dict(),
            "result": self.result,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Execution:
    """The complete record of one agent turn."""

    id: str
    agent_name: str
    session_id: str
    steps: Tuple[AgentStep, ...]
    response: str
    duration_ms: int
    status: ExecutionStatus

    @property
    def tools_used(self) -> List[str]:
        return [s.action.tool_name for s in self.steps if s.is_tool]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agentName": self.agent_name,
            "sessionId": self.session_id,
            "steps": [s.to_dict() for s in self.steps],
            "response": self.response,
            "duration": self.duration_ms,
            "status": self.status.value,
        }


@dataclass
class ApprovalRequest:
    """A pending human decision on one tool call. Resolves exactly once."""

    id: str
    tool_name: str
    args: Dict[str, Any]
    created_at: float
    deadline: float
    resolution: ApprovalResolution = ApprovalResolution.PENDING
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None
    session_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.resolution == ApprovalResolution.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "requestId": self.id,
            "toolName": self.tool_name,
            "args": self.args,
            "createdAt": self.created_at,
            "deadline": self.deadline,
            "resolution": self.resolution.value,
        }
        if self.resolved_by:
            data["resolvedBy"] = self.resolved_by
        if self.session_id:
            data["sessionId"] = self.session_id
        return data


@dataclass
class Turn:
    """One message in a session's history."""

    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)
    execution_id: Optional[str] = None

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Session:
    """Conversation state for one session id.

    Attributes:
        id: Stable session identifier
        user_id: Optional caller identity
        turns: Recent turns, oldest first
        summary: Condensed note of compacted older turns
        entities: Referenced ids by kind (orders, products, tickets, refunds)
    """

    id: str
    user_id: Optional[str] = None
    turns: List[Turn] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)
    summary: str = ""
    entities: Dict[str, List[str]] = field(default_factory=dict)

    def get_notes_string(self) -> str:
        """Get formatted notes string for system prompt."""
        if not self.summary and not self.entities:
            return ""
        parts = []
        if self.summary:
            parts.append(f"Earlier in this conversation:\n{self.summary}")
        for kind, ids in self.entities.items():
            if ids:
                parts.append(f"Known {kind}: {', '.join(ids[-5:])}")
        return "SESSION NOTES:\n" + "\n".join(parts)


__all__ = [
    "AgentAction",
    "AgentStep",
    "ApprovalRequest",
    "ApprovalResolution",
    "Execution",
    "ExecutionStatus",
    "RetrievedDocument",
    "Session",
    "StepType",
    "Turn",
]
