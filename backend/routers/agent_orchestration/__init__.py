"""
CSR Agent Orchestration - tool-calling engine behind the CSR transports

Components:
- AgentLoop: bounded reason / use-tool loop producing an Execution
- ApprovalGate: human approval for sensitive tool calls, with deadlines
- ConversationMemory: per-session turns, summaries and entity notes
- ModelGateway: rate limit, circuit breaker and retry around the LLM client
- ChatOrchestrator: facade used by the REST, SSE and WebSocket transports
- build_csr_orchestrator: composition root from RuntimeConfig

Step budget:
    A run holds at most max_steps steps. The last slot is reserved for the
    forced-termination step, so a completed run never reaches max_steps
    and a step-limited run always ends on a synthesized "reason" step.
"""

from .approval import ApprovalGate
from .citations import extract_sources
from .factory import CSR_AGENT_NAME, CSRServices, build_csr_orchestrator, csr_agent_definition
from .loop import AgentDefinition, AgentLoop, RunOptions
from .memory import ConversationMemory
from .model_gateway import ModelGateway
from .orchestrator import ChatOrchestrator
from .resilience import CircuitBreaker, RateLimiter, is_retryable_error
from .types import (
    AgentAction,
    AgentStep,
    ApprovalRequest,
    ApprovalResolution,
    Execution,
    ExecutionStatus,
    Session,
    StepType,
    Turn,
)

__all__ = [
    "AgentAction",
    "AgentDefinition",
    "AgentLoop",
    "AgentStep",
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalResolution",
    "ChatOrchestrator",
    "CircuitBreaker",
    "ConversationMemory",
    "CSR_AGENT_NAME",
    "CSRServices",
    "Execution",
    "ExecutionStatus",
    "ModelGateway",
    "RateLimiter",
    "RunOptions",
    "Session",
    "StepType",
    "Turn",
    "build_csr_orchestrator",
    "csr_agent_definition",
    "extract_sources",
    "is_retryable_error",
]
