"""
CSR Agent Loop - one user turn as a bounded sequence of steps

State machine per run():
    reasoning -> tool_dispatch -> (awaiting_approval) -> reasoning ... -> done | error

- reasoning: model call through the ModelGateway. A reply without tool
  calls is the final answer. Text that accompanies tool calls is recorded
  as a "reason" step.
- tool_dispatch: unknown tools, bad arguments and handler failures become
  failed step results; the model sees them and can recover.
- awaiting_approval: only this turn waits on the ApprovalGate. A denial or
  timeout is recorded as a normal step and fed back to the model.
- done: final answer, or the step budget. The last step slot is reserved
  for the forced-termination step, so a run never holds more than
  max_steps steps and only a step-limited run holds exactly max_steps.
- error: model failures that survive the gateway end the run as "failed"
  with a generic message.

Progress events (thinking, tool_start, tool_end, approval_required,
approval_resolved) go to an optional async callback.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from errors import ConfigurationError, NotFoundError, ValidationError, format_error_for_llm, log_error, public_message
from tools.registry import ToolRegistry

from .approval import ApprovalGate
from .memory import ConversationMemory
from .model_gateway import ModelGateway
from .prompts import STEP_LIMIT_MESSAGE, build_system_prompt
from .types import AgentAction, AgentStep, ApprovalResolution, Execution, ExecutionStatus, Turn

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]

APPROVAL_DENIED_MESSAGES = {
    ApprovalResolution.REJECTED: "A supervisor rejected this action. It was not performed.",
    ApprovalResolution.TIMED_OUT: "No approval was received before the deadline. The action was not performed.",
}


@dataclass(frozen=True)
class AgentDefinition:
    """A registered agent: prompt, tool subset and loop limits."""

    name: str
    system_prompt: str
    description: str = ""
    tools: Optional[Tuple[str, ...]] = None  # None = every registered tool
    max_steps: int = 15
    temperature: float = 0.7
    max_output_tokens: int = 2000
    enable_memory: bool = True
    enable_rag: bool = True
    rag_top_k: int = 5
    rag_min_score: float = 0.5


@dataclass
class RunOptions:
    """Per-run overrides."""

    max_steps: Optional[int] = None
    temperature: Optional[float] = None
    on_event: Optional[EventCallback] = None


class _StepLimitReached(Exception):
    """Internal signal: the next step would not fit in the budget."""


class AgentLoop:
    def __init__(
        self,
        gateway: ModelGateway,
        registry: ToolRegistry,
        approval_gate: ApprovalGate,
        memory: Optional[ConversationMemory] = None,
        retrieval=None,
    ):
        """
        Args:
            gateway: Protected model access
            registry: Tools available to agents
            approval_gate: Gate for tools that require approval
            memory: Conversation memory (agents with enable_memory)
            retrieval: RetrievalRouter for prompt context (agents with enable_rag)
        """
        self.gateway = gateway
        self.registry = registry
        self.approval_gate = approval_gate
        self.memory = memory
        self.retrieval = retrieval
        self._agents: Dict[str, AgentDefinition] = {}

    def register_agent(self, agent: AgentDefinition) -> None:
        if agent.name in self._agents:
            raise ConfigurationError(f"Agent already registered: {agent.name}")
        if agent.max_steps < 1:
            raise ConfigurationError(f"Agent {agent.name} needs max_steps >= 1")
        if agent.tools:
            missing = [t for t in agent.tools if t not in self.registry]
            if missing:
                raise ConfigurationError(f"Agent {agent.name} references unknown tools: {', '.join(missing)}")
        self._agents[agent.name] = agent
        logger.info(f"Registered agent: {agent.name} (max_steps={agent.max_steps})")

    def get_agent(self, name: str) -> AgentDefinition:
        agent = self._agents.get(name)
        if agent is None:
            raise NotFoundError(f"Agent not registered: {name}", resource_type="agent", resource_id=name)
        return agent

    async def run(
        self,
        agent_name: str,
        user_message: str,
        session_id: str,
        user_id: Optional[str] = None,
        options: Optional[RunOptions] = None,
    ) -> Execution:
        """Drive one user turn to an Execution.

        Raises:
            NotFoundError: agent_name is not registered
        """
        agent = self.get_agent(agent_name)
        options = options or RunOptions()
        max_steps = options.max_steps or agent.max_steps
        execution_id = f"exec-{uuid.uuid4().hex[:12]}"
        start = time.monotonic()

        steps: List[AgentStep] = []
        status = ExecutionStatus.COMPLETED
        response = ""
        last_reasoning = ""

        async def emit(event: str, data: Dict[str, Any]) -> None:
            if options.on_event is None:
                return
            try:
                await options.on_event(event, {"executionId": execution_id, **data})
            except Exception as e:
                logger.warning(f"Progress callback failed on {event}: {e}")

        def add_step(action: AgentAction, result: Any) -> AgentStep:
            # Keep the last slot for the forced-termination step
            if len(steps) >= max_steps - 1:
                raise _StepLimitReached()
            step = AgentStep(index=len(steps), action=action, result=result)
            steps.append(step)
            return step

        try:
            messages = await self._build_messages(agent, user_message, session_id, user_id)
            tools_schema = self.registry.get_tools_schema(list(agent.tools) if agent.tools else None)
            llm_options = {
                "temperature": options.temperature if options.temperature is not None else agent.temperature,
                "max_tokens": agent.max_output_tokens,
            }

            while True:
                await emit("thinking", {"step": len(steps)})
                reply = await self.gateway.chat(messages, tools=tools_schema or None, options=llm_options)
                message = reply["message"]
                content = (message.get("content") or "").strip()
                tool_calls = message.get("tool_calls") or []

                if not tool_calls:
                    response = content
                    break

                if content:
                    last_reasoning = content
                    add_step(AgentAction.reason(), content)

                messages.append({"role": "assistant", "content": content, "tool_calls": tool_calls})

                for i, call in enumerate(tool_calls):
                    fn = call.get("function", call)
                    tool_name = fn.get("name", "")
                    args = fn.get("arguments") or {}
                    if isinstance(args, str):
                        try:
                            args = json.loads(args)
                        except json.JSONDecodeError:
                            args = {"_raw": args}

                    if len(steps) >= max_steps - 1:
                        raise _StepLimitReached()

                    result = await self._dispatch(tool_name, args, session_id, len(steps), emit)
                    add_step(AgentAction.use_tool(tool_name, args), result)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call.get("id") or f"call_{len(steps)}_{i}",
                        "content": json.dumps(result, default=str),
                    })

        except _StepLimitReached:
            status = ExecutionStatus.STEP_LIMIT_EXCEEDED
            response = last_reasoning or STEP_LIMIT_MESSAGE
            steps.append(AgentStep(index=len(steps), action=AgentAction.reason(), result=response))
            logger.warning(f"Execution {execution_id} hit step limit ({max_steps})")

        except Exception as e:
            status = ExecutionStatus.FAILED
            response = public_message(e)
            log_error(logger, e, context=f"AgentLoop {execution_id}")

        execution = Execution(
            id=execution_id,
            agent_name=agent.name,
            session_id=session_id,
            steps=tuple(steps),
            response=response,
            duration_ms=int((time.monotonic() - start) * 1000),
            status=status,
        )

        if agent.enable_memory and self.memory is not None:
            await self.memory.append(session_id, Turn(role="user", content=user_message, execution_id=execution_id))
            if status != ExecutionStatus.FAILED and response:
                await self.memory.append(
                    session_id, Turn(role="assistant", content=response, execution_id=execution_id)
                )

        logger.info(
            f"Execution {execution_id} {status.value}: {len(steps)} steps in {execution.duration_ms}ms"
        )
        return execution

    async def _build_messages(
        self, agent: AgentDefinition, user_message: str, session_id: str, user_id: Optional[str]
    ) -> List[Dict[str, Any]]:
        notes = ""
        history: List[Turn] = []
        if agent.enable_memory and self.memory is not None:
            session = await self.memory.get_or_create(session_id, user_id)
            notes = session.get_notes_string()
            history = await self.memory.get_context(session_id)

        knowledge = []
        if agent.enable_rag and self.retrieval is not None:
            result = await self.retrieval.search(user_message, top_k=agent.rag_top_k, min_score=agent.rag_min_score)
            knowledge = result.documents

        messages = [{"role": "system", "content": build_system_prompt(agent.system_prompt, notes, knowledge)}]
        messages.extend(turn.to_message() for turn in history)
        messages.append({"role": "user", "content": user_message})
        return messages

    async def _dispatch(
        self,
        tool_name: str,
        args: Dict[str, Any],
        session_id: str,
        step_index: int,
        emit: Callable[[str, Dict[str, Any]], Awaitable[None]],
    ) -> Dict[str, Any]:
        """Run one tool call, with approval when required. Never raises for tool problems."""
        tool = self.registry.get(tool_name)
        if tool is None:
            logger.warning(f"Model requested unknown tool: {tool_name}")
            return {"success": False, "error": f"Unknown tool: {tool_name}"}

        try:
            self.registry.validate_args(tool, args)
        except ValidationError as e:
            return {"success": False, "error": format_error_for_llm(e, tool=tool_name)}

        approval: Optional[Dict[str, Any]] = None
        if tool.requires_approval:
            request_id = self.approval_gate.request(tool_name, args, session_id=session_id)
            await emit("approval_required", {"step": step_index, **self.approval_gate.get(request_id).to_dict()})

            request = await self.approval_gate.wait(request_id)
            approval = {"requestId": request_id, "resolution": request.resolution.value}
            if request.resolved_by:
                approval["resolvedBy"] = request.resolved_by
            await emit("approval_resolved", {"step": step_index, **approval})

            if not self.approval_gate.allows(request):
                return {
                    "success": False,
                    "approved": False,
                    **approval,
                    "message": APPROVAL_DENIED_MESSAGES[request.resolution],
                }

        await emit("tool_start", {"step": step_index, "tool": tool_name, "args": args})
        result = await self.registry.execute(tool_name, args)
        await emit("tool_end", {"step": step_index, "tool": tool_name, "success": result.success})

        output = result.to_step_result()
        if approval is not None:
            output = {**output, "approval": approval}
        return output
