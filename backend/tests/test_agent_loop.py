"""
Agent loop tests - scripted model replies driven through the real loop,
registry, approval gate and memory.

Approval scenarios run the loop as a task and resolve the pending request
from the test body, the same way the /approve endpoint does.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import ConfigurationError, DEGRADED_MESSAGE, NotFoundError
from routers.agent_orchestration import (
    AgentDefinition,
    AgentLoop,
    ApprovalGate,
    ConversationMemory,
    ExecutionStatus,
    ModelGateway,
    RunOptions,
    StepType,
)
from routers.agent_orchestration.prompts import STEP_LIMIT_MESSAGE
from tools.knowledge.backends import RetrievedDocument
from tools.knowledge.router import SearchResult
from tools.registry import ToolDefinition, ToolParameter, ToolRegistry


def _tracked(result):
    """Async handler that records its calls; raises result if it is an exception."""
    calls = []

    async def handler(**kwargs):
        calls.append(kwargs)
        if isinstance(handler.result, Exception):
            raise handler.result
        return dict(handler.result)

    handler.calls = calls
    handler.result = result
    return handler


def _build_registry():
    """lookupOrder plus an approval-gated processRefund, with call-tracking handlers."""
    registry = ToolRegistry()
    lookup = _tracked({"found": True, "orderId": "ORD-12345", "status": "shipped"})
    refund = _tracked({"success": True, "refundId": "REF-1", "amount": 50.0})

    registry.register(ToolDefinition(
        name="lookupOrder",
        description="Look up order information by order ID",
        parameters=(ToolParameter("orderId", "string"),),
        handler=lookup,
    ))
    registry.register(ToolDefinition(
        name="processRefund",
        description="Process a refund for an order",
        parameters=(
            ToolParameter("orderId", "string"),
            ToolParameter("amount", "number"),
            ToolParameter("reason", "string"),
        ),
        handler=refund,
        requires_approval=True,
    ))
    return registry, lookup, refund


def _build_loop(llm, registry=None, gate=None, memory=None, retrieval=None, **agent_kwargs):
    registry = registry or _build_registry()[0]
    gateway = ModelGateway(llm, model="test-model", retry_max=0, retry_delay=0.0)
    loop = AgentLoop(gateway, registry, gate or ApprovalGate(default_timeout=5.0), memory=memory, retrieval=retrieval)
    agent_kwargs.setdefault("enable_rag", False)
    loop.register_agent(AgentDefinition(name="csr-agent", system_prompt="You are a support agent.", **agent_kwargs))
    return loop


def _refund_call(tool_call):
    return tool_call("processRefund", {"orderId": "ORD-12345", "amount": 50.0, "reason": "damaged"})


async def _resolve_when_pending(gate, approved, approved_by="supervisor-1"):
    for _ in range(200):
        pending = gate.pending()
        if pending:
            return gate.resolve(pending[0].id, approved, approved_by)
        await asyncio.sleep(0.01)
    raise AssertionError("no approval request appeared")


class TestRegistration:
    """Agent registration is validated once."""

    def test_duplicate_agent_rejected(self, scripted_llm):
        loop = _build_loop(scripted_llm())
        with pytest.raises(ConfigurationError):
            loop.register_agent(AgentDefinition(name="csr-agent", system_prompt="again"))

    def test_unknown_tool_rejected(self, scripted_llm):
        loop = _build_loop(scripted_llm())
        with pytest.raises(ConfigurationError):
            loop.register_agent(AgentDefinition(name="other", system_prompt="x", tools=("deleteAccount",)))

    def test_zero_step_budget_rejected(self, scripted_llm):
        loop = _build_loop(scripted_llm())
        with pytest.raises(ConfigurationError):
            loop.register_agent(AgentDefinition(name="other", system_prompt="x", max_steps=0))

    def test_run_unknown_agent(self, scripted_llm):
        loop = _build_loop(scripted_llm())
        with pytest.raises(NotFoundError):
            asyncio.run(loop.run("ghost", "hello", "session-1"))


class TestReasoning:
    """Plain answers and tool round-trips."""

    def test_direct_answer_has_no_steps(self, scripted_llm, llm_reply):
        llm = scripted_llm(llm_reply("Our store hours are 9 to 5."))
        execution = asyncio.run(_build_loop(llm).run("csr-agent", "When are you open?", "session-1"))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.response == "Our store hours are 9 to 5."
        assert execution.steps == ()
        assert execution.id.startswith("exec-")
        assert execution.agent_name == "csr-agent"

    def test_tool_then_answer(self, scripted_llm, llm_reply, tool_call):
        registry, lookup, _ = _build_registry()
        llm = scripted_llm(
            llm_reply("", tool_call("lookupOrder", {"orderId": "ORD-12345"}, "call_a")),
            llm_reply("Your order has shipped."),
        )
        execution = asyncio.run(_build_loop(llm, registry=registry).run("csr-agent", "Where is ORD-12345?", "s"))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.response == "Your order has shipped."
        assert len(execution.steps) == 1
        step = execution.steps[0]
        assert step.action.type == StepType.USE_TOOL
        assert step.action.tool_name == "lookupOrder"
        assert step.result["status"] == "shipped"
        assert lookup.calls == [{"orderId": "ORD-12345"}]

        # Second model call sees the tool output
        tool_messages = [m for m in llm.calls[1]["messages"] if m["role"] == "tool"]
        assert len(tool_messages) == 1
        assert tool_messages[0]["tool_call_id"] == "call_a"
        assert "shipped" in tool_messages[0]["content"]

    def test_string_arguments_are_parsed(self, scripted_llm, llm_reply, tool_call):
        registry, lookup, _ = _build_registry()
        llm = scripted_llm(
            llm_reply("", tool_call("lookupOrder", '{"orderId": "ORD-12345"}')),
            llm_reply("Done."),
        )
        asyncio.run(_build_loop(llm, registry=registry).run("csr-agent", "status?", "s"))
        assert lookup.calls == [{"orderId": "ORD-12345"}]

    def test_reasoning_text_recorded_before_tool(self, scripted_llm, llm_reply, tool_call):
        llm = scripted_llm(
            llm_reply("Let me check that order.", tool_call("lookupOrder", {"orderId": "ORD-12345"})),
            llm_reply("It shipped yesterday."),
        )
        execution = asyncio.run(_build_loop(llm).run("csr-agent", "Where is my order?", "s"))

        kinds = [s.action.type for s in execution.steps]
        assert kinds == [StepType.REASON, StepType.USE_TOOL]
        assert execution.steps[0].result == "Let me check that order."
        assert [s.index for s in execution.steps] == [0, 1]

    def test_options_forwarded_to_model(self, scripted_llm, llm_reply):
        llm = scripted_llm(llm_reply("ok"))
        loop = _build_loop(llm, temperature=0.2, max_output_tokens=300)
        asyncio.run(loop.run("csr-agent", "hi", "s", options=RunOptions(temperature=0.0)))

        call = llm.calls[0]
        assert call["model"] == "test-model"
        assert call["options"] == {"temperature": 0.0, "max_tokens": 300}
        names = [t["function"]["name"] for t in call["tools"]]
        assert names == ["lookupOrder", "processRefund"]

    def test_agent_tool_subset(self, scripted_llm, llm_reply):
        llm = scripted_llm(llm_reply("ok"))
        asyncio.run(_build_loop(llm, tools=("lookupOrder",)).run("csr-agent", "hi", "s"))
        assert [t["function"]["name"] for t in llm.calls[0]["tools"]] == ["lookupOrder"]


class TestStepLimit:
    """The step budget always terminates the run."""

    def test_continuous_tool_calls_hit_limit(self, scripted_llm, llm_reply, tool_call):
        replies = [llm_reply("", tool_call("lookupOrder", {"orderId": "ORD-12345"})) for _ in range(10)]
        llm = scripted_llm(*replies)
        execution = asyncio.run(_build_loop(llm, max_steps=3).run("csr-agent", "loop forever", "s"))

        assert execution.status == ExecutionStatus.STEP_LIMIT_EXCEEDED
        assert len(execution.steps) == 3
        assert [s.action.type for s in execution.steps] == [StepType.USE_TOOL, StepType.USE_TOOL, StepType.REASON]
        assert execution.response == STEP_LIMIT_MESSAGE
        assert execution.steps[-1].result == STEP_LIMIT_MESSAGE

    def test_single_step_budget(self, scripted_llm, llm_reply, tool_call):
        registry, lookup, _ = _build_registry()
        llm = scripted_llm(llm_reply("", tool_call("lookupOrder", {"orderId": "ORD-12345"})))
        execution = asyncio.run(_build_loop(llm, registry=registry, max_steps=1).run("csr-agent", "x", "s"))

        assert execution.status == ExecutionStatus.STEP_LIMIT_EXCEEDED
        assert len(execution.steps) == 1
        assert lookup.calls == []

    def test_run_option_overrides_budget(self, scripted_llm, llm_reply, tool_call):
        replies = [llm_reply("", tool_call("lookupOrder", {"orderId": "ORD-12345"})) for _ in range(10)]
        loop = _build_loop(scripted_llm(*replies), max_steps=10)
        execution = asyncio.run(loop.run("csr-agent", "x", "s", options=RunOptions(max_steps=2)))
        assert len(execution.steps) == 2

    def test_last_reasoning_becomes_response(self, scripted_llm, llm_reply, tool_call):
        replies = [
            llm_reply("Checking the order now.", tool_call("lookupOrder", {"orderId": "ORD-12345"}))
            for _ in range(5)
        ]
        execution = asyncio.run(_build_loop(scripted_llm(*replies), max_steps=4).run("csr-agent", "x", "s"))
        assert execution.status == ExecutionStatus.STEP_LIMIT_EXCEEDED
        assert execution.response == "Checking the order now."
        assert len(execution.steps) == 4


class TestToolFailures:
    """Tool problems become step results the model can react to."""

    def test_unknown_tool_continues(self, scripted_llm, llm_reply, tool_call):
        llm = scripted_llm(
            llm_reply("", tool_call("deleteEverything", {})),
            llm_reply("Sorry, I can't do that."),
        )
        execution = asyncio.run(_build_loop(llm).run("csr-agent", "x", "s"))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.steps[0].result == {"success": False, "error": "Unknown tool: deleteEverything"}
        assert execution.response == "Sorry, I can't do that."

    def test_missing_argument(self, scripted_llm, llm_reply, tool_call):
        registry, lookup, _ = _build_registry()
        llm = scripted_llm(llm_reply("", tool_call("lookupOrder", {})), llm_reply("Which order?"))
        execution = asyncio.run(_build_loop(llm, registry=registry).run("csr-agent", "x", "s"))

        result = execution.steps[0].result
        assert result["success"] is False
        assert result["error"].startswith("lookupOrder failed")
        assert lookup.calls == []

    def test_handler_exception(self, scripted_llm, llm_reply, tool_call):
        registry, lookup, _ = _build_registry()
        lookup.result = RuntimeError("orders db offline")
        llm = scripted_llm(llm_reply("", tool_call("lookupOrder", {"orderId": "ORD-1"})), llm_reply("Try later."))
        execution = asyncio.run(_build_loop(llm, registry=registry).run("csr-agent", "x", "s"))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.steps[0].result["success"] is False


class TestModelFailure:
    """Model errors end the run without leaking details."""

    def test_model_error_fails_run(self, scripted_llm):
        llm = scripted_llm(RuntimeError("boom: upstream 10.0.0.7 refused"))
        execution = asyncio.run(_build_loop(llm).run("csr-agent", "hi", "s"))

        assert execution.status == ExecutionStatus.FAILED
        assert execution.response == DEGRADED_MESSAGE
        assert "boom" not in execution.response

    def test_failed_run_stores_only_user_turn(self, scripted_llm):
        memory = ConversationMemory()
        llm = scripted_llm(RuntimeError("boom"))
        asyncio.run(_build_loop(llm, memory=memory).run("csr-agent", "hello", "s-fail"))

        turns = memory.get("s-fail").turns
        assert [t.role for t in turns] == ["user"]


class TestApproval:
    """Approval-gated tools wait for a decision."""

    def test_approved_tool_runs(self, scripted_llm, llm_reply, tool_call):
        registry, _, refund = _build_registry()
        gate = ApprovalGate(default_timeout=5.0)
        llm = scripted_llm(llm_reply("", _refund_call(tool_call)), llm_reply("Refund processed."))
        loop = _build_loop(llm, registry=registry, gate=gate)

        async def scenario():
            task = asyncio.create_task(loop.run("csr-agent", "Refund ORD-12345", "s"))
            assert await _resolve_when_pending(gate, True) is True
            return await task

        execution = asyncio.run(scenario())

        assert len(refund.calls) == 1
        result = execution.steps[0].result
        assert result["refundId"] == "REF-1"
        assert result["approval"]["resolution"] == "approved"
        assert result["approval"]["resolvedBy"] == "supervisor-1"
        assert execution.response == "Refund processed."

    def test_rejected_tool_not_run(self, scripted_llm, llm_reply, tool_call):
        registry, _, refund = _build_registry()
        gate = ApprovalGate(default_timeout=5.0)
        llm = scripted_llm(llm_reply("", _refund_call(tool_call)), llm_reply("The refund was declined."))
        loop = _build_loop(llm, registry=registry, gate=gate)

        async def scenario():
            task = asyncio.create_task(loop.run("csr-agent", "Refund ORD-12345", "s"))
            await _resolve_when_pending(gate, False)
            return await task

        execution = asyncio.run(scenario())

        assert refund.calls == []
        result = execution.steps[0].result
        assert result["success"] is False
        assert result["approved"] is False
        assert result["resolution"] == "rejected"
        assert execution.status == ExecutionStatus.COMPLETED

    def test_timeout_rejects_by_default(self, scripted_llm, llm_reply, tool_call):
        registry, _, refund = _build_registry()
        gate = ApprovalGate(default_timeout=0.05)
        llm = scripted_llm(llm_reply("", _refund_call(tool_call)), llm_reply("No approval arrived."))
        execution = asyncio.run(_build_loop(llm, registry=registry, gate=gate).run("csr-agent", "x", "s"))

        assert refund.calls == []
        assert execution.steps[0].result["resolution"] == "timed_out"
        assert execution.steps[0].result["approved"] is False

    def test_timeout_approve_policy_runs_tool(self, scripted_llm, llm_reply, tool_call):
        registry, _, refund = _build_registry()
        gate = ApprovalGate(default_timeout=0.05, timeout_policy="approve")
        llm = scripted_llm(llm_reply("", _refund_call(tool_call)), llm_reply("Refund processed."))
        execution = asyncio.run(_build_loop(llm, registry=registry, gate=gate).run("csr-agent", "x", "s"))

        assert len(refund.calls) == 1
        assert execution.steps[0].result["approval"]["resolution"] == "timed_out"

    def test_event_order(self, scripted_llm, llm_reply, tool_call):
        gate = ApprovalGate(default_timeout=5.0)
        llm = scripted_llm(llm_reply("", _refund_call(tool_call)), llm_reply("Done."))
        loop = _build_loop(llm, gate=gate)
        events = []

        async def on_event(event, data):
            events.append((event, data))

        async def scenario():
            task = asyncio.create_task(loop.run("csr-agent", "x", "s", options=RunOptions(on_event=on_event)))
            await _resolve_when_pending(gate, True)
            return await task

        execution = asyncio.run(scenario())

        names = [e for e, _ in events if e != "thinking"]
        assert names == ["approval_required", "approval_resolved", "tool_start", "tool_end"]
        assert all(data["executionId"] == execution.id for _, data in events)

        required = dict(events)["approval_required"]
        assert required["toolName"] == "processRefund"
        assert required["args"]["amount"] == 50.0
        assert required["sessionId"] == "s"
        assert dict(events)["tool_end"]["success"] is True

    def test_failing_callback_does_not_break_run(self, scripted_llm, llm_reply, tool_call):
        llm = scripted_llm(llm_reply("", tool_call("lookupOrder", {"orderId": "ORD-1"})), llm_reply("ok"))
        on_event = AsyncMock(side_effect=RuntimeError("client gone"))
        execution = asyncio.run(
            _build_loop(llm).run("csr-agent", "x", "s", options=RunOptions(on_event=on_event))
        )
        assert execution.status == ExecutionStatus.COMPLETED
        assert on_event.await_count >= 3


class TestMemoryAndRetrieval:
    """History and knowledge context feed the prompt."""

    def test_turns_recorded_and_replayed(self, scripted_llm, llm_reply):
        memory = ConversationMemory()
        llm = scripted_llm(llm_reply("Hi! How can I help?"), llm_reply("Sure."))
        loop = _build_loop(llm, memory=memory)

        async def scenario():
            await loop.run("csr-agent", "Hello", "s-mem", user_id="user-7")
            await loop.run("csr-agent", "Check ORD-12345 please", "s-mem")

        asyncio.run(scenario())

        session = memory.get("s-mem")
        assert [t.role for t in session.turns] == ["user", "assistant", "user", "assistant"]
        assert session.user_id == "user-7"
        assert session.entities["orders"] == ["ORD-12345"]

        second = llm.calls[1]["messages"]
        assert second[1] == {"role": "user", "content": "Hello"}
        assert second[2] == {"role": "assistant", "content": "Hi! How can I help?"}
        assert second[-1] == {"role": "user", "content": "Check ORD-12345 please"}

    def test_memory_disabled(self, scripted_llm, llm_reply):
        memory = ConversationMemory()
        loop = _build_loop(scripted_llm(llm_reply("ok")), memory=memory, enable_memory=False)
        asyncio.run(loop.run("csr-agent", "Hello", "s-off"))
        assert memory.get("s-off") is None

    def test_knowledge_in_system_prompt(self, scripted_llm, llm_reply):
        retrieval = MagicMock()
        retrieval.search = AsyncMock(return_value=SearchResult([
            RetrievedDocument(id="doc-1", content="Full refunds within 30 days.", score=0.9,
                              metadata={"title": "Refund Policy"}),
        ]))
        llm = scripted_llm(llm_reply("You can get a full refund within 30 days."))
        loop = _build_loop(llm, retrieval=retrieval, enable_rag=True, rag_top_k=3, rag_min_score=0.4)

        asyncio.run(loop.run("csr-agent", "What is the refund policy?", "s"))

        retrieval.search.assert_awaited_once_with("What is the refund policy?", top_k=3, min_score=0.4)
        system = llm.calls[0]["messages"][0]
        assert system["role"] == "system"
        assert "Refund Policy" in system["content"]
        assert "Full refunds within 30 days." in system["content"]
