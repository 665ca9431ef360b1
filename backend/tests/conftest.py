"""
Shared pytest fixtures and configuration for the CSR agent tests.

Infrastructure is kept local: Redis runs in fallback mode, no remote
knowledge backend is configured, and the LLM is a scripted fake.
"""

import os

# Must be set before config is imported anywhere
os.environ["REDIS_ENABLED"] = "false"
os.environ["CSR_ENV"] = "test"
for _key in ("OPENAI_API_KEY", "PINECONE_API_KEY", "QDRANT_URL"):
    os.environ[_key] = ""

import pytest


class ScriptedLLM:
    """Sync stand-in for LLMClient.chat().

    Replies are consumed in order; an Exception in the script is raised
    instead of returned. Once the script runs out every call gets a
    plain final answer.
    """

    FINAL = {"message": {"role": "assistant", "content": "Is there anything else I can help with?"}}

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def chat(self, model, messages, tools=None, options=None, format=None):
        self.calls.append({
            "model": model,
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "options": options,
        })
        if not self.replies:
            return self.FINAL
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def embed(self, model, texts, dimensions=None):
        raise AssertionError("ScriptedLLM does not embed; tests use the hashing embedder")


@pytest.fixture
def scripted_llm():
    """Factory: scripted_llm(reply1, reply2, ...) -> ScriptedLLM."""
    return ScriptedLLM


@pytest.fixture
def llm_reply():
    """Build a canned reply matching LLMClient.chat() format."""

    def _reply(content: str = "", *tool_calls):
        message = {"role": "assistant", "content": content}
        if tool_calls:
            message["tool_calls"] = list(tool_calls)
        return {"message": message}

    return _reply


@pytest.fixture
def tool_call():
    """Build a single tool call dict."""

    def _call(name: str, arguments: dict, call_id: str = "call_0"):
        return {"id": call_id, "function": {"name": name, "arguments": arguments}}

    return _call
