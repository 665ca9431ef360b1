"""
CSR Agent prompts

System prompt for the customer-support agent plus the builder that layers
session notes and knowledge-base context on top of it.
"""

from typing import List, Optional

from tools.knowledge.backends import RetrievedDocument

CSR_SYSTEM_PROMPT = """You are a helpful customer support agent for an e-commerce platform.
You can look up orders, check inventory, process refunds, update shipping addresses, create support tickets, and search the knowledge base.
Always be polite and professional. If you need to process a refund, explain why and what the customer can expect.
Refunds and address changes need supervisor approval; if an approval is rejected or times out, tell the customer the action was not performed.
When searching the knowledge base, use the results to provide accurate, cited answers.
If you don't know something, say so and offer to create a support ticket for escalation."""

STEP_LIMIT_MESSAGE = (
    "I'm sorry, I wasn't able to finish handling your request. "
    "Please try again, or I can create a support ticket for you."
)

# Characters of each knowledge snippet included in the prompt
KNOWLEDGE_SNIPPET_CHARS = 800


def format_knowledge_context(documents: List[RetrievedDocument]) -> str:
    """Render retrieved documents as a numbered context block."""
    if not documents:
        return ""
    lines = ["KNOWLEDGE BASE CONTEXT (use if relevant):"]
    for i, doc in enumerate(documents, 1):
        title = doc.metadata.get("title")
        header = f"[{i}] {title}" if title else f"[{i}]"
        content = doc.content[:KNOWLEDGE_SNIPPET_CHARS]
        lines.append(f"{header} (score {doc.score:.2f})\n{content}")
    return "\n\n".join(lines)


def build_system_prompt(
    base_prompt: str,
    session_notes: str = "",
    knowledge: Optional[List[RetrievedDocument]] = None,
) -> str:
    parts = [base_prompt.strip()]
    if session_notes:
        parts.append(session_notes)
    context = format_knowledge_context(knowledge or [])
    if context:
        parts.append(context)
    return "\n\n".join(parts)
