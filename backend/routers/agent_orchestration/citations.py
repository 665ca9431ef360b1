"""
CSR Citations - source extraction from an Execution

Sources are the documents returned by knowledge-search tool steps,
flattened in step order. None means no knowledge search produced documents.
"""

from typing import Any, Dict, List, Optional

from tools.csr_tools import KNOWLEDGE_SEARCH_TOOL

from .types import Execution


def extract_sources(execution: Execution, tool_name: str = KNOWLEDGE_SEARCH_TOOL) -> Optional[List[Dict[str, Any]]]:
    """Flatten knowledge-search documents from an execution's steps.

    Returns:
        List of {id, content, score, metadata} dicts, or None if empty
    """
    sources: List[Dict[str, Any]] = []
    for step in execution.steps:
        if not step.is_tool or step.action.tool_name != tool_name:
            continue
        if not isinstance(step.result, dict):
            continue
        for doc in step.result.get("documents") or []:
            if not isinstance(doc, dict) or "id" not in doc:
                continue
            source = {"id": doc["id"], "content": doc.get("content", ""), "score": doc.get("score", 0.0)}
            if doc.get("metadata"):
                source["metadata"] = doc["metadata"]
            sources.append(source)
    return sources or None
