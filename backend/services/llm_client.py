"""
LLM Client - wraps the OpenAI SDK for the CSR agent's reasoning calls.

Response format:
    {"message": {"role": "assistant", "content": "...", "tool_calls": [...]}}

Key translations:
- Tool calls: OpenAI objects → simplified dicts with parsed JSON arguments
- Tool results: {"role": "tool", "content": dict|str} → JSON string content
- Options: max_tokens/temperature forwarded, unknown options dropped

The client is synchronous; the model gateway runs it in an executor so
timeouts and cancellation stay on the event loop.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from openai import OpenAI

logger = logging.getLogger(__name__)


def _translate_messages_for_openai(messages: List[Dict]) -> List[Dict]:
    """Translate internal message format to OpenAI API format."""
    translated = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")

        if role == "tool":
            translated.append({
                "role": "tool",
                "content": content if isinstance(content, str) else json.dumps(content, default=str),
                "tool_call_id": msg.get("tool_call_id", "call_0"),
            })
            continue

        new_msg = {"role": role, "content": content}

        # Forward tool_calls from assistant messages
        if role == "assistant" and msg.get("tool_calls"):
            openai_tool_calls = []
            for i, tc in enumerate(msg["tool_calls"]):
                fn = tc.get("function", tc)
                openai_tool_calls.append({
                    "id": tc.get("id", f"call_{i}"),
                    "type": "function",
                    "function": {
                        "name": fn.get("name", ""),
                        "arguments": (
                            json.dumps(fn["arguments"])
                            if isinstance(fn.get("arguments"), dict)
                            else fn.get("arguments", "{}")
                        ),
                    },
                })
            new_msg["tool_calls"] = openai_tool_calls
            # OpenAI requires content to be None when tool_calls present
            if not content:
                new_msg["content"] = None

        translated.append(new_msg)

    return translated


def _translate_tool_calls_from_openai(choices) -> Optional[List[Dict]]:
    """Translate OpenAI tool call objects to simplified dicts.

    OpenAI: choice.message.tool_calls[i].function.{name, arguments(str)}
    Internal: [{"function": {"name": ..., "arguments": {dict}}, "id": ...}]
    """
    if not choices:
        return None

    message = choices[0].message
    if not message.tool_calls:
        return None

    result = []
    for tc in message.tool_calls:
        try:
            args = json.loads(tc.function.arguments) if tc.function.arguments else {}
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse tool call arguments: {tc.function.arguments}")
            args = {}
        if not isinstance(args, dict):
            args = {}

        result.append({
            "function": {
                "name": tc.function.name,
                "arguments": args,
            },
            "id": tc.id,
        })

    return result if result else None


class LLMClient:
    """Wraps the OpenAI SDK pointing at an OpenAI-compatible endpoint."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 60.0, max_retries: int = 0):
        """
        Args:
            base_url: API base URL (e.g., "https://api.openai.com/v1")
            api_key: Bearer credential; empty for keyless local servers
            timeout: Request timeout in seconds
            max_retries: SDK-level retries (the gateway retries on its own)
        """
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._openai = OpenAI(
            base_url=self.base_url,
            api_key=api_key or "not-needed",
            timeout=timeout,
            max_retries=max_retries,
        )

    def is_healthy(self, timeout: float = 3.0) -> bool:
        """Sync reachability check against the /models endpoint."""
        try:
            resp = httpx.get(
                f"{self.base_url}/models",
                headers={"Authorization": f"Bearer {self._openai.api_key}"},
                timeout=timeout,
            )
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    def chat(
        self,
        model: str = "",
        messages: List[Dict] = None,
        tools: Optional[List[Dict]] = None,
        options: Optional[Dict] = None,
        format: str = None,
    ) -> Dict[str, Any]:
        """Call the chat completions endpoint.

        Args:
            model: Model name
            messages: List of message dicts
            tools: Tool definitions (OpenAI function schema)
            options: Generation options (temperature, max_tokens)
            format: Response format ("json" for JSON mode)

        Returns:
            dict with "message" key
        """
        messages = messages or []
        options = options or {}

        kwargs = {
            "model": model or "default",
            "messages": _translate_messages_for_openai(messages),
        }

        if "temperature" in options:
            kwargs["temperature"] = options["temperature"]
        if "top_p" in options:
            kwargs["top_p"] = options["top_p"]
        if "max_tokens" in options:
            kwargs["max_tokens"] = options["max_tokens"]

        if tools:
            kwargs["tools"] = tools

        if format == "json":
            kwargs["response_format"] = {"type": "json_object"}

        response = self._openai.chat.completions.create(**kwargs)

        result = {
            "message": {
                "role": "assistant",
                "content": (response.choices[0].message.content or "").strip(),
            }
        }

        tool_calls = _translate_tool_calls_from_openai(response.choices)
        if tool_calls:
            result["message"]["tool_calls"] = tool_calls

        return result

    def embed(self, model: str, texts: List[str], dimensions: Optional[int] = None) -> List[List[float]]:
        """Embed a batch of texts with the embeddings endpoint."""
        kwargs: Dict[str, Any] = {"model": model, "input": texts}
        if dimensions:
            kwargs["dimensions"] = dimensions
        response = self._openai.embeddings.create(**kwargs)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
