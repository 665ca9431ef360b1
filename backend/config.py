"""
Runtime Configuration for the CSR agent.

Provides a singleton RuntimeConfig read from the environment at startup.

Settings read per request (rate limits, max_message_length, csr_env) follow
update() immediately. build_csr_orchestrator copies the agent, model,
approval and knowledge settings into the components it builds, so changes
to those apply to the next orchestrator that is built.

Usage:
    from config import runtime_config
    max_steps = runtime_config.agent_max_steps
    runtime_config.update(rate_limit_chat=60)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Any
from threading import Lock

logger = logging.getLogger(__name__)

APPROVAL_TIMEOUT_POLICIES = ("reject", "approve")


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


def _env_bool(key: str, default: str) -> bool:
    return os.environ.get(key, default).strip().lower() == "true"


def _approval_policy_default() -> str:
    policy = os.environ.get("APPROVAL_TIMEOUT_POLICY", "reject").strip().lower()
    if policy not in APPROVAL_TIMEOUT_POLICIES:
        logger.warning(f"Unknown APPROVAL_TIMEOUT_POLICY={policy!r}, using 'reject'")
        return "reject"
    return policy


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables. update() applies
    validated changes in place. Empty keys/URLs are treated as unset.
    """

    csr_env: str = field(default_factory=lambda: os.environ.get("CSR_ENV", "development"))

    # Language model
    llm_api_key: str = field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", "").strip())
    llm_base_url: str = field(
        default_factory=lambda: _first_env("OPENAI_BASE_URL", default="https://api.openai.com/v1")
    )
    model_chat: str = field(
        default_factory=lambda: _first_env("LLM_CHAT_MODEL", default="gpt-4-turbo-preview")
    )
    temperature: float = field(default_factory=lambda: float(os.environ.get("LLM_TEMPERATURE", "0.7")))
    max_output_tokens: int = field(default_factory=lambda: int(os.environ.get("LLM_MAX_TOKENS", "2000")))
    llm_timeout: int = field(default_factory=lambda: int(os.environ.get("LLM_TIMEOUT", "60")))

    # Protective layer around model calls
    llm_rate_limit_per_minute: int = field(
        default_factory=lambda: int(os.environ.get("LLM_RATE_LIMIT_PER_MINUTE", "60"))
    )
    circuit_breaker_threshold: int = field(
        default_factory=lambda: int(os.environ.get("CIRCUIT_BREAKER_THRESHOLD", "5"))
    )
    circuit_breaker_cooldown: int = field(
        default_factory=lambda: int(os.environ.get("CIRCUIT_BREAKER_COOLDOWN", "30"))
    )
    llm_retry_max: int = field(default_factory=lambda: int(os.environ.get("LLM_RETRY_MAX", "2")))
    llm_retry_delay: float = field(default_factory=lambda: float(os.environ.get("LLM_RETRY_DELAY", "1.0")))

    # Agent loop
    agent_max_steps: int = field(default_factory=lambda: int(os.environ.get("AGENT_MAX_STEPS", "15")))
    tool_timeout: float = field(default_factory=lambda: float(os.environ.get("TOOL_TIMEOUT", "30")))

    # Human approval for state-mutating tools
    approval_timeout: float = field(default_factory=lambda: float(os.environ.get("APPROVAL_TIMEOUT", "30")))
    approval_timeout_policy: str = field(default_factory=_approval_policy_default)

    # Conversation memory
    memory_max_turns: int = field(default_factory=lambda: int(os.environ.get("MEMORY_MAX_TURNS", "20")))
    memory_summarize_after: int = field(
        default_factory=lambda: int(os.environ.get("MEMORY_SUMMARIZE_AFTER", "50"))
    )

    # Knowledge base (RAG)
    rag_top_k: int = field(default_factory=lambda: int(os.environ.get("RAG_TOP_K", "5")))
    rag_min_score: float = field(default_factory=lambda: float(os.environ.get("RAG_MIN_SCORE", "0.5")))
    rag_chunk_size: int = field(default_factory=lambda: int(os.environ.get("RAG_CHUNK_SIZE", "500")))
    rag_chunk_overlap: int = field(default_factory=lambda: int(os.environ.get("RAG_CHUNK_OVERLAP", "50")))
    embed_model: str = field(
        default_factory=lambda: _first_env("EMBED_MODEL", default="text-embedding-3-small")
    )
    embed_dimensions: int = field(default_factory=lambda: int(os.environ.get("EMBED_DIMENSIONS", "1536")))

    # Remote knowledge backends (priority: Pinecone > Qdrant > in-memory)
    pinecone_api_key: str = field(default_factory=lambda: os.environ.get("PINECONE_API_KEY", "").strip())
    pinecone_environment: str = field(
        default_factory=lambda: _first_env("PINECONE_ENVIRONMENT", default="us-east-1-aws")
    )
    pinecone_index: str = field(default_factory=lambda: _first_env("PINECONE_INDEX", default="csr-knowledge"))
    qdrant_url: str = field(default_factory=lambda: os.environ.get("QDRANT_URL", "").strip())
    qdrant_api_key: str = field(default_factory=lambda: os.environ.get("QDRANT_API_KEY", "").strip())
    qdrant_collection: str = field(
        default_factory=lambda: _first_env("QDRANT_COLLECTION", default="csr-knowledge")
    )

    # Redis (rate limiting, ticket notification queue)
    redis_url: str = field(default_factory=lambda: os.environ.get("REDIS_URL", "redis://localhost:6379/0"))
    redis_enabled: bool = field(default_factory=lambda: _env_bool("REDIS_ENABLED", "true"))

    # Transport rate limits (requests per minute)
    rate_limit_chat: int = field(default_factory=lambda: int(os.environ.get("RATE_LIMIT_CHAT", "30")))
    rate_limit_ws_msg: int = field(default_factory=lambda: int(os.environ.get("RATE_LIMIT_WS_MSG", "20")))
    max_message_length: int = field(default_factory=lambda: int(os.environ.get("MAX_MESSAGE_LENGTH", "4000")))

    # Validation ranges for numeric fields
    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "temperature": (0.0, 2.0),
        "max_output_tokens": (64, 32768),
        "llm_timeout": (1, 600),
        "llm_rate_limit_per_minute": (1, 10000),
        "circuit_breaker_threshold": (1, 100),
        "circuit_breaker_cooldown": (1, 3600),
        "llm_retry_max": (0, 10),
        "agent_max_steps": (1, 100),
        "tool_timeout": (0.1, 600.0),
        "approval_timeout": (0.01, 86400.0),
        "memory_max_turns": (1, 1000),
        "memory_summarize_after": (2, 10000),
        "rag_top_k": (1, 50),
        "rag_min_score": (0.0, 1.0),
        "rate_limit_chat": (1, 1000),
        "rate_limit_ws_msg": (1, 1000),
    }, repr=False, compare=False)

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., agent_max_steps=10)

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_"):
                    ignored.append(key)
                    continue

                if not hasattr(self, key):
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")
                    continue

                if key == "approval_timeout_policy":
                    value = str(value).strip().lower()
                    if value not in APPROVAL_TIMEOUT_POLICIES:
                        ignored.append(key)
                        logger.warning(
                            f"Config rejected {key}={value!r} (must be one of {APPROVAL_TIMEOUT_POLICIES})"
                        )
                        continue

                if key in self._VALIDATION_RANGES:
                    lo, hi = self._VALIDATION_RANGES[key]
                    if not (lo <= value <= hi):
                        ignored.append(key)
                        logger.warning(f"Config rejected {key}={value} (must be {lo}-{hi})")
                        continue

                old_value = getattr(self, key)
                setattr(self, key, value)
                updated.append(key)
                if key.endswith("api_key"):
                    logger.info(f"Config updated: {key}")
                else:
                    logger.info(f"Config updated: {key} = {value} (was {old_value})")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored, "update_count": self._update_count}

    def get_llm_params(self) -> Dict[str, Any]:
        """Get LLM parameters for OpenAI API calls."""
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields and credentials)."""
        from dataclasses import fields as dataclass_fields

        result = {}
        for field_info in dataclass_fields(self):
            name = field_info.name
            if name.startswith("_"):
                continue
            value = getattr(self, name)
            if name.endswith("api_key"):
                value = bool(value)
            result[name] = value
        return result


# Singleton instance
runtime_config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the singleton config instance."""
    return runtime_config
