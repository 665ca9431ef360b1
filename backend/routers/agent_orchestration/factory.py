"""
CSR composition root - builds a ready ChatOrchestrator from RuntimeConfig.

Knowledge backend priority: Pinecone (PINECONE_API_KEY) > Qdrant
(QDRANT_URL) > in-process store. Without OPENAI_API_KEY the local hashing
embedder stands in for OpenAI embeddings.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from config import RuntimeConfig, runtime_config
from services.inventory import InventoryService
from services.llm_client import LLMClient
from services.orders import OrderService
from services.refunds import RefundService
from services.tickets import TicketService
from tools.csr_tools import register_csr_tools
from tools.knowledge import (
    HashingEmbedder,
    LocalVectorStore,
    OpenAIEmbedder,
    PineconeKnowledgeBackend,
    QdrantKnowledgeBackend,
    RecursiveTextSplitter,
    RetrievalRouter,
)
from tools.registry import ToolRegistry

from .approval import ApprovalGate
from .loop import AgentDefinition, AgentLoop
from .memory import ConversationMemory
from .model_gateway import ModelGateway
from .orchestrator import ChatOrchestrator
from .prompts import CSR_SYSTEM_PROMPT
from .resilience import CircuitBreaker, RateLimiter

logger = logging.getLogger(__name__)

CSR_AGENT_NAME = "csr-agent"


@dataclass
class CSRServices:
    """Business providers behind the CSR tools."""

    orders: OrderService = field(default_factory=OrderService)
    inventory: InventoryService = field(default_factory=InventoryService)
    refunds: RefundService = field(default_factory=RefundService)
    tickets: TicketService = field(default_factory=TicketService)


def csr_agent_definition(config: RuntimeConfig) -> AgentDefinition:
    return AgentDefinition(
        name=CSR_AGENT_NAME,
        description="AI-powered customer support agent",
        system_prompt=CSR_SYSTEM_PROMPT,
        max_steps=config.agent_max_steps,
        temperature=config.temperature,
        max_output_tokens=config.max_output_tokens,
        enable_memory=True,
        enable_rag=True,
        rag_top_k=config.rag_top_k,
        rag_min_score=config.rag_min_score,
    )


def build_retrieval_router(config: RuntimeConfig, llm_client: Optional[LLMClient] = None) -> RetrievalRouter:
    if config.llm_api_key and llm_client is not None:
        embedder = OpenAIEmbedder(llm_client, model=config.embed_model, dimensions=config.embed_dimensions)
    else:
        embedder = HashingEmbedder(dimension=config.embed_dimensions)
        logger.info("No OPENAI_API_KEY, using local hashing embeddings")

    candidates = []
    if config.pinecone_api_key:
        candidates.append((
            "pinecone",
            lambda: PineconeKnowledgeBackend(
                embedder,
                api_key=config.pinecone_api_key,
                index_name=config.pinecone_index,
                environment=config.pinecone_environment,
            ),
        ))
    if config.qdrant_url:
        candidates.append((
            "qdrant",
            lambda: QdrantKnowledgeBackend(
                embedder,
                url=config.qdrant_url,
                collection=config.qdrant_collection,
                api_key=config.qdrant_api_key,
            ),
        ))

    splitter = RecursiveTextSplitter(chunk_size=config.rag_chunk_size, chunk_overlap=config.rag_chunk_overlap)
    return RetrievalRouter(candidates=candidates, fallback=lambda: LocalVectorStore(embedder), splitter=splitter)


def build_csr_orchestrator(
    config: RuntimeConfig = runtime_config,
    llm_client=None,
    services: Optional[CSRServices] = None,
) -> ChatOrchestrator:
    """Wire every component of the CSR agent.

    Args:
        config: Runtime configuration
        llm_client: Chat/embedding client (LLMClient from config when None)
        services: Business providers (seeded in-memory services when None)
    """
    if llm_client is None:
        llm_client = LLMClient(config.llm_base_url, api_key=config.llm_api_key, timeout=config.llm_timeout)
    services = services or CSRServices()

    retrieval = build_retrieval_router(config, llm_client)

    registry = ToolRegistry(default_timeout=config.tool_timeout)
    register_csr_tools(
        registry,
        orders=services.orders,
        inventory=services.inventory,
        refunds=services.refunds,
        tickets=services.tickets,
        retrieval=retrieval,
        min_score=config.rag_min_score,
        default_top_k=config.rag_top_k,
    )

    gate = ApprovalGate(default_timeout=config.approval_timeout, timeout_policy=config.approval_timeout_policy)
    memory = ConversationMemory(
        max_conversation_length=config.memory_max_turns,
        summarize_after=config.memory_summarize_after,
    )
    gateway = ModelGateway(
        llm_client,
        model=config.model_chat,
        rate_limiter=RateLimiter(max_per_window=config.llm_rate_limit_per_minute),
        circuit_breaker=CircuitBreaker(
            failure_threshold=config.circuit_breaker_threshold,
            recovery_timeout=config.circuit_breaker_cooldown,
        ),
        timeout=config.llm_timeout,
        retry_max=config.llm_retry_max,
        retry_delay=config.llm_retry_delay,
    )

    loop = AgentLoop(gateway, registry, gate, memory=memory, retrieval=retrieval)
    loop.register_agent(csr_agent_definition(config))

    return ChatOrchestrator(loop, retrieval, gate, memory, agent_name=CSR_AGENT_NAME)
