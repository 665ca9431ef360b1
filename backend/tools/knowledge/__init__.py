"""
Knowledge - retrieval for the CSR agent.

- chunker: RecursiveTextSplitter (500/50 defaults)
- embeddings: OpenAIEmbedder, HashingEmbedder
- backends: LocalVectorStore, QdrantKnowledgeBackend, PineconeKnowledgeBackend
- router: RetrievalRouter with priority chain and local fallback
"""

from .backends import (
    KnowledgeBackend,
    LocalVectorStore,
    PineconeKnowledgeBackend,
    QdrantKnowledgeBackend,
    RetrievedDocument,
)
from .chunker import Chunk, RecursiveTextSplitter
from .embeddings import HashingEmbedder, OpenAIEmbedder
from .router import RetrievalRouter, SearchResult

__all__ = [
    "Chunk",
    "HashingEmbedder",
    "KnowledgeBackend",
    "LocalVectorStore",
    "OpenAIEmbedder",
    "PineconeKnowledgeBackend",
    "QdrantKnowledgeBackend",
    "RecursiveTextSplitter",
    "RetrievalRouter",
    "RetrievedDocument",
    "SearchResult",
]
