"""
Retrieval Router - selects one knowledge backend and fronts it.

Backend selection is an ordered chain evaluated once on initialize():
each configured remote candidate is tried in order, and the local
in-process store is the final, always-available fallback. Failures while
initializing are logged and recorded as a downgrade; callers only see the
uniform index/search contract.

Usage:
    router = RetrievalRouter(candidates=[("qdrant", make_qdrant)], fallback=make_local)
    await router.initialize()
    ids = await router.index("Refund Policy\\n\\nFull refunds within 30 days...", {"title": "Refund Policy"})
    result = await router.search("refund policy", top_k=5)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from errors import ExternalServiceError

from .backends import KnowledgeBackend, RetrievedDocument
from .chunker import RecursiveTextSplitter

logger = logging.getLogger(__name__)

BackendFactory = Callable[[], KnowledgeBackend]

SEARCH_UNAVAILABLE = "Knowledge search is temporarily unavailable"


@dataclass
class SearchResult:
    """Search outcome. Iterates and sizes like the list of documents."""

    documents: List[RetrievedDocument] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None

    def __iter__(self) -> Iterator[RetrievedDocument]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    def __getitem__(self, index: int) -> RetrievedDocument:
        return self.documents[index]


class RetrievalRouter:
    def __init__(
        self,
        candidates: List[Tuple[str, BackendFactory]],
        fallback: BackendFactory,
        splitter: Optional[RecursiveTextSplitter] = None,
    ):
        """
        Args:
            candidates: (name, factory) pairs in priority order; only configured backends
            fallback: Factory for the local store used when every candidate fails
            splitter: Chunker applied before indexing
        """
        self._candidates = list(candidates)
        self._fallback = fallback
        self.splitter = splitter or RecursiveTextSplitter()

        self.backend: Optional[KnowledgeBackend] = None
        self.downgraded = False
        self.downgrade_reasons: List[str] = []
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self.backend is not None

    @property
    def backend_name(self) -> Optional[str]:
        return self.backend.name if self.backend else None

    async def initialize(self) -> None:
        """Select and initialize a backend. Never raises for remote failures."""
        async with self._init_lock:
            if self.backend is not None:
                return

            for name, factory in self._candidates:
                try:
                    backend = factory()
                    await backend.initialize()
                except Exception as e:
                    reason = f"{name}: {e}"
                    self.downgraded = True
                    self.downgrade_reasons.append(reason)
                    logger.warning(f"Knowledge backend {name} unavailable, trying next ({e})")
                    continue
                self.backend = backend
                logger.info(f"Knowledge backend selected: {backend.name}")
                return

            backend = self._fallback()
            await backend.initialize()
            self.backend = backend
            if self.downgraded:
                logger.warning(
                    f"Knowledge backend downgraded to {backend.name} "
                    f"(reasons: {'; '.join(self.downgrade_reasons)})"
                )
            else:
                logger.info(f"Knowledge backend selected: {backend.name}")

    async def index(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        """Chunk content and store it. Returns one id per chunk.

        Raises:
            ExternalServiceError: the selected backend rejected the write
        """
        if self.backend is None:
            await self.initialize()

        chunks = self.splitter.create_chunks(content, metadata or {})
        if not chunks:
            return []

        try:
            ids = await self.backend.index(chunks)
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(
                "Knowledge indexing failed", details=str(e), service="knowledge", backend=self.backend_name
            ) from e

        logger.info(f"Indexed {len(ids)} chunks into {self.backend_name}")
        return ids

    async def search(self, query: str, top_k: int = 5, min_score: float = 0.0) -> SearchResult:
        """Ranked search. Backend failures yield an empty, unsuccessful result."""
        if self.backend is None:
            await self.initialize()

        try:
            documents = await self.backend.search(query, top_k=top_k, min_score=min_score)
        except Exception as e:
            logger.warning(f"Knowledge search failed on {self.backend_name}: {e}")
            return SearchResult(documents=[], success=False, error=SEARCH_UNAVAILABLE)

        return SearchResult(documents=documents[:top_k])

    def health(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "initialized": self.initialized,
            "backend": self.backend_name,
            "downgraded": self.downgraded,
        }
        if self.downgrade_reasons:
            info["downgradeReasons"] = list(self.downgrade_reasons)
        if self.backend is not None:
            info.update({k: v for k, v in self.backend.stats().items() if k != "backend"})
        return info
