"""
Knowledge Backends - pluggable vector stores for the knowledge base.

Every backend exposes the same async contract:
    await backend.initialize()
    ids = await backend.index(chunks)
    docs = await backend.search(query, top_k, min_score)

Backends own their embedding step. Blocking work (embedding, the sync
Qdrant client) runs in the default executor so the event loop stays free.

- LocalVectorStore: in-process numpy cosine index, always available
- QdrantKnowledgeBackend: qdrant-client against QDRANT_URL
- PineconeKnowledgeBackend: Pinecone data plane over httpx
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams

from errors import ExternalServiceError

from .chunker import Chunk

logger = logging.getLogger(__name__)


@dataclass
class RetrievedDocument:
    """A ranked search hit. score is 0.0-1.0, higher is more relevant."""

    id: str
    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "content": self.content, "score": self.score, "metadata": self.metadata}


def _clip_score(score: float) -> float:
    return float(min(1.0, max(0.0, score)))


class KnowledgeBackend(ABC):
    """Opaque knowledge capability: index content, search by query."""

    name: str = "base"

    def __init__(self, embedder):
        self.embedder = embedder

    async def _embed_documents(self, texts: List[str]) -> List[List[float]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embedder.embed_documents, texts)

    async def _embed_query(self, text: str) -> List[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embedder.embed_query, text)

    @abstractmethod
    async def initialize(self) -> None:
        """Connect and prepare storage. Raises on failure."""

    @abstractmethod
    async def index(self, chunks: List[Chunk]) -> List[str]:
        """Store chunks and return their ids in order."""

    @abstractmethod
    async def search(self, query: str, top_k: int = 5, min_score: float = 0.0) -> List[RetrievedDocument]:
        """Return up to top_k documents scoring at least min_score, best first."""

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.name}


class LocalVectorStore(KnowledgeBackend):
    """In-process cosine similarity index. Contents are lost on restart."""

    name = "memory"

    def __init__(self, embedder):
        super().__init__(embedder)
        self._ids: List[str] = []
        self._contents: List[str] = []
        self._metadata: List[Dict[str, Any]] = []
        self._vectors: List[np.ndarray] = []
        self._matrix: Optional[np.ndarray] = None

    async def initialize(self) -> None:
        logger.info(f"Local knowledge store ready (embedder={self.embedder.model_name})")

    @property
    def count(self) -> int:
        return len(self._ids)

    async def index(self, chunks: List[Chunk]) -> List[str]:
        if not chunks:
            return []
        vectors = await self._embed_documents([c.content for c in chunks])

        ids = []
        for chunk, vector in zip(chunks, vectors):
            doc_id = str(uuid.uuid4())
            self._ids.append(doc_id)
            self._contents.append(chunk.content)
            self._metadata.append(dict(chunk.metadata))
            self._vectors.append(np.asarray(vector, dtype=np.float32))
            ids.append(doc_id)
        self._matrix = None
        return ids

    def _get_matrix(self) -> np.ndarray:
        if self._matrix is None:
            matrix = np.vstack(self._vectors)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrix = matrix / norms
        return self._matrix

    async def search(self, query: str, top_k: int = 5, min_score: float = 0.0) -> List[RetrievedDocument]:
        if not self._ids:
            return []

        query_vec = np.asarray(await self._embed_query(query), dtype=np.float32)
        norm = np.linalg.norm(query_vec)
        if norm == 0:
            return []

        scores = self._get_matrix() @ (query_vec / norm)
        order = np.argsort(-scores)[:top_k]

        results = []
        for i in order:
            score = _clip_score(scores[i])
            if score < min_score:
                break
            results.append(
                RetrievedDocument(
                    id=self._ids[i],
                    content=self._contents[i],
                    score=score,
                    metadata=dict(self._metadata[i]),
                )
            )
        return results

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "documents": self.count}


class QdrantKnowledgeBackend(KnowledgeBackend):
    """Qdrant collection with content and metadata kept in the payload."""

    name = "qdrant"

    def __init__(self, embedder, url: str, collection: str = "csr-knowledge", api_key: str = "",
                 timeout: int = 10):
        super().__init__(embedder)
        self.url = url
        self.collection = collection
        self._client = QdrantClient(url=url, api_key=api_key or None, timeout=timeout)

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    def _ensure_collection(self) -> None:
        names = [c.name for c in self._client.get_collections().collections]
        if self.collection in names:
            return
        self._client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=self.embedder.dimension, distance=Distance.COSINE),
        )
        logger.info(f"Created Qdrant collection '{self.collection}' (dim={self.embedder.dimension})")

    async def initialize(self) -> None:
        try:
            await self._run(self._ensure_collection)
        except Exception as e:
            raise ExternalServiceError(
                "Qdrant initialization failed", details=str(e), service="qdrant", url=self.url
            ) from e
        logger.info(f"Qdrant knowledge backend ready: {self.url}/{self.collection}")

    async def index(self, chunks: List[Chunk]) -> List[str]:
        if not chunks:
            return []
        vectors = await self._embed_documents([c.content for c in chunks])
        ids = [str(uuid.uuid4()) for _ in chunks]
        points = [
            PointStruct(id=point_id, vector=vector, payload={"content": chunk.content, "metadata": chunk.metadata})
            for point_id, chunk, vector in zip(ids, chunks, vectors)
        ]
        await self._run(self._client.upsert, collection_name=self.collection, points=points, wait=True)
        return ids

    async def search(self, query: str, top_k: int = 5, min_score: float = 0.0) -> List[RetrievedDocument]:
        vector = await self._embed_query(query)
        response = await self._run(
            self._client.query_points,
            collection_name=self.collection,
            query=vector,
            limit=top_k,
            score_threshold=min_score or None,
            with_payload=True,
        )
        results = []
        for point in response.points:
            payload = point.payload or {}
            results.append(
                RetrievedDocument(
                    id=str(point.id),
                    content=payload.get("content", ""),
                    score=_clip_score(point.score),
                    metadata=payload.get("metadata") or {},
                )
            )
        return results

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "url": self.url, "collection": self.collection}


class PineconeKnowledgeBackend(KnowledgeBackend):
    """Pinecone serverless index via the REST data plane.

    Pinecone metadata only holds flat scalar values, so nested metadata
    is stored JSON-encoded and the chunk text lives under "content".
    """

    name = "pinecone"
    CONTROL_PLANE = "https://api.pinecone.io"
    API_VERSION = "2024-07"

    def __init__(self, embedder, api_key: str, index_name: str = "csr-knowledge",
                 environment: str = "us-east-1-aws", timeout: float = 10.0):
        super().__init__(embedder)
        self.index_name = index_name
        self.environment = environment
        self._headers = {
            "Api-Key": api_key,
            "X-Pinecone-API-Version": self.API_VERSION,
            "Content-Type": "application/json",
        }
        self._timeout = timeout
        self._host: Optional[str] = None

    async def _request(self, method: str, url: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, headers=self._headers) as client:
            resp = await client.request(method, url, json=payload)
        if resp.status_code >= 400:
            raise ExternalServiceError(
                f"Pinecone {method} failed",
                details=resp.text[:200],
                service="pinecone",
                status_code=resp.status_code,
            )
        return resp.json() if resp.content else {}

    async def initialize(self) -> None:
        try:
            description = await self._request("GET", f"{self.CONTROL_PLANE}/indexes/{self.index_name}")
        except httpx.HTTPError as e:
            raise ExternalServiceError("Pinecone unreachable", details=str(e), service="pinecone") from e

        host = description.get("host")
        if not host:
            raise ExternalServiceError(f"Pinecone index '{self.index_name}' has no host", service="pinecone")
        self._host = host if host.startswith("http") else f"https://{host}"
        logger.info(f"Pinecone knowledge backend ready: {self.index_name} ({self.environment})")

    @staticmethod
    def _flatten_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
        flat = {}
        for key, value in metadata.items():
            if isinstance(value, (str, int, float, bool)):
                flat[key] = value
            elif isinstance(value, list) and all(isinstance(v, str) for v in value):
                flat[key] = value
            elif value is not None:
                flat[key] = json.dumps(value, default=str)
        return flat

    async def index(self, chunks: List[Chunk]) -> List[str]:
        if not chunks:
            return []
        vectors = await self._embed_documents([c.content for c in chunks])
        ids = [str(uuid.uuid4()) for _ in chunks]
        payload = {
            "vectors": [
                {
                    "id": vector_id,
                    "values": vector,
                    "metadata": {**self._flatten_metadata(chunk.metadata), "content": chunk.content},
                }
                for vector_id, chunk, vector in zip(ids, chunks, vectors)
            ]
        }
        await self._request("POST", f"{self._host}/vectors/upsert", payload)
        return ids

    async def search(self, query: str, top_k: int = 5, min_score: float = 0.0) -> List[RetrievedDocument]:
        vector = await self._embed_query(query)
        data = await self._request(
            "POST",
            f"{self._host}/query",
            {"vector": vector, "topK": top_k, "includeMetadata": True},
        )
        results = []
        for match in data.get("matches", []):
            score = _clip_score(match.get("score", 0.0))
            if score < min_score:
                continue
            metadata = dict(match.get("metadata") or {})
            content = metadata.pop("content", "")
            results.append(RetrievedDocument(id=match["id"], content=content, score=score, metadata=metadata))
        return results

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.name, "index": self.index_name, "environment": self.environment}
