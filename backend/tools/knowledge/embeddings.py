"""
Knowledge Embeddings - text to vector for the knowledge backends.

Two embedders share one interface (embed_documents / embed_query / dimension):
- OpenAIEmbedder: remote embeddings endpoint (text-embedding-3-small by default)
- HashingEmbedder: deterministic feature hashing over word tokens, no network.
  Used when no API key is configured so the local store still ranks by
  lexical overlap.

Both are synchronous; backends call them through run_in_executor.
"""

import hashlib
import logging
import math
import re
from typing import List, Optional

import numpy as np

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    "a an and are as at be by can do does for from how i in is it my of on or our "
    "the this to was we what when where which who why will with you your".split()
)


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens with stopwords removed and a light plural strip."""
    tokens = []
    for token in _TOKEN_RE.findall(text.lower()):
        if token in STOPWORDS:
            continue
        if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
            token = token[:-1]
        tokens.append(token)
    return tokens


class HashingEmbedder:
    """Signed feature hashing with sublinear term frequency, L2-normalized."""

    def __init__(self, dimension: int = 1536):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"hashing-{self._dimension}"

    def _embed(self, text: str) -> List[float]:
        vector = np.zeros(self._dimension, dtype=np.float32)
        counts = {}
        for token in tokenize(text):
            counts[token] = counts.get(token, 0) + 1

        for token, count in counts.items():
            digest = hashlib.md5(token.encode()).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign * (1.0 + math.log(count))

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    def embed_documents(self, documents: List[str]) -> List[List[float]]:
        return [self._embed(doc) for doc in documents]

    def embed_query(self, query: str) -> List[float]:
        return self._embed(query)


class OpenAIEmbedder:
    """Embeddings via the OpenAI-compatible /embeddings endpoint."""

    def __init__(self, client, model: str = "text-embedding-3-small", dimensions: Optional[int] = 1536,
                 batch_size: int = 64):
        """
        Args:
            client: services.llm_client.LLMClient
            model: Embedding model name
            dimensions: Output dimensions (None for the model default)
            batch_size: Texts per request
        """
        self._client = client
        self._model = model
        self._dimensions = dimensions
        self.batch_size = batch_size

    @property
    def dimension(self) -> int:
        return self._dimensions or 1536

    @property
    def model_name(self) -> str:
        return self._model

    def embed_documents(self, documents: List[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        for start in range(0, len(documents), self.batch_size):
            batch = documents[start:start + self.batch_size]
            vectors.extend(self._client.embed(self._model, batch, dimensions=self._dimensions))
        logger.debug(f"Embedded {len(documents)} documents with {self._model}")
        return vectors

    def embed_query(self, query: str) -> List[float]:
        return self._client.embed(self._model, [query], dimensions=self._dimensions)[0]
