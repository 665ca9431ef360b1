"""
Knowledge Chunker - recursive character splitting for knowledge base articles.

Splits on the coarsest separator present (paragraphs, then lines, then
sentences, then words, then characters), merging adjacent pieces up to
chunk_size and carrying a chunk_overlap tail into the next chunk.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ", "")


@dataclass
class Chunk:
    """A chunk of text with metadata"""

    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    chunk_id: str = ""

    def __post_init__(self):
        if not self.chunk_id:
            id_string = f"{self.metadata.get('title', '')}:{self.metadata.get('chunk_index', '')}:{self.content}"
            self.chunk_id = hashlib.md5(id_string.encode()).hexdigest()[:16]


class RecursiveTextSplitter:
    def __init__(
        self,
        chunk_size: int = 500,
        chunk_overlap: int = 50,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ):
        """
        Args:
            chunk_size: Maximum chunk length in characters
            chunk_overlap: Characters of trailing context repeated in the next chunk
            separators: Split points, coarsest first; "" means per character
        """
        if chunk_overlap >= chunk_size:
            raise ValueError(f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = list(separators)

    def split_text(self, text: str) -> List[str]:
        """Split text into chunks no longer than chunk_size."""
        if not text or not text.strip():
            return []
        return self._split(text, self.separators)

    def create_chunks(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> List[Chunk]:
        """Split text and attach metadata (plus chunk_index/total_chunks) to each piece."""
        metadata = metadata or {}
        pieces = self.split_text(text)
        return [
            Chunk(content=piece, metadata={**metadata, "chunk_index": i, "total_chunks": len(pieces)})
            for i, piece in enumerate(pieces)
        ]

    def _split(self, text: str, separators: List[str]) -> List[str]:
        if len(text) <= self.chunk_size:
            stripped = text.strip()
            return [stripped] if stripped else []

        separator = separators[-1] if separators else ""
        remaining: List[str] = []
        for i, sep in enumerate(separators):
            if sep == "" or sep in text:
                separator = sep
                remaining = separators[i + 1:]
                break

        pieces = text.split(separator) if separator else list(text)

        chunks: List[str] = []
        current: List[str] = []
        for piece in pieces:
            if not piece:
                continue

            if len(piece) > self.chunk_size:
                if current:
                    chunks.append(separator.join(current))
                    current = []
                if remaining:
                    chunks.extend(self._split(piece, remaining))
                else:
                    chunks.extend(
                        piece[i:i + self.chunk_size] for i in range(0, len(piece), self.chunk_size - self.chunk_overlap)
                    )
                continue

            if current and len(separator.join(current + [piece])) > self.chunk_size:
                chunks.append(separator.join(current))
                current = self._overlap_tail(current, separator)
                while current and len(separator.join(current + [piece])) > self.chunk_size:
                    current.pop(0)
            current.append(piece)

        if current:
            chunks.append(separator.join(current))

        return [c.strip() for c in chunks if c.strip()]

    def _overlap_tail(self, pieces: List[str], separator: str) -> List[str]:
        """Trailing pieces whose joined length fits in chunk_overlap."""
        tail: List[str] = []
        size = 0
        for piece in reversed(pieces):
            added = len(piece) + (len(separator) if tail else 0)
            if size + added > self.chunk_overlap:
                break
            tail.insert(0, piece)
            size += added
        return tail
