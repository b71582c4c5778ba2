"""
Text Chunker Module

Splits raw document text into overlapping, size-bounded chunks.

Chunking Strategy:
- Sliding window over the source text, at most `chunk_size` characters each
- Consecutive chunks share exactly `chunk_overlap` characters
- Window ends snap back to natural boundaries (paragraphs, lines, sentences,
  clauses, words) and fall back to a hard cut when none is available
- Chunks are verbatim slices, so the source can always be reconstructed by
  dropping the overlap prefix of every chunk after the first
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

from config.settings import get_settings, ChunkingConfig
from botkit.exceptions import ConfigurationError

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class TextChunk:
    """
    Represents a single chunk of text with metadata.

    Attributes:
        text: The actual text content of the chunk
        chunk_index: Position of this chunk in the document (0-indexed)
        total_chunks: Total number of chunks from this document
        start: Offset of the chunk in the source text
        metadata: Positional and caller-supplied metadata
        embedding: Vector embedding (populated later by EmbeddingsGenerator)
    """

    text: str
    chunk_index: int
    total_chunks: int = 0
    start: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert chunk to dictionary for storage."""
        return {
            "text": self.text,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "start": self.start,
            "metadata": self.metadata,
            "embedding": self.embedding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextChunk":
        """Create TextChunk from dictionary."""
        return cls(
            text=data["text"],
            chunk_index=data["chunk_index"],
            total_chunks=data.get("total_chunks", 0),
            start=data.get("start", 0),
            metadata=data.get("metadata", {}),
            embedding=data.get("embedding"),
        )


class TextChunker:
    """
    Splits text into overlapping windows with boundary awareness.

    Example:
        chunker = TextChunker(chunk_size=500, chunk_overlap=50)
        for chunk in chunker.split(text, metadata={"document_id": 3}):
            print(chunk.chunk_index, chunk.text[:40])
    """

    # Preferred cut points, strongest first
    SEPARATORS = [
        "\n\n",  # Paragraph breaks (highest priority)
        "\n",    # Line breaks
        ". ",    # Sentences
        "? ",    # Questions
        "! ",    # Exclamations
        "; ",    # Semicolons
        ", ",    # Commas
        " ",     # Words
    ]

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        config: Optional[ChunkingConfig] = None,
    ):
        """
        Initialize the TextChunker.

        Args:
            chunk_size: Maximum characters per chunk (default from config)
            chunk_overlap: Characters shared by consecutive chunks (default from config)
            config: Optional ChunkingConfig instance

        Raises:
            ConfigurationError: If the size/overlap pair is invalid
        """
        self.config = config or get_settings().chunking
        self.chunk_size = chunk_size if chunk_size is not None else self.config.chunk_size
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else self.config.chunk_overlap
        self._validate(self.chunk_size, self.chunk_overlap)

        logger.info(
            f"TextChunker initialized: chunk_size={self.chunk_size}, "
            f"overlap={self.chunk_overlap}"
        )

    @staticmethod
    def _validate(size: int, overlap: int) -> None:
        if size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {size}")
        if overlap < 0:
            raise ConfigurationError(f"chunk_overlap must not be negative, got {overlap}")
        if overlap >= size:
            raise ConfigurationError(
                f"chunk_overlap ({overlap}) must be smaller than chunk_size ({size})"
            )

    def _find_boundary(self, text: str, low: int, high: int) -> int:
        """
        Return the best cut position in [low, high].

        A cut lands just after a separator; when no separator ends inside the
        range the window is cut hard at `high`.
        """
        for separator in self.SEPARATORS:
            index = text.rfind(separator, max(0, low - len(separator)), high)
            if index != -1 and index + len(separator) >= low:
                return index + len(separator)
        return high

    def chunk(
        self,
        text: str,
        size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> List[str]:
        """
        Split text into overlapping chunks.

        Args:
            text: Source text
            size: Maximum characters per chunk (default: instance setting)
            overlap: Characters shared by consecutive chunks

        Returns:
            List of non-empty chunk strings; [] for blank input

        Raises:
            ConfigurationError: If overlap >= size or either is out of range
        """
        size = self.chunk_size if size is None else size
        overlap = self.chunk_overlap if overlap is None else overlap
        self._validate(size, overlap)

        if not text or not text.strip():
            return []

        length = len(text)
        if length <= size:
            return [text]

        chunks: List[str] = []
        start = 0
        while True:
            hard_end = start + size
            if hard_end >= length:
                chunks.append(text[start:])
                break

            # Cuts before the midpoint make needlessly small chunks
            low = max(start + overlap + 1, start + size // 2)
            end = self._find_boundary(text, low, hard_end)
            chunks.append(text[start:end])
            start = end - overlap

        logger.debug(f"Split {length} chars into {len(chunks)} chunks")
        return chunks

    def split(
        self,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
        size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> List[TextChunk]:
        """
        Split text and attach positional metadata to every chunk.

        Args:
            text: Source text
            metadata: Extra metadata copied onto every chunk
            size: Override chunk size
            overlap: Override chunk overlap

        Returns:
            List of TextChunk objects
        """
        overlap = self.chunk_overlap if overlap is None else overlap
        pieces = self.chunk(text, size, overlap)
        total = len(pieces)

        chunks: List[TextChunk] = []
        offset = 0
        for index, piece in enumerate(pieces):
            chunk_metadata = dict(metadata or {})
            chunk_metadata.update({
                "chunk_index": index,
                "total_chunks": total,
                "has_previous": index > 0,
                "has_next": index < total - 1,
                "has_overlap_prev": index > 0 and overlap > 0,
                "has_overlap_next": index < total - 1 and overlap > 0,
                "size": len(piece),
                "original_size": len(text),
            })
            chunks.append(TextChunk(
                text=piece,
                chunk_index=index,
                total_chunks=total,
                start=offset,
                metadata=chunk_metadata,
            ))
            offset += len(piece) - overlap

        if chunks:
            logger.info(
                f"Created {total} chunks "
                f"(avg {sum(len(c.text) for c in chunks) // total} chars/chunk)"
            )
        return chunks


def merge_overlaps(chunks: List[str], overlap: int) -> str:
    """
    Rebuild the source text from overlapping chunks.

    Args:
        chunks: Output of TextChunker.chunk
        overlap: Overlap used to produce them

    Returns:
        The original text
    """
    if not chunks:
        return ""
    return chunks[0] + "".join(piece[overlap:] for piece in chunks[1:])
