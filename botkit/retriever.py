"""
Retriever Module

Finds the chunks most relevant to a chat message.

Pipeline:
1. Embed the query (same model family as the stored vectors)
2. Scope the search to the chatbot's knowledge base
3. Over-fetch from the vector database, drop results below min_relevance
4. Hydrate full chunk text from the chunks table
5. Remove near-duplicates (Jaccard word overlap)
6. Rerank by content type and recency
7. Return the top_k

Design Rationale:
- The relevance threshold applies to the raw similarity, before boosts,
  so raising it can only shrink the result set
- Retrieval results are cached for an hour; the engine drops the cache
  whenever the knowledge base changes
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from config.settings import get_settings, RetrievalConfig
from botkit.cache import make_cache_key
from botkit.database import Chunk, ContentRelationship, Document

# Configure logging
logger = logging.getLogger(__name__)

TYPE_BOOSTS = {
    "page": 1.2,
    "post": 1.1,
    "product": 1.15,
    "course": 1.15,
}
RECENCY_WINDOW_DAYS = 30
MAX_RECENCY_BOOST = 0.1

_WORD = re.compile(r"[a-z0-9']+")


@dataclass
class RetrievedChunk:
    """
    A chunk selected as chat context.

    Attributes:
        chunk_id: Vector / chunk id
        content: Full chunk text
        score: Raw cosine similarity to the query
        rank_score: Score after type and recency boosts
        metadata: Chunk metadata (document_id, chunk_index, title, ...)
        source: {"type", "title", "url"} for citations
        before: Neighbouring chunk texts preceding this one (expand_context)
        after: Neighbouring chunk texts following this one (expand_context)
    """
    chunk_id: str
    content: str
    score: float
    rank_score: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: Dict[str, str] = field(default_factory=dict)
    before: List[str] = field(default_factory=list)
    after: List[str] = field(default_factory=list)

    @property
    def document_id(self) -> Optional[int]:
        value = self.metadata.get("document_id")
        return int(value) if value not in (None, "") else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "content": self.content,
            "score": self.score,
            "rank_score": self.rank_score,
            "metadata": self.metadata,
            "source": self.source,
            "before": self.before,
            "after": self.after,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrievedChunk":
        return cls(**data)


def text_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the lowercase word sets of two texts."""
    words_a = set(_WORD.findall(text_a.lower()))
    words_b = set(_WORD.findall(text_b.lower()))
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def format_source(metadata: Dict[str, Any]) -> Dict[str, str]:
    """Citation info derived from chunk metadata."""
    url = metadata.get("url") or ""
    if not url and metadata.get("source_type") == "url":
        url = metadata.get("source_id") or ""
    return {
        "type": metadata.get("source_type") or "unknown",
        "title": metadata.get("title") or "",
        "url": url,
    }


class Retriever:
    """
    Semantic retrieval over the knowledge base of a chatbot.

    Example:
        retriever = Retriever(embeddings, vector_db, database, cache=cache)
        chunks = retriever.retrieve("How do refunds work?", chatbot_id=1)
        prompt_context = retriever.format_context(chunks)
    """

    CACHE_GROUP = "content"
    CACHE_PREFIX = "context_"

    def __init__(
        self,
        embeddings,
        vector_db,
        database,
        config: Optional[RetrievalConfig] = None,
        cache=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the retriever.

        Args:
            embeddings: EmbeddingsGenerator for query vectors
            vector_db: Vector database to search
            database: Database holding chunks and content relationships
            config: Optional RetrievalConfig instance
            cache: Optional UnifiedCacheManager
            clock: Time source for recency boosts
        """
        self.embeddings = embeddings
        self.vector_db = vector_db
        self.database = database
        self.config = config or get_settings().retrieval
        self.cache = cache
        self._clock = clock

        logger.info(
            f"Retriever initialized: top_k={self.config.top_k}, "
            f"min_relevance={self.config.min_relevance}, reranking={self.config.reranking_enabled}"
        )

    def related_document_ids(self, chatbot_id: int) -> List[int]:
        """Documents in a chatbot's knowledge base."""
        with self.database.session() as session:
            rows = session.query(ContentRelationship.target_id).filter(
                ContentRelationship.source_type == "chatbot",
                ContentRelationship.source_id == int(chatbot_id),
                ContentRelationship.target_type == "document",
                ContentRelationship.relationship_type == "knowledge_base",
            ).all()
        return sorted({row[0] for row in rows})

    def retrieve(
        self,
        query: str,
        chatbot_id: Optional[int] = None,
        top_k: Optional[int] = None,
        min_relevance: Optional[float] = None,
    ) -> List[RetrievedChunk]:
        """
        Retrieve relevant chunks for a query.

        Args:
            query: User message
            chatbot_id: Restrict to this chatbot's documents (None searches everything)
            top_k: Maximum number of chunks (default from config)
            min_relevance: Minimum raw similarity (default from config)

        Returns:
            Chunks ordered by rank score; [] when nothing clears the threshold
        """
        if not query or not query.strip():
            return []

        top_k = self.config.top_k if top_k is None else top_k
        min_relevance = self.config.min_relevance if min_relevance is None else min_relevance
        if top_k <= 0:
            return []

        cache_key = make_cache_key(
            self.CACHE_PREFIX, query, chatbot_id, top_k, min_relevance, self.embeddings.model_name
        )
        if self.cache is not None:
            cached = self.cache.get(cache_key, group=self.CACHE_GROUP)
            if cached is not None:
                logger.debug(f"Retrieval cache hit for query: {query[:50]}...")
                return [RetrievedChunk.from_dict(item) for item in cached]

        search_filter: Dict[str, Any] = {}
        if chatbot_id is not None:
            document_ids = self.related_document_ids(chatbot_id)
            if not document_ids:
                logger.info(f"Chatbot {chatbot_id} has no documents in its knowledge base")
                return []
            search_filter["document_id"] = document_ids

        vector, model = self.embeddings.generate_with_model([query])[0]
        search_filter["model"] = model

        raw = self.vector_db.search(
            vector,
            top_k=top_k * max(1, self.config.overfetch_factor),
            filter=search_filter,
        )
        logger.debug(
            f"Vector search returned {len(raw)} candidates; "
            f"top scores: {[round(r.score, 3) for r in raw[:3]]}"
        )

        chunks = [
            RetrievedChunk(
                chunk_id=result.id,
                content=result.metadata.get("content", ""),
                score=result.score,
                rank_score=result.score,
                metadata=dict(result.metadata),
            )
            for result in raw
            if result.score >= min_relevance
        ]

        chunks = self._hydrate(chunks)
        chunks = self.deduplicate(chunks, self.config.deduplication_threshold)
        if self.config.reranking_enabled:
            chunks = self.rerank(chunks)
        chunks = chunks[:top_k]

        for chunk in chunks:
            chunk.source = format_source(chunk.metadata)

        logger.info(f"Retrieved {len(chunks)} chunks for query: {query[:50]}...")

        if self.cache is not None:
            self.cache.set(
                cache_key,
                [chunk.to_dict() for chunk in chunks],
                group=self.CACHE_GROUP,
                ttl=self.config.cache_ttl,
            )
        return chunks

    def _hydrate(self, chunks: List[RetrievedChunk]) -> List[RetrievedChunk]:
        """Replace index-side (possibly truncated) text with the stored chunk text."""
        ids = [int(c.chunk_id) for c in chunks if str(c.chunk_id).isdigit()]
        if not ids:
            return chunks

        with self.database.session() as session:
            rows = (
                session.query(Chunk, Document)
                .join(Document, Chunk.document_id == Document.id)
                .filter(Chunk.id.in_(ids))
                .all()
            )
            stored = {
                str(chunk.id): {
                    "content": chunk.content,
                    "document_id": chunk.document_id,
                    "chunk_index": chunk.chunk_index,
                    "title": document.title,
                    "source_type": document.source_type,
                    "source_id": document.source_id,
                    "last_modified": document.updated_at.isoformat() if document.updated_at else None,
                }
                for chunk, document in rows
            }

        for chunk in chunks:
            found = stored.get(str(chunk.chunk_id))
            if not found:
                continue
            chunk.content = found.pop("content")
            for key, value in found.items():
                if chunk.metadata.get(key) in (None, ""):
                    chunk.metadata[key] = value
        return chunks

    @staticmethod
    def deduplicate(chunks: List[RetrievedChunk], threshold: float) -> List[RetrievedChunk]:
        """Keep the first of any group of chunks whose word overlap reaches threshold."""
        kept: List[RetrievedChunk] = []
        for chunk in chunks:
            if any(text_similarity(chunk.content, existing.content) >= threshold for existing in kept):
                continue
            kept.append(chunk)
        return kept

    def _rank_score(self, chunk: RetrievedChunk) -> float:
        score = chunk.score
        score *= TYPE_BOOSTS.get(chunk.metadata.get("source_type") or chunk.metadata.get("type"), 1.0)

        modified = chunk.metadata.get("last_modified")
        if modified:
            try:
                modified_at = datetime.fromisoformat(str(modified)).timestamp()
            except ValueError:
                modified_at = None
            if modified_at is not None:
                age_days = max(0.0, (self._clock() - modified_at) / 86400)
                if age_days < RECENCY_WINDOW_DAYS:
                    score *= 1 + MAX_RECENCY_BOOST * (1 - age_days / RECENCY_WINDOW_DAYS)
        return score

    def rerank(self, chunks: List[RetrievedChunk]) -> List[RetrievedChunk]:
        """Order by boosted score; ties keep similarity order."""
        for chunk in chunks:
            chunk.rank_score = self._rank_score(chunk)
        return sorted(chunks, key=lambda c: c.rank_score, reverse=True)

    def expand_context(self, chunks: List[RetrievedChunk], window: Optional[int] = None) -> List[RetrievedChunk]:
        """
        Attach up to `window` neighbouring chunks on each side.

        Args:
            chunks: Retrieved chunks
            window: Neighbours per side (default from config)
        """
        window = self.config.context_window if window is None else window
        if window <= 0:
            return chunks

        with self.database.session() as session:
            for chunk in chunks:
                document_id = chunk.document_id
                chunk_index = chunk.metadata.get("chunk_index")
                if document_id is None or chunk_index is None:
                    continue
                chunk_index = int(chunk_index)

                before = (
                    session.query(Chunk.content)
                    .filter(Chunk.document_id == document_id, Chunk.chunk_index < chunk_index)
                    .order_by(Chunk.chunk_index.desc())
                    .limit(window)
                    .all()
                )
                after = (
                    session.query(Chunk.content)
                    .filter(Chunk.document_id == document_id, Chunk.chunk_index > chunk_index)
                    .order_by(Chunk.chunk_index)
                    .limit(window)
                    .all()
                )
                chunk.before = [row[0] for row in reversed(before)]
                chunk.after = [row[0] for row in after]
        return chunks

    @staticmethod
    def format_context(chunks: List[RetrievedChunk]) -> str:
        """Render chunks as "Source: title (url)" blocks for the system prompt."""
        blocks = []
        for chunk in chunks:
            source = chunk.source or format_source(chunk.metadata)
            label = source.get("title") or source.get("url") or source.get("type") or "unknown"
            url = source.get("url")
            header = f"Source: {label} ({url})" if url else f"Source: {label}"
            blocks.append(f"{header}\n{chunk.content}")
        return "\n\n".join(blocks)

    def invalidate_cache(self) -> int:
        if self.cache is None:
            return 0
        return self.cache.invalidate_prefix(self.CACHE_PREFIX, group=self.CACHE_GROUP)
