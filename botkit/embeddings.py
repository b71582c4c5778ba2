"""
Embeddings Generator Module

Turns text into vectors through the LLM client's provider chain.

Design Rationale:
- Texts are embedded in batches (default 20) to respect provider payload limits
- Every text is cached by md5(text + model) for a day, so re-ingesting
  unchanged content costs nothing
- Each provider call is retried with exponential backoff (tenacity) before the
  next provider in the fallback order is tried
- Vectors keep the model that produced them, so mixed-model stores can still
  compare like with like

Usage:
    generator = EmbeddingsGenerator(llm_client)
    vectors = generator.generate(["What is RAG?", "Retrieval augmented generation"])
"""

import hashlib
import logging
import math
import time
from typing import Callable, List, Optional, Tuple

import numpy as np
from tenacity import Retrying, stop_after_attempt, wait_exponential

from config.settings import get_settings, EmbeddingConfig
from botkit.events import EMBEDDINGS_BATCH_COMPLETED, EMBEDDINGS_BATCH_STARTED, EventBus
from botkit.exceptions import EmbeddingProviderError

# Configure logging
logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100


def estimate_tokens(text: str) -> int:
    """Rough token count (about four characters per token)."""
    return math.ceil(len(text or "") / 4)


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector is all zeros
    """
    vec_a = np.asarray(a, dtype=np.float32)
    vec_b = np.asarray(b, dtype=np.float32)
    if vec_a.shape != vec_b.shape:
        raise ValueError(f"Dimension mismatch: {vec_a.shape[0]} vs {vec_b.shape[0]}")

    norm = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


class EmbeddingsGenerator:
    """
    Batched, cached, retried embedding generation.

    This is the class that other components should use for embeddings.

    Example:
        generator = EmbeddingsGenerator(llm_client, cache=cache, bus=bus)
        vectors = generator.generate(chunks)
        pairs = generator.generate_with_model(chunks)  # [(vector, model), ...]
    """

    CACHE_GROUP = "content"

    def __init__(
        self,
        llm_client,
        config: Optional[EmbeddingConfig] = None,
        cache=None,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the generator.

        Args:
            llm_client: LLMClient providing the provider chain
            config: Optional EmbeddingConfig instance
            cache: Optional UnifiedCacheManager
            bus: Optional EventBus for batch events
            sleep: Backoff sleep function (tests pass a no-op)
        """
        self.llm_client = llm_client
        self.config = config or get_settings().embedding
        self.cache = cache
        self.bus = bus
        self._sleep = sleep
        self.batch_size = min(MAX_BATCH_SIZE, max(MIN_BATCH_SIZE, self.config.batch_size))

        logger.info(
            f"EmbeddingsGenerator initialized: provider={self.config.provider}, "
            f"model={self.config.model}, batch_size={self.batch_size}"
        )

    @property
    def model_name(self) -> str:
        return self.config.model

    def _cache_key(self, text: str) -> str:
        return "embedding_" + hashlib.md5((text + self.config.model).encode("utf-8")).hexdigest()

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=self.config.retry_base_delay, max=30),
            sleep=self._sleep,
            reraise=True,
        )

    def _embed_batch(self, texts: List[str]) -> Tuple[List[List[float]], str]:
        """
        Embed one batch, walking the provider chain.

        Returns:
            (vectors, model) from the first provider that succeeds

        Raises:
            EmbeddingProviderError: Every provider failed after retries
        """
        chain = self.llm_client.provider_chain(
            model=self.config.model,
            provider=self.config.provider,
            fallback=self.config.allow_fallback,
        )
        if not chain:
            raise EmbeddingProviderError(self.config.provider, "no configured embedding provider")

        last_error = None
        for provider, model in chain:
            try:
                for attempt in self._retrying():
                    with attempt:
                        vectors = provider.embed(texts, model)
            except Exception as e:
                last_error = e
                logger.warning(f"Embedding provider {provider.name} failed after retries: {e}")
                continue

            if len(vectors) != len(texts):
                last_error = ValueError(
                    f"{provider.name} returned {len(vectors)} vectors for {len(texts)} texts"
                )
                logger.warning(str(last_error))
                continue

            used_model = model or provider.default_embedding_model
            if provider.name != self.config.provider:
                logger.info(f"Embeddings served by fallback provider {provider.name} ({used_model})")
            return vectors, used_model

        raise EmbeddingProviderError(self.config.provider, str(last_error))

    def generate_with_model(self, texts: List[str]) -> List[Tuple[List[float], str]]:
        """
        Generate embeddings and report the model behind each vector.

        Args:
            texts: Non-blank input texts

        Returns:
            (vector, model) pairs in input order
        """
        if not texts:
            return []
        for text in texts:
            if not text or not text.strip():
                raise ValueError("Cannot embed empty text")

        results: List[Optional[Tuple[List[float], str]]] = [None] * len(texts)
        total_batches = math.ceil(len(texts) / self.batch_size)

        for batch_number, start in enumerate(range(0, len(texts), self.batch_size), start=1):
            batch = texts[start:start + self.batch_size]
            self._publish(EMBEDDINGS_BATCH_STARTED, {
                "batch": batch_number,
                "total_batches": total_batches,
                "size": len(batch),
            })

            missing = []
            for offset, text in enumerate(batch):
                cached = self.cache.get(self._cache_key(text), group=self.CACHE_GROUP) if self.cache else None
                if cached:
                    results[start + offset] = (cached["vector"], cached["model"])
                else:
                    missing.append(offset)

            if missing:
                vectors, model = self._embed_batch([batch[offset] for offset in missing])
                for offset, vector in zip(missing, vectors):
                    vector = [float(v) for v in vector]
                    results[start + offset] = (vector, model)
                    if self.cache:
                        self.cache.set(
                            self._cache_key(batch[offset]),
                            {"vector": vector, "model": model},
                            group=self.CACHE_GROUP,
                            ttl=self.config.cache_ttl,
                        )

            logger.debug(
                f"Embedding batch {batch_number}/{total_batches}: "
                f"{len(batch) - len(missing)} cached, {len(missing)} generated"
            )
            self._publish(EMBEDDINGS_BATCH_COMPLETED, {
                "batch": batch_number,
                "total_batches": total_batches,
                "size": len(batch),
                "cached": len(batch) - len(missing),
            })

        return results

    def generate(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of input texts

        Returns:
            List of embedding vectors, in input order
        """
        return [vector for vector, _ in self.generate_with_model(texts)]

    def generate_one(self, text: str) -> List[float]:
        """Generate the embedding of a single text."""
        return self.generate([text])[0]

    def _publish(self, event_name: str, payload: dict) -> None:
        if self.bus is not None:
            self.bus.publish(event_name, payload)
