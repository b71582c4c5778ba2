"""
BotKit RAG Core

Retrieval-augmented chatbot core:
- TextChunker: Overlapping, boundary-aware text segmentation
- DocumentLoader: Files, URLs and structured content to plain text
- EmbeddingsGenerator: Batched, cached, retried embeddings
- LLMClient: Provider abstraction with fallback (OpenAI/Anthropic/Google/Together/Mistral/Ollama)
- LocalVectorDatabase / PineconeVectorDatabase: Vector storage and search
- Retriever: Scoped, reranked retrieval with context formatting
- RAGEngine: Ingestion state machine, queue and chat pipeline
- RateLimiter: Sliding-window request limits and daily token quotas
- MigrationManager: Resumable migrations between vector backends
- BotKit: The public API
"""

from .chunker import TextChunker, TextChunk
from .document_loader import DocumentLoader
from .embeddings import EmbeddingsGenerator
from .llm_client import LLMClient, LLMResponse, ProviderRegistry
from .vector_database import LocalVectorDatabase, PineconeVectorDatabase, SearchResult, create_vector_database
from .retriever import Retriever, RetrievedChunk
from .rag_engine import RAGEngine, ProcessResult, QueueRunResult
from .rate_limiter import RateLimiter, Allowed, Denied
from .migration import MigrationManager
from .agent import BotKit, create_botkit

__all__ = [
    # Ingestion
    "TextChunker",
    "TextChunk",
    "DocumentLoader",
    "EmbeddingsGenerator",
    # Providers and storage
    "LLMClient",
    "LLMResponse",
    "ProviderRegistry",
    "LocalVectorDatabase",
    "PineconeVectorDatabase",
    "SearchResult",
    "create_vector_database",
    # RAG pipeline
    "Retriever",
    "RetrievedChunk",
    "RAGEngine",
    "ProcessResult",
    "QueueRunResult",
    "RateLimiter",
    "Allowed",
    "Denied",
    "MigrationManager",
    # Public API
    "BotKit",
    "create_botkit",
]
