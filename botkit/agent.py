"""
BotKit Agent Module

The public entry point: wires every component from Settings and exposes the
operations a host application needs (chat, ingestion, queue, migrations,
health).

API Contract:
    class BotKit:
        def chat(self, message: str, conversation_id: str, bot_id: int = None) -> dict
        def ingest_file(self, file_path: str, title: str = "") -> dict
        def process_queue(self) -> dict

Design Rationale:
- One place builds the object graph; components never reach for globals
- Every collaborator can be injected (tests pass an in-memory database, a fake
  provider registry and a mock HTTP transport)
- Ingestion helpers return result dicts instead of raising, like the chat path
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from config.settings import get_settings, Settings
from botkit.analytics import AnalyticsRecorder
from botkit.cache import UnifiedCacheManager
from botkit.chunker import TextChunker
from botkit.content import ContentSyncHandler
from botkit.conversation import ConversationStore
from botkit.database import Chatbot, Database
from botkit.document_loader import DocumentLoader
from botkit.embeddings import EmbeddingsGenerator
from botkit.events import CONTENT_CHANGED, EventBus
from botkit.health import HealthChecker
from botkit.llm_client import LLMClient, ProviderRegistry
from botkit.migration import MigrationManager
from botkit.rag_engine import RAGEngine
from botkit.rate_limiter import RateLimiter
from botkit.retriever import Retriever
from botkit.state import StateRepository, create_state_repository
from botkit.streaming import StreamManager
from botkit.vector_database import LocalVectorDatabase, PineconeVectorDatabase

logger = logging.getLogger(__name__)


class BotKit:
    """
    Main BotKit agent - the public API of the chatbot core.

    Example:
        kit = BotKit()
        bot_id = kit.create_chatbot("Support", model_config={"tone": "casual"})

        doc = kit.ingest_file("data/uploads/faq.pdf")
        kit.assign_document(bot_id, doc["document_id"])

        reply = kit.chat("How long does shipping take?", "session-42", bot_id=bot_id)
        print(reply["response"], reply["sources"])
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        database: Optional[Database] = None,
        state: Optional[StateRepository] = None,
        registry: Optional[ProviderRegistry] = None,
        http_client: Optional[httpx.Client] = None,
        content_provider=None,
        bus: Optional[EventBus] = None,
        create_tables: bool = True,
    ):
        """
        Initialize the agent.

        Args:
            settings: Settings instance (default: get_settings())
            database: Database (default: built from settings.database)
            state: StateRepository (default: selected by settings.state)
            registry: LLM provider registry (default: built from settings.llm)
            http_client: httpx.Client shared by Pinecone and the URL loader
            content_provider: Resolves structured content ids to entity mappings
            bus: EventBus (default: a new one)
            create_tables: Create missing tables on startup
        """
        self.settings = settings or get_settings()
        settings = self.settings

        logger.info("Initializing BotKit...")

        self.database = database or Database(config=settings.database)
        if create_tables:
            self.database.create_all()

        self.bus = bus or EventBus()
        self.state = state or create_state_repository(self.database, settings.state)
        self.cache = UnifiedCacheManager(self.state, settings.cache)

        # Providers
        self.llm_client = LLMClient(settings.llm, registry=registry, cache=self.cache)
        self.embeddings = EmbeddingsGenerator(self.llm_client, settings.embedding, cache=self.cache, bus=self.bus)

        # Vector backends
        self.local_db = LocalVectorDatabase(self.database, default_model=settings.embedding.model)
        self.remote_db = None
        if settings.vector_store.pinecone_api_key and settings.vector_store.pinecone_host:
            self.remote_db = PineconeVectorDatabase(config=settings.vector_store, http_client=http_client)
        if settings.vector_store.backend == "pinecone":
            if self.remote_db is None:
                raise ValueError("VECTOR_STORE_BACKEND=pinecone needs PINECONE_API_KEY and PINECONE_HOST")
            self.vector_db = self.remote_db
        else:
            self.vector_db = self.local_db

        # Pipeline
        self.loader = DocumentLoader(settings.loader, content_provider=content_provider, http_client=http_client)
        self.chunker = TextChunker(config=settings.chunking)
        self.retriever = Retriever(self.embeddings, self.vector_db, self.database, settings.retrieval, cache=self.cache)
        self.conversations = ConversationStore(self.database, settings.chat, cache=self.cache)
        self.rate_limiter = RateLimiter(self.state, settings.rate_limit)
        self.analytics = AnalyticsRecorder(self.database, self.cache)
        self.streams = StreamManager()

        self.engine = RAGEngine(
            database=self.database,
            loader=self.loader,
            chunker=self.chunker,
            embeddings=self.embeddings,
            vector_db=self.vector_db,
            retriever=self.retriever,
            llm_client=self.llm_client,
            conversations=self.conversations,
            rate_limiter=self.rate_limiter,
            state=self.state,
            cache=self.cache,
            bus=self.bus,
            analytics=self.analytics,
            streams=self.streams,
            settings=settings,
        )
        self.content_sync = ContentSyncHandler(self.engine, self.bus)

        self.migrations = MigrationManager(
            self.database,
            self.local_db,
            self.remote_db,
            self.state,
            embeddings=self.embeddings,
            vector_db=self.vector_db,
            config=settings.migration,
            bus=self.bus,
            cache=self.cache,
        )
        self.health = HealthChecker(self.database, self.vector_db, self.llm_client, self.cache, settings.queue)

        logger.info(
            f"BotKit initialized: "
            f"llm={settings.llm.provider}, "
            f"embeddings={settings.embedding.provider}/{settings.embedding.model}, "
            f"vector_store={self.vector_db.backend}"
        )

    # ------------------------------------------------------------------
    # Chatbots
    # ------------------------------------------------------------------

    def create_chatbot(
        self,
        name: str,
        model_config: Optional[Dict[str, Any]] = None,
        messages: Optional[Dict[str, Any]] = None,
        style: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Create a chatbot.

        Args:
            name: Display name
            model_config: Per-bot overrides (model, temperature, personality, tone, ...)
            messages: greeting / fallback texts
            style: Presentation settings stored for the host application

        Returns:
            Chatbot id
        """
        with self.database.session() as session:
            chatbot = Chatbot(name=name, model_config=model_config or {}, messages=messages or {}, style=style or {})
            session.add(chatbot)
            session.flush()
            chatbot_id = chatbot.id
        logger.info(f"Created chatbot {chatbot_id}: {name}")
        return chatbot_id

    def assign_document(self, chatbot_id: int, document_id: int) -> None:
        self.engine.assign_document(chatbot_id, document_id)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def chat(
        self,
        message: str,
        conversation_id: str,
        bot_id: Optional[int] = None,
        user_id: Optional[str] = None,
        guest_ip: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Answer a message.

        Returns:
            {response, sources, context, metadata} or an error payload
        """
        return self.engine.generate_response(
            message,
            conversation_id,
            bot_id=bot_id,
            settings=settings,
            user_id=user_id,
            guest_ip=guest_ip,
        )

    def start_stream(self, message: str, conversation_id: str, bot_id: Optional[int] = None, **kwargs) -> str:
        return self.engine.start_stream(message, conversation_id, bot_id=bot_id, **kwargs)

    def poll_stream(self, handle: str, offset: int = 0) -> Dict[str, Any]:
        return self.engine.poll_stream(handle, offset)

    def search(self, query: str, bot_id: Optional[int] = None, top_k: int = 5) -> List[Dict[str, Any]]:
        """
        Retrieve without generating a response.

        Useful for debugging what the knowledge base returns for a query.
        """
        return [chunk.to_dict() for chunk in self.retriever.retrieve(query, chatbot_id=bot_id, top_k=top_k)]

    def get_history(self, conversation_id: str) -> List[Dict[str, Any]]:
        conversation = self.conversations.get_conversation(conversation_id)
        if conversation is None:
            return []
        return [message.to_dict() for message in self.conversations.get_history(conversation.id)]

    def search_messages(self, query: str, bot_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        return self.conversations.search_messages(query, chatbot_id=bot_id, limit=limit)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _ingest(self, source: Any, source_type: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.engine.process_document(source, source_type, metadata)
            return {"success": True, **result.to_dict()}
        except Exception as e:
            logger.error(f"Error ingesting {source_type} source: {e}")
            return {"success": False, "document_id": getattr(e, "document_id", None), "error": str(e)}

    def ingest_file(self, file_path: str, title: str = "") -> Dict[str, Any]:
        """Load, chunk and index a PDF, DOCX, TXT, MD or HTML file."""
        path = Path(file_path)
        return self._ingest(str(path), "file", {"title": title or path.name, "source_id": str(path)})

    def ingest_url(self, url: str, title: str = "") -> Dict[str, Any]:
        return self._ingest(url, "url", {"title": title or url, "source_id": url})

    def ingest_text(self, text: str, title: str = "direct_input", source_id: Optional[str] = None) -> Dict[str, Any]:
        metadata = {"title": title}
        if source_id:
            metadata["source_id"] = source_id
        return self._ingest(text, "text", metadata)

    def enqueue(self, source_type: str, source_id: Any, title: str = "", payload: Optional[Dict[str, Any]] = None) -> int:
        """Queue a source for the background worker."""
        return self.engine.enqueue_content(source_type, source_id, title=title, payload=payload)

    def content_changed(self, source_type: str, source_id: Any, action: str = "update",
                        title: str = "", payload: Optional[Dict[str, Any]] = None) -> None:
        """Publish a content-change event on the bus."""
        self.bus.publish(CONTENT_CHANGED, {
            "source_type": source_type,
            "source_id": source_id,
            "action": action,
            "title": title,
            "payload": payload or {},
        })

    def process_queue(self) -> Dict[str, Any]:
        return self.engine.process_queue().to_dict()

    def delete_document(self, document_id: int) -> Dict[str, Any]:
        return self.engine.delete_document(document_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_migration(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.migrations.start_migration(options)

    def health_check(self) -> Dict[str, Any]:
        return self.health.run()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the system.

        Returns:
            Dictionary with knowledge base, provider and cache statistics
        """
        try:
            vector_stats = self.vector_db.get_stats()
        except Exception as e:
            logger.warning(f"Vector stats unavailable: {e}")
            vector_stats = {"backend": self.vector_db.backend, "error": str(e)}

        return {
            "knowledge_base": vector_stats,
            "embedding": {
                "provider": self.settings.embedding.provider,
                "model": self.embeddings.model_name,
            },
            "llm": {
                "provider": self.llm_client.provider_name,
                "model": self.llm_client.model_name,
                "configured": self.llm_client.configured_providers(),
            },
            "cache": self.cache.get_stats(),
            "analytics": self.analytics.get_summary(days=30),
        }

    def close(self) -> None:
        self.streams.shutdown(wait=False)
        self.loader.close()
        if self.remote_db is not None:
            self.remote_db.close()


# Convenience function for quick initialization
def create_botkit(settings: Optional[Settings] = None, **kwargs) -> BotKit:
    """
    Create a BotKit agent with settings from the environment.

    Args:
        settings: Settings instance (default: get_settings())
        **kwargs: Additional arguments for BotKit

    Returns:
        Configured BotKit instance
    """
    return BotKit(settings=settings, **kwargs)
