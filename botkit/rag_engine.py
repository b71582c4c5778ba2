"""
RAG Engine Module

Orchestrates ingestion and chat:

Ingestion:
    content change → Document(pending) → process_queue()
    → loader → chunker → embeddings → chunks table + vector database
    → Document(completed | error)

Chat:
    message → banned keywords → rate limit / token quota → greeting
    → retrieval → prompt [persona + context + history] → LLM
    → messages persisted → response with sources

Design Rationale:
- One engine owns the document state machine
  (pending → processing → completed | error, trashed ↔ pending)
- Component errors are converted into structured results at this boundary;
  raw provider traces are only logged
- Queue runs never overlap: an in-process lock plus a persisted sentinel
  with TTL guard against concurrent workers
"""

import hashlib
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from config.settings import get_settings, Settings
from botkit.database import (
    Chatbot,
    Chunk,
    ContentRelationship,
    Document,
    DocumentMetadata,
    DocumentStatus,
    utcnow,
)
from botkit.embeddings import estimate_tokens
from botkit.events import (
    DOCUMENT_DELETED,
    DOCUMENT_FAILED,
    DOCUMENT_PROCESSED,
    DOCUMENT_QUEUED,
    ERROR_OCCURRED,
    RESPONSE_GENERATED,
    EventBus,
)
from botkit.exceptions import IngestionError

# Configure logging
logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are {chatbot_personality} for {site_name}. Your goal is to give accurate, helpful answers to visitors.

Guidelines:
- Answer ONLY from the context below and the conversation so far
- If the user refers to an earlier question, use the chat history first
- If the answer is not in the context, say so clearly and suggest where to look
- Ask a short clarifying question when the request is ambiguous
- Keep answers short, friendly and clear, in the language the user writes in
- Use a {chat_tone} tone

Context:
{context}"""

BANNED_KEYWORD_MESSAGE = '⚠️ The word "%s" is not allowed in this chat.'
GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while generating a response. Please try again."

QUEUE_LOCK_KEY = "queue_lock"


@dataclass
class ProcessResult:
    """Outcome of processing one document."""
    document_id: int
    chunk_count: int
    embedding_count: int
    is_update: bool = False
    models: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "chunk_count": self.chunk_count,
            "embedding_count": self.embedding_count,
            "is_update": self.is_update,
            "models": self.models,
        }


@dataclass
class QueueRunResult:
    """Outcome of one process_queue() run."""
    processed: int = 0
    failed: int = 0
    skipped: bool = False
    document_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "document_ids": self.document_ids,
        }


@dataclass
class PreparedChat:
    """Everything needed to call the LLM for one chat turn."""
    conversation: Any
    identity: str
    messages: List[Dict[str, str]]
    chunks: List[Any]
    options: Dict[str, Any]
    started: float


class RAGEngine:
    """
    Ingestion and chat orchestration.

    Example:
        engine = RAGEngine(database=db, loader=loader, chunker=chunker, embeddings=embeddings,
                           vector_db=vector_db, retriever=retriever, llm_client=llm,
                           conversations=conversations, rate_limiter=limiter, state=state)
        doc_id = engine.enqueue_content("url", "https://example.com/faq", title="FAQ")
        engine.process_queue()
        reply = engine.generate_response("Do you ship abroad?", "session-1", bot_id=1)
    """

    def __init__(
        self,
        database,
        loader,
        chunker,
        embeddings,
        vector_db,
        retriever,
        llm_client,
        conversations,
        rate_limiter,
        state,
        cache=None,
        bus: Optional[EventBus] = None,
        analytics=None,
        streams=None,
        settings: Optional[Settings] = None,
    ):
        self.database = database
        self.loader = loader
        self.chunker = chunker
        self.embeddings = embeddings
        self.vector_db = vector_db
        self.retriever = retriever
        self.llm_client = llm_client
        self.conversations = conversations
        self.rate_limiter = rate_limiter
        self.state = state
        self.cache = cache
        self.bus = bus or EventBus()
        self.analytics = analytics
        self.streams = streams
        self.settings = settings or get_settings()
        self._queue_lock = threading.Lock()

        logger.info(
            f"RAGEngine initialized: vector backend={vector_db.backend}, "
            f"llm={self.settings.llm.provider}, embeddings={self.settings.embedding.model}"
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def find_document_id(self, source_type: str, source_id: Any) -> Optional[int]:
        with self.database.session() as session:
            row = (
                session.query(Document.id)
                .filter(Document.source_type == source_type, Document.source_id == str(source_id))
                .first()
            )
            return row[0] if row else None

    def get_document(self, document_id: int) -> Optional[Dict[str, Any]]:
        with self.database.session() as session:
            document = session.get(Document, document_id)
            if document is None:
                return None
            return {
                "id": document.id,
                "title": document.title,
                "source_type": document.source_type,
                "source_id": document.source_id,
                "file_path": document.file_path,
                "mime_type": document.mime_type,
                "status": document.status,
                "chunk_count": len(document.chunks),
                "created_at": document.created_at.isoformat(),
                "updated_at": document.updated_at.isoformat(),
            }

    def list_documents(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.database.session() as session:
            query = session.query(Document.id)
            if status is not None:
                query = query.filter(Document.status == status)
            ids = [row[0] for row in query.order_by(Document.created_at, Document.id).all()]
        return [self.get_document(document_id) for document_id in ids]

    def get_document_meta(self, document_id: int, key: str, default: Any = None) -> Any:
        with self.database.session() as session:
            entry = (
                session.query(DocumentMetadata)
                .filter(DocumentMetadata.document_id == document_id, DocumentMetadata.meta_key == key)
                .one_or_none()
            )
            return entry.meta_value if entry is not None else default

    def set_document_meta(self, document_id: int, key: str, value: Any) -> None:
        with self.database.session() as session:
            self._set_meta(session, document_id, key, value)

    @staticmethod
    def _set_meta(session, document_id: int, key: str, value: Any) -> None:
        entry = (
            session.query(DocumentMetadata)
            .filter(DocumentMetadata.document_id == document_id, DocumentMetadata.meta_key == key)
            .one_or_none()
        )
        if entry is None:
            session.add(DocumentMetadata(document_id=document_id, meta_key=key, meta_value=value))
        else:
            entry.meta_value = value

    def _set_status(self, document_id: int, status: str, **meta: Any) -> None:
        with self.database.session() as session:
            document = session.get(Document, document_id)
            if document is None:
                return
            document.status = status
            document.updated_at = utcnow()
            for key, value in meta.items():
                self._set_meta(session, document_id, key, value)

    def _get_or_create_document(
        self,
        source_type: str,
        source_id: Optional[str],
        title: str = "",
        file_path: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> int:
        with self.database.session() as session:
            document = None
            if source_id is not None:
                document = (
                    session.query(Document)
                    .filter(Document.source_type == source_type, Document.source_id == str(source_id))
                    .one_or_none()
                )
            if document is None:
                document = Document(
                    title=title or "",
                    source_type=source_type,
                    source_id=str(source_id) if source_id is not None else None,
                    file_path=file_path,
                    mime_type=mime_type,
                    status=DocumentStatus.PENDING,
                )
                session.add(document)
                session.flush()
                logger.info(f"Created document {document.id} ({source_type}:{source_id})")
            else:
                if title:
                    document.title = title
                if file_path:
                    document.file_path = file_path
                if mime_type and not document.mime_type:
                    document.mime_type = mime_type
            return document.id

    def enqueue_content(
        self,
        source_type: str,
        source_id: Any,
        action: str = "update",
        title: str = "",
        payload: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Queue a source for (re)processing.

        Args:
            source_type: file, url, text, post, page, product or course
            source_id: File path, URL or entity id
            action: Queue action recorded with the document
            title: Display title
            payload: Entity snapshot (structured content) or {"text": ...}

        Returns:
            Document id, now in status pending
        """
        file_path = str(source_id) if source_type == "file" else None
        document_id = self._get_or_create_document(
            source_type,
            str(source_id),
            title=title,
            file_path=file_path,
            mime_type=self.loader.detect_mime_type(source_type, source_id),
        )
        meta = {"queue_action": action}
        if payload:
            meta["payload"] = dict(payload)
        self._set_status(document_id, DocumentStatus.PENDING, **meta)

        self.bus.publish(DOCUMENT_QUEUED, {
            "document_id": document_id,
            "source_type": source_type,
            "source_id": str(source_id),
            "action": action,
        })
        logger.info(f"Queued document {document_id} ({source_type}:{source_id}, action={action})")
        return document_id

    def assign_document(self, chatbot_id: int, document_id: int) -> None:
        """Add a document to a chatbot's knowledge base."""
        with self.database.session() as session:
            exists = session.query(ContentRelationship.id).filter(
                ContentRelationship.source_type == "chatbot",
                ContentRelationship.source_id == chatbot_id,
                ContentRelationship.target_type == "document",
                ContentRelationship.target_id == document_id,
                ContentRelationship.relationship_type == "knowledge_base",
            ).first()
            if exists is None:
                session.add(ContentRelationship(
                    source_type="chatbot",
                    source_id=chatbot_id,
                    target_type="document",
                    target_id=document_id,
                    relationship_type="knowledge_base",
                ))
        self.retriever.invalidate_cache()

    def unassign_document(self, chatbot_id: int, document_id: int) -> None:
        with self.database.session() as session:
            session.query(ContentRelationship).filter(
                ContentRelationship.source_type == "chatbot",
                ContentRelationship.source_id == chatbot_id,
                ContentRelationship.target_type == "document",
                ContentRelationship.target_id == document_id,
            ).delete(synchronize_session=False)
        self.retriever.invalidate_cache()

    def _chunk_ids(self, document_id: int) -> List[str]:
        with self.database.session() as session:
            rows = session.query(Chunk.id).filter(Chunk.document_id == document_id).all()
        return [str(row[0]) for row in rows]

    @staticmethod
    def _derive_source_id(source: Any, source_type: str) -> str:
        if isinstance(source, Mapping):
            if source.get("id") is not None:
                return str(source["id"])
            source = repr(sorted(source.items()))
        if source_type == "text":
            return hashlib.md5(str(source).encode("utf-8")).hexdigest()
        return str(source)

    def process_document(
        self,
        source: Any,
        source_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProcessResult:
        """
        Load, chunk, embed and index one source.

        Args:
            source: File path, URL, raw text, entity mapping or entity id
            source_type: file, url, text, post, page, product or course
            metadata: document_id (when already queued), source_id, title

        Returns:
            ProcessResult

        Raises:
            IngestionError: Any step failed; the document is left in status error
        """
        metadata = dict(metadata or {})
        document_id = metadata.get("document_id")
        if document_id is None:
            source_id = metadata.get("source_id") or self._derive_source_id(source, source_type)
            document_id = self._get_or_create_document(
                source_type,
                source_id,
                title=metadata.get("title", ""),
                file_path=str(source) if source_type == "file" else None,
                mime_type=self.loader.detect_mime_type(source_type, source),
            )
            # Kept so restore_document and the queue can rebuild the text
            if source_type == "text" and isinstance(source, str):
                self.set_document_meta(document_id, "payload", {"text": source})

        self._set_status(document_id, DocumentStatus.PROCESSING)
        logger.info(f"Processing document {document_id} ({source_type})")

        try:
            old_chunk_ids = self._chunk_ids(document_id)
            is_update = bool(old_chunk_ids)
            if is_update:
                self.vector_db.delete_many(old_chunk_ids)
                with self.database.session() as session:
                    session.query(Chunk).filter(Chunk.document_id == document_id).delete(
                        synchronize_session=False
                    )
                logger.debug(f"Removed {len(old_chunk_ids)} previous chunks of document {document_id}")

            text = self.loader.load(source_type, source)
            document = self.get_document(document_id)
            pieces = self.chunker.split(text, metadata={
                "document_id": document_id,
                "source_type": source_type,
                "title": document["title"],
            })
            if not pieces:
                raise IngestionError("No text could be extracted", document_id=document_id)

            vectors = self.embeddings.generate_with_model([piece.text for piece in pieces])

            with self.database.session() as session:
                rows = []
                for piece in pieces:
                    row = Chunk(
                        document_id=document_id,
                        content=piece.text,
                        chunk_index=piece.chunk_index,
                        meta=piece.metadata,
                    )
                    session.add(row)
                    rows.append(row)
                session.flush()
                chunk_ids = [row.id for row in rows]

            records = []
            for chunk_id, piece, (vector, model) in zip(chunk_ids, pieces, vectors):
                records.append({
                    "id": str(chunk_id),
                    "values": vector,
                    "metadata": {
                        **piece.metadata,
                        "content": piece.text,
                        "source_id": document["source_id"],
                        "model": model,
                    },
                })
            written = self.vector_db.upsert_many(records)

            models = sorted({model for _, model in vectors})
            self._set_status(
                document_id,
                DocumentStatus.COMPLETED,
                chunk_count=len(pieces),
                embedding_count=written,
                embedding_models=models,
                processed_at=utcnow().isoformat(),
                error=None,
            )
        except Exception as e:
            logger.error(f"Failed to process document {document_id}: {e}")
            self._set_status(
                document_id,
                DocumentStatus.ERROR,
                error=str(e),
                error_time=utcnow().isoformat(),
            )
            self.bus.publish(DOCUMENT_FAILED, {"document_id": document_id, "error": str(e)})
            self.bus.publish(ERROR_OCCURRED, {"component": "ingestion", "document_id": document_id, "error": str(e)})
            raise IngestionError(f"Failed to process document {document_id}: {e}", document_id=document_id) from e

        self.retriever.invalidate_cache()
        result = ProcessResult(
            document_id=document_id,
            chunk_count=len(pieces),
            embedding_count=written,
            is_update=is_update,
            models=models,
        )
        self.bus.publish(DOCUMENT_PROCESSED, result.to_dict())
        if self.analytics is not None:
            self.analytics.record("document_processed", result.to_dict())
        logger.info(f"Document {document_id} processed: {len(pieces)} chunks, {written} vectors")
        return result

    def _queue_source(self, document: Dict[str, Any]) -> Any:
        payload = self.get_document_meta(document["id"], "payload")
        source_type = document["source_type"]
        if source_type == "file":
            return document["file_path"] or document["source_id"]
        if source_type == "text":
            return (payload or {}).get("text", "")
        if payload:
            return payload
        return document["source_id"]

    def process_queue(self) -> QueueRunResult:
        """
        Process up to batch_size pending documents, oldest first.

        Returns immediately with skipped=True when another run holds the lock.
        A failing document is marked error and the run continues.
        """
        if not self._queue_lock.acquire(blocking=False):
            logger.info("Queue run already in progress in this process, skipping")
            return QueueRunResult(skipped=True)

        try:
            token = uuid.uuid4().hex
            if not self.state.add(QUEUE_LOCK_KEY, token, ttl=self.settings.queue.lock_ttl):
                logger.info("Queue locked by another worker, skipping")
                return QueueRunResult(skipped=True)

            try:
                # Rate-limit windows and cache entries only expire lazily on read
                self.state.purge_expired()
                return self._run_queue()
            finally:
                if self.state.get(QUEUE_LOCK_KEY) == token:
                    self.state.delete(QUEUE_LOCK_KEY)
        finally:
            self._queue_lock.release()

    def _run_queue(self) -> QueueRunResult:
        with self.database.session() as session:
            ids = [
                row[0]
                for row in session.query(Document.id)
                .filter(Document.status == DocumentStatus.PENDING)
                .order_by(Document.created_at, Document.id)
                .limit(self.settings.queue.batch_size)
                .all()
            ]

        result = QueueRunResult()
        if not ids:
            logger.debug("Queue empty")
            return result

        logger.info(f"Processing {len(ids)} queued documents")
        for document_id in ids:
            document = self.get_document(document_id)
            if document is None:
                continue
            try:
                if self.get_document_meta(document_id, "queue_action") == "delete":
                    self.delete_document(document_id)
                else:
                    self.process_document(
                        self._queue_source(document),
                        document["source_type"],
                        {"document_id": document_id},
                    )
                result.processed += 1
                result.document_ids.append(document_id)
            except Exception as e:
                logger.error(f"Queue item {document_id} failed: {e}")
                result.failed += 1

        logger.info(f"Queue run finished: {result.processed} processed, {result.failed} failed")
        return result

    def delete_document(self, document_id: int) -> Dict[str, Any]:
        """
        Remove a document with its chunks and vectors.

        Deleting a missing document is a no-op.
        """
        chunk_ids = self._chunk_ids(document_id)
        if chunk_ids:
            self.vector_db.delete_many(chunk_ids)

        with self.database.session() as session:
            document = session.get(Document, document_id)
            if document is None:
                return {"document_id": document_id, "deleted": False, "chunks": 0}
            session.query(ContentRelationship).filter(
                ContentRelationship.target_type == "document",
                ContentRelationship.target_id == document_id,
            ).delete(synchronize_session=False)
            session.delete(document)

        self.retriever.invalidate_cache()
        self.bus.publish(DOCUMENT_DELETED, {"document_id": document_id, "chunks": len(chunk_ids)})
        logger.info(f"Deleted document {document_id} ({len(chunk_ids)} chunks)")
        return {"document_id": document_id, "deleted": True, "chunks": len(chunk_ids)}

    def trash_document(self, document_id: int) -> bool:
        """Hide a document from retrieval by dropping its vectors."""
        if self.get_document(document_id) is None:
            return False
        chunk_ids = self._chunk_ids(document_id)
        if chunk_ids:
            self.vector_db.delete_many(chunk_ids)
        self._set_status(document_id, DocumentStatus.TRASHED)
        self.retriever.invalidate_cache()
        logger.info(f"Trashed document {document_id}")
        return True

    def restore_document(self, document_id: int) -> bool:
        """Queue a trashed document for reprocessing."""
        if self.get_document(document_id) is None:
            return False
        self._set_status(document_id, DocumentStatus.PENDING, queue_action="update")
        logger.info(f"Restored document {document_id} to the queue")
        return True

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def _load_chatbot(self, bot_id: Optional[int]) -> Optional[Dict[str, Any]]:
        if bot_id is None:
            return None
        with self.database.session() as session:
            chatbot = session.get(Chatbot, bot_id)
            if chatbot is None:
                return None
            return {
                "id": chatbot.id,
                "name": chatbot.name,
                "active": chatbot.active,
                "model_config": chatbot.model_config or {},
                "messages": chatbot.messages or {},
            }

    def _chat_options(self, chatbot: Optional[Dict[str, Any]], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        chat = self.settings.chat
        options = {
            "model": None,
            "max_tokens": self.settings.llm.default_max_tokens,
            "temperature": self.settings.llm.default_temperature,
            "personality": chat.personality,
            "tone": chat.tone,
            "site_name": chat.site_name,
            "max_messages": chat.max_messages,
            "context_length": chat.context_length,
            "top_k": self.settings.retrieval.top_k,
            "min_relevance": self.settings.retrieval.min_relevance,
            "fallback_message": chat.fallback_message,
            "greeting_message": chat.greeting_message,
        }
        if chatbot:
            options.update({k: v for k, v in chatbot["model_config"].items() if v is not None})
            messages = chatbot["messages"]
            if messages.get("fallback"):
                options["fallback_message"] = messages["fallback"]
            if messages.get("greeting"):
                options["greeting_message"] = messages["greeting"]
        if overrides:
            options.update({k: v for k, v in overrides.items() if v is not None})
        return options

    def _banned_keyword(self, message: str) -> Optional[str]:
        for keyword in self.settings.chat.banned_keywords:
            if keyword and re.search(rf"\b{re.escape(keyword)}\b", message, re.IGNORECASE):
                return keyword
        return None

    def _is_greeting(self, message: str) -> bool:
        normalized = message.strip().lower().rstrip("!.?")
        return len(normalized) < 10 and normalized in self.settings.chat.greetings

    def build_messages(
        self,
        message: str,
        history: List[Dict[str, str]],
        context: str,
        options: Dict[str, Any],
    ) -> List[Dict[str, str]]:
        """System prompt with persona and context, then history, then the user turn."""
        system = SYSTEM_PROMPT_TEMPLATE
        for placeholder, value in (
            ("{chatbot_personality}", options["personality"]),
            ("{site_name}", options["site_name"]),
            ("{chat_tone}", options["tone"]),
            ("{context}", context),
        ):
            system = system.replace(placeholder, str(value))

        max_messages = int(options["max_messages"])
        if max_messages > 0:
            history = history[-max_messages:]

        return [{"role": "system", "content": system}] + list(history) + [{"role": "user", "content": message}]

    @staticmethod
    def _sources(chunks: List[Any]) -> List[Dict[str, Any]]:
        sources = []
        seen = set()
        for chunk in chunks:
            source = dict(chunk.source)
            key = (source.get("title"), source.get("url"), chunk.document_id)
            if key in seen:
                continue
            seen.add(key)
            source.update({"document_id": chunk.document_id, "score": round(chunk.score, 4)})
            sources.append(source)
        return sources

    def _early(self, response: str, conversation_id: str, **extra: Any) -> Dict[str, Any]:
        result = {"response": response, "sources": [], "context": [], "metadata": {"conversation_id": conversation_id}}
        result.update(extra)
        return result

    def _prepare_chat(
        self,
        message: str,
        conversation_id: str,
        bot_id: Optional[int],
        context: Optional[str],
        settings: Optional[Dict[str, Any]],
        user_id: Optional[str],
        guest_ip: Optional[str],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[PreparedChat]]:
        """Run every step before the LLM call; returns (early_result, None) or (None, prepared)."""
        started = time.time()

        keyword = self._banned_keyword(message)
        if keyword:
            logger.info(f"Blocked message containing banned keyword '{keyword}'")
            return self._early(BANNED_KEYWORD_MESSAGE % keyword, conversation_id), None

        chatbot = self._load_chatbot(bot_id)
        options = self._chat_options(chatbot, settings)
        conversation = self.conversations.get_or_create_conversation(
            conversation_id,
            chatbot_id=chatbot["id"] if chatbot else None,
            user_id=user_id,
            guest_ip=guest_ip,
        )
        identity = conversation.identity

        # The token check only reads, so a quota denial never spends a request slot
        quota = self.rate_limiter.check_token_quota(identity)
        if not quota.allowed:
            return quota.to_response(), None
        decision = self.rate_limiter.check_rate_limit(identity, "chat_message")
        if not decision.allowed:
            return decision.to_response(), None

        if self._is_greeting(message):
            return self._early(options["greeting_message"], conversation_id), None

        if context is None:
            chunks = self.retriever.retrieve(
                message,
                chatbot_id=bot_id,
                top_k=int(options["top_k"]),
                min_relevance=float(options["min_relevance"]),
            )
            context_text = self.retriever.format_context(chunks)
        else:
            chunks = []
            context_text = context

        if not context_text.strip():
            return self._early(options["fallback_message"], conversation_id), None

        context_text = context_text[:int(options["context_length"])]
        history = self.conversations.get_messages_for_llm(conversation.id, int(options["max_messages"]))
        messages = self.build_messages(message, history, context_text, options)

        return None, PreparedChat(
            conversation=conversation,
            identity=identity,
            messages=messages,
            chunks=chunks,
            options=options,
            started=started,
        )

    def _finish_chat(
        self,
        message: str,
        reply: str,
        model: str,
        tokens: int,
        prepared: PreparedChat,
        bot_id: Optional[int],
        conversation_id: str,
    ) -> Dict[str, Any]:
        """Persist the turn, account usage and build the response payload."""
        self.conversations.add_message(prepared.conversation.id, "user", message)
        self.conversations.add_message(prepared.conversation.id, "assistant", reply, {"model": model, "tokens": tokens})
        self.rate_limiter.record_token_usage(prepared.identity, tokens)

        processing_time = time.time() - prepared.started
        metadata = {
            "tokens": tokens,
            "model": model,
            "context_chunks": len(prepared.chunks),
            "conversation_id": conversation_id,
            "processing_time": processing_time,
        }
        if self.analytics is not None:
            self.analytics.record("response_generated", metadata, chatbot_id=bot_id)
        self.bus.publish(RESPONSE_GENERATED, {**metadata, "bot_id": bot_id})

        return {
            "response": reply,
            "sources": self._sources(prepared.chunks),
            "context": [chunk.to_dict() for chunk in prepared.chunks],
            "metadata": metadata,
        }

    def generate_response(
        self,
        message: str,
        conversation_id: str,
        bot_id: Optional[int] = None,
        context: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        guest_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Answer a chat message.

        Args:
            message: User message
            conversation_id: Client-facing conversation (session) id
            bot_id: Chatbot whose knowledge base and settings apply
            context: Pre-built context; skips retrieval when given
            settings: Per-request overrides (model, temperature, personality, ...)
            user_id: Authenticated user id
            guest_ip: Guest IP address, used only as a salted hash

        Returns:
            {response, sources, context, metadata}, a rate-limit payload, or
            {error: generation_failed, response} when a component failed
        """
        try:
            early, prepared = self._prepare_chat(
                message, conversation_id, bot_id, context, settings, user_id, guest_ip
            )
            if early is not None:
                return early

            completion = self.llm_client.complete(
                prepared.messages,
                model=prepared.options["model"],
                max_tokens=int(prepared.options["max_tokens"]),
                temperature=float(prepared.options["temperature"]),
            )
            tokens = completion.tokens_used or estimate_tokens(
                "".join(m["content"] for m in prepared.messages) + completion.content
            )
            result = self._finish_chat(
                message, completion.content, completion.model, tokens, prepared, bot_id, conversation_id
            )
            logger.info(
                f"Response generated for conversation {conversation_id} "
                f"({tokens} tokens, {len(prepared.chunks)} chunks, "
                f"{result['metadata']['processing_time']:.2f}s)"
            )
            return result

        except Exception as e:
            return self._generation_failed(conversation_id, e)

    def _generation_failed(self, conversation_id: str, error: Exception) -> Dict[str, Any]:
        logger.exception(f"Failed to generate response for conversation {conversation_id}: {error}")
        self.bus.publish(ERROR_OCCURRED, {"component": "chat", "conversation_id": conversation_id, "error": str(error)})
        return {
            "error": "generation_failed",
            "response": GENERIC_ERROR_MESSAGE,
            "sources": [],
            "context": [],
            "metadata": {"conversation_id": conversation_id},
        }

    def start_stream(
        self,
        message: str,
        conversation_id: str,
        bot_id: Optional[int] = None,
        settings: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        guest_ip: Optional[str] = None,
    ) -> str:
        """
        Begin a streamed answer.

        Early answers, rate-limit denials and preparation failures finish at
        once: the poll metadata holds the same payload generate_response
        would have returned.

        Returns:
            Handle for poll_stream
        """
        if self.streams is None:
            raise RuntimeError("Streaming is not enabled for this engine")

        try:
            early, prepared = self._prepare_chat(message, conversation_id, bot_id, None, settings, user_id, guest_ip)
        except Exception as e:
            early, prepared = self._generation_failed(conversation_id, e), None
        if early is not None:
            deltas = [early["response"]] if early.get("response") else []
            return self.streams.start(lambda: iter(deltas), lambda text: early)

        def produce():
            return self.llm_client.stream(
                prepared.messages,
                model=prepared.options["model"],
                max_tokens=int(prepared.options["max_tokens"]),
                temperature=float(prepared.options["temperature"]),
            )

        def complete(text: str) -> Dict[str, Any]:
            tokens = estimate_tokens("".join(m["content"] for m in prepared.messages) + text)
            model = prepared.options["model"] or self.llm_client.model_name
            return self._finish_chat(message, text, model, tokens, prepared, bot_id, conversation_id)

        return self.streams.start(produce, complete)

    def poll_stream(self, handle: str, offset: int = 0) -> Dict[str, Any]:
        """Deltas since offset; metadata holds the full result once done."""
        if self.streams is None:
            raise RuntimeError("Streaming is not enabled for this engine")
        return self.streams.poll(handle, offset)
