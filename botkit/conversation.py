"""
Conversation Store Module

Persists conversations and their messages, and serves trimmed history for
multi-turn prompts.

Design Rationale:
- Conversations are addressed by the client-facing session id; the numeric
  primary key stays internal
- Messages are append-only and strictly ordered by created_at; two messages
  stamped in the same microsecond are pushed apart by one microsecond
- Guests are identified by sha256(salt + ip), the raw address is never stored
- Thread-safe writes so concurrent requests on one conversation keep order
- Message search is a portable lower(content) LIKE match scored in Python, so
  it needs no full-text index; any write drops the cached search results

Usage:
    store = ConversationStore(database)
    conversation = store.get_or_create_conversation("sess-42", chatbot_id=1, guest_ip="203.0.113.9")
    store.add_message(conversation.id, "user", "Do you ship abroad?")
    history = store.get_history(conversation.id, max_messages=10)
    hits = store.search_messages("ship abroad", chatbot_id=1)
"""

import hashlib
import logging
import math
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_

from config.settings import get_settings, ChatConfig
from botkit.cache import make_cache_key
from botkit.database import Conversation, Message, utcnow

# Configure logging
logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")

SEARCH_CACHE_GROUP = "search"
MIN_TERM_LENGTH = 2
# Relevance gains at most 10% for a message from today, halving every 30 days
RECENCY_WEIGHT = 0.1
RECENCY_HALF_LIFE_DAYS = 30


def hash_guest_ip(ip_address: str, salt: str) -> str:
    """Stable, non-reversible guest identifier."""
    return hashlib.sha256(f"{salt}{ip_address}".encode("utf-8")).hexdigest()


def extract_search_terms(query: str) -> List[str]:
    """
    Split a search query into lowercase terms.

    Quoted phrases stay whole; other words shorter than MIN_TERM_LENGTH are
    dropped, as are leading +-~<>* operators. Order is kept, duplicates removed.
    """
    terms = [phrase.strip().lower() for phrase in re.findall(r'"([^"]+)"', query)]
    for word in re.sub(r'"[^"]+"', " ", query).split():
        word = re.sub(r"^[+\-~<>*]+", "", word).lower()
        if len(word) >= MIN_TERM_LENGTH:
            terms.append(word)
    return list(dict.fromkeys(term for term in terms if term))


def like_pattern(term: str) -> str:
    """Substring LIKE pattern with % and _ matched literally (escape char '/')."""
    escaped = term.replace("/", "//").replace("%", "/%").replace("_", "/_")
    return f"%{escaped}%"


def recency_factor(created_at: datetime, now: datetime) -> float:
    """1.0 for a message from now, 0.5 after RECENCY_HALF_LIFE_DAYS."""
    days_old = max(0.0, (now - created_at).total_seconds() / 86400)
    return math.exp(-math.log(2) / RECENCY_HALF_LIFE_DAYS * days_old)


@dataclass
class ChatMessage:
    """
    A stored message.

    Attributes:
        role: "user" or "assistant"
        content: Message text
        created_at: When the message was stored
        metadata: model, tokens, feedback
    """
    role: str
    content: str
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "metadata": self.metadata,
        }

    def to_llm(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationInfo:
    """Snapshot of a conversation row."""
    id: int
    session_id: str
    chatbot_id: Optional[int] = None
    user_id: Optional[str] = None
    guest_ip_hash: Optional[str] = None
    is_favorite: bool = False
    is_archived: bool = False

    @property
    def identity(self) -> str:
        """Key used for per-user rate limits and quotas."""
        if self.user_id:
            return f"user:{self.user_id}"
        if self.guest_ip_hash:
            return f"guest:{self.guest_ip_hash}"
        return f"session:{self.session_id}"

    @classmethod
    def from_row(cls, row: Conversation) -> "ConversationInfo":
        return cls(
            id=row.id,
            session_id=row.session_id,
            chatbot_id=row.chatbot_id,
            user_id=row.user_id,
            guest_ip_hash=row.guest_ip_hash,
            is_favorite=row.is_favorite,
            is_archived=row.is_archived,
        )


class ConversationStore:
    """
    Relational conversation history.

    Example:
        store = ConversationStore(database)
        info = store.get_or_create_conversation("abc", chatbot_id=2, user_id="17")
        store.add_message(info.id, "assistant", "Hi!", {"model": "gpt-4o-mini", "tokens": 12})
    """

    def __init__(self, database, config: Optional[ChatConfig] = None, cache=None):
        """
        Initialize the store.

        Args:
            database: Database instance
            config: Optional ChatConfig (history length, guest hash salt)
            cache: Optional UnifiedCacheManager for search results
        """
        self.database = database
        self.config = config or get_settings().chat
        self.cache = cache
        self._lock = threading.Lock()

    def get_conversation(self, session_id: str) -> Optional[ConversationInfo]:
        with self.database.session() as session:
            row = (
                session.query(Conversation)
                .filter(Conversation.session_id == str(session_id))
                .order_by(Conversation.id)
                .first()
            )
            return ConversationInfo.from_row(row) if row else None

    def get_or_create_conversation(
        self,
        session_id: str,
        chatbot_id: Optional[int] = None,
        user_id: Optional[str] = None,
        guest_ip: Optional[str] = None,
    ) -> ConversationInfo:
        """
        Find the conversation for a session id, creating it on first use.

        Args:
            session_id: Client-facing conversation id
            chatbot_id: Owning chatbot
            user_id: Authenticated user id, if any
            guest_ip: Guest IP address (stored only as a salted hash)
        """
        with self._lock, self.database.session() as session:
            row = (
                session.query(Conversation)
                .filter(Conversation.session_id == str(session_id))
                .order_by(Conversation.id)
                .first()
            )
            if row is None:
                row = Conversation(
                    session_id=str(session_id),
                    chatbot_id=chatbot_id,
                    user_id=str(user_id) if user_id is not None else None,
                    guest_ip_hash=hash_guest_ip(guest_ip, self.config.guest_hash_salt) if guest_ip else None,
                )
                session.add(row)
                session.flush()
                logger.info(f"Created conversation {row.id} for session {session_id}")
            else:
                if row.chatbot_id is None and chatbot_id is not None:
                    row.chatbot_id = chatbot_id
                if row.user_id is None and user_id is not None:
                    row.user_id = str(user_id)
            return ConversationInfo.from_row(row)

    def add_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Append a message.

        Returns:
            The message id
        """
        if role not in ROLES:
            raise ValueError(f"Invalid message role: {role}")

        with self._lock, self.database.session() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise ValueError(f"Conversation not found: {conversation_id}")

            last = (
                session.query(Message.created_at)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc())
                .first()
            )
            created_at = utcnow()
            if last is not None and created_at <= last[0]:
                created_at = last[0] + timedelta(microseconds=1)

            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                meta=metadata or {},
                created_at=created_at,
            )
            session.add(message)
            conversation.updated_at = created_at
            session.flush()
            message_id = message.id
        self._invalidate_search()
        return message_id

    def get_history(self, conversation_id: int, max_messages: Optional[int] = None) -> List[ChatMessage]:
        """
        Most recent messages in chronological order.

        Args:
            conversation_id: Conversation primary key
            max_messages: Keep only the last N (default from config; 0 keeps all)
        """
        max_messages = self.config.max_messages if max_messages is None else max_messages

        with self.database.session() as session:
            query = (
                session.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
            )
            if max_messages > 0:
                query = query.limit(max_messages)
            rows = query.all()

        return [
            ChatMessage(role=row.role, content=row.content, created_at=row.created_at, metadata=row.meta or {})
            for row in reversed(rows)
        ]

    def get_messages_for_llm(self, conversation_id: int, max_messages: Optional[int] = None) -> List[Dict[str, str]]:
        return [message.to_llm() for message in self.get_history(conversation_id, max_messages)]

    def set_favorite(self, conversation_id: int, favorite: bool = True) -> None:
        with self.database.session() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is not None:
                conversation.is_favorite = favorite

    def archive(self, conversation_id: int, archived: bool = True) -> None:
        with self.database.session() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is not None:
                conversation.is_archived = archived

    def delete_conversation(self, conversation_id: int) -> bool:
        """Remove a conversation with its messages."""
        with self.database.session() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                return False
            session.delete(conversation)
        self._invalidate_search()
        logger.info(f"Deleted conversation {conversation_id}")
        return True

    def list_conversations(self, user_id: Optional[str] = None, include_archived: bool = False) -> List[ConversationInfo]:
        with self.database.session() as session:
            query = session.query(Conversation)
            if user_id is not None:
                query = query.filter(Conversation.user_id == str(user_id))
            if not include_archived:
                query = query.filter(Conversation.is_archived.is_(False))
            rows = query.order_by(Conversation.updated_at.desc()).all()
            return [ConversationInfo.from_row(row) for row in rows]

    def search_messages(self, query: str, chatbot_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """
        Find stored messages containing any of the query terms.

        Matching is case-insensitive substring search. A message scores one
        point per term occurrence, then gains up to RECENCY_WEIGHT for being
        recent. Results are cached in the search group until the next write.

        Args:
            query: Words and/or "quoted phrases"
            chatbot_id: Only search this chatbot's conversations
            limit: Maximum results

        Returns:
            Dicts with message_id, conversation_id, chatbot_id, role, content,
            created_at and relevance_score, best first
        """
        terms = extract_search_terms(query or "")
        if not terms or limit <= 0:
            return []

        cache_key = make_cache_key("messages_", terms, chatbot_id, limit)
        if self.cache:
            cached = self.cache.get(cache_key, group=SEARCH_CACHE_GROUP)
            if cached is not None:
                return cached

        lowered = func.lower(Message.content)
        with self.database.session() as session:
            q = (
                session.query(Message, Conversation.chatbot_id)
                .join(Conversation, Message.conversation_id == Conversation.id)
                .filter(or_(*[lowered.like(like_pattern(term), escape="/") for term in terms]))
            )
            if chatbot_id is not None:
                q = q.filter(Conversation.chatbot_id == chatbot_id)
            rows = [
                (message.id, message.conversation_id, bot_id, message.role, message.content, message.created_at)
                for message, bot_id in q.all()
            ]

        now = utcnow()
        scored = []
        for message_id, conversation_id, bot_id, role, content, created_at in rows:
            text = content.lower()
            matches = sum(text.count(term) for term in terms)
            relevance = matches * (1 + RECENCY_WEIGHT * recency_factor(created_at, now))
            scored.append((relevance, created_at, message_id, {
                "message_id": message_id,
                "conversation_id": conversation_id,
                "chatbot_id": bot_id,
                "role": role,
                "content": content,
                "created_at": created_at.isoformat(),
                "relevance_score": round(relevance, 4),
            }))

        scored.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)
        results = [item[3] for item in scored[:limit]]
        logger.debug(f"Message search for {terms} matched {len(rows)} messages")

        if self.cache:
            self.cache.set(cache_key, results, group=SEARCH_CACHE_GROUP)
        return results

    def _invalidate_search(self) -> None:
        if self.cache:
            self.cache.invalidate_group(SEARCH_CACHE_GROUP)
