"""
Relational Schema Module

SQLAlchemy models for every persisted entity of the chatbot core, plus the
Database wrapper that owns the engine and hands out transactional sessions.

Design Rationale:
- One schema shared by ingestion, chat, rate limiting and migration
- Foreign keys with ON DELETE CASCADE so deleting a Document removes its
  Chunks and Embeddings in the same transaction
- JSON columns for open-ended metadata (chunk metadata, model_config, events)
- SQLite by default; any SQLAlchemy URL works
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import DatabaseConfig, get_settings

# Configure logging
logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite has no timezone support)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DocumentStatus:
    """Document lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    TRASHED = "trashed"

    ALL = (PENDING, PROCESSING, COMPLETED, ERROR, TRASHED)


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("source_type", "source_id", name="uq_document_source"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False, default="")
    source_type = Column(String(32), nullable=False, index=True)
    source_id = Column(String(255), nullable=True)
    file_path = Column(Text, nullable=True)
    mime_type = Column(String(128), nullable=True)
    status = Column(String(32), nullable=False, default=DocumentStatus.PENDING, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    chunks = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chunk.chunk_index",
    )
    metadata_entries = relationship(
        "DocumentMetadata",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"Document(id={self.id}, source_type='{self.source_type}', status='{self.status}')"


class DocumentMetadata(Base):
    __tablename__ = "document_metadata"
    __table_args__ = (UniqueConstraint("document_id", "meta_key", name="uq_document_meta_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    meta_key = Column(String(191), nullable=False)
    meta_value = Column(JSON, nullable=True)

    document = relationship("Document", back_populates="metadata_entries")


class Chunk(Base):
    __tablename__ = "chunks"
    __table_args__ = (UniqueConstraint("document_id", "chunk_index", name="uq_chunk_position"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    meta = Column("metadata", JSON, nullable=True)

    document = relationship("Document", back_populates="chunks")
    embeddings = relationship(
        "Embedding",
        back_populates="chunk",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Embedding(Base):
    __tablename__ = "embeddings"
    __table_args__ = (UniqueConstraint("chunk_id", "model", name="uq_embedding_chunk_model"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    chunk_id = Column(Integer, ForeignKey("chunks.id", ondelete="CASCADE"), nullable=False, index=True)
    vector = Column(LargeBinary, nullable=False)
    model = Column(String(128), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    chunk = relationship("Chunk", back_populates="embeddings")


class Chatbot(Base):
    __tablename__ = "chatbots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    style = Column(JSON, nullable=True)
    messages = Column(JSON, nullable=True)
    model_config = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chatbot_id = Column(Integer, ForeignKey("chatbots.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(128), nullable=False, index=True)
    guest_ip_hash = Column(String(64), nullable=True, index=True)
    is_favorite = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.created_at",
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")


class ContentRelationship(Base):
    __tablename__ = "content_relationships"
    __table_args__ = (
        UniqueConstraint(
            "source_type", "source_id", "target_type", "target_id", "relationship_type",
            name="uq_content_relationship",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_type = Column(String(32), nullable=False)
    source_id = Column(Integer, nullable=False)
    target_type = Column(String(32), nullable=False)
    target_id = Column(Integer, nullable=False)
    relationship_type = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AnalyticsEvent(Base):
    __tablename__ = "analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chatbot_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class StateEntry(Base):
    __tablename__ = "state_entries"

    key = Column(String(191), primary_key=True)
    value = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    # Changes on every write; compare_and_set matches on it
    version = Column(String(32), nullable=True)


REQUIRED_TABLES = (
    "documents",
    "document_metadata",
    "chunks",
    "embeddings",
    "conversations",
    "messages",
    "content_relationships",
    "chatbots",
)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Example:
        db = Database("sqlite:///./data/botkit.db")
        db.create_all()
        with db.session() as session:
            session.add(Document(title="FAQ", source_type="file", source_id="faq.pdf"))
    """

    def __init__(self, url: str = None, echo: bool = None, config: DatabaseConfig = None):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy URL (default from config)
            echo: Log SQL statements
            config: Optional DatabaseConfig instance
        """
        self.config = config or get_settings().database
        self.url = url or self.config.url
        echo = self.config.echo if echo is None else echo

        engine_kwargs = {"echo": echo, "future": True}
        if self.url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
            else:
                self._ensure_sqlite_dir()

        self.engine = create_engine(self.url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    def _ensure_sqlite_dir(self) -> None:
        from pathlib import Path

        path = self.url.split("///", 1)[-1]
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)

    def create_all(self) -> None:
        """Create every table that does not exist yet."""
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def missing_tables(self) -> List[str]:
        """Return required tables absent from the live schema."""
        existing = set(inspect(self.engine).get_table_names())
        return [name for name in REQUIRED_TABLES if name not in existing]

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
