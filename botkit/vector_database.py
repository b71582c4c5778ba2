"""
Vector Database Module

Stores chunk embeddings and answers similarity queries.
Supports two backends:
- Local: float32 blobs in the embeddings table, exact cosine search with numpy
- Pinecone: serverless index over its REST API (httpx)

Design Rationale:
- Abstract interface so the retriever and migration code never care which
  backend is live
- Vector ids are the local chunk ids, so both backends address the same item
  and upserts are idempotent
- Local search is brute force: exact, deterministic, and fast enough for
  knowledge bases of a few hundred thousand chunks

Record format (upsert_many):
    {"id": "42", "values": [...], "metadata": {"document_id": 3, "chunk_index": 0,
     "content": "...", "model": "text-embedding-3-small", ...}}
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import numpy as np
from sqlalchemy import func

from config.settings import get_settings, Settings, VectorStoreConfig
from botkit.database import Chunk, Document, DocumentStatus, Embedding
from botkit.exceptions import VectorStoreError

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """
    Represents a single search result.

    Attributes:
        id: Vector id (the chunk id)
        score: Cosine similarity (higher is better)
        metadata: Chunk metadata (document_id, chunk_index, content, ...)
        rank: Position in results (1-indexed)
    """
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "score": self.score, "metadata": self.metadata, "rank": self.rank}


def pack_vector(vector: Iterable[float]) -> bytes:
    """Serialise a vector as a float32 blob."""
    return np.asarray(list(vector), dtype=np.float32).tobytes()


def unpack_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def _document_ids(value: Any) -> List[int]:
    if isinstance(value, (list, tuple, set)):
        return [int(v) for v in value]
    return [int(value)]


class BaseVectorDatabase(ABC):
    """
    Abstract base class for vector databases.

    All backends must implement upsert_many, search, delete_many, fetch,
    list_ids, count, clear and get_stats.
    """

    backend: str = ""

    def upsert(self, vector_id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        """Insert or replace a single vector."""
        self.upsert_many([{"id": str(vector_id), "values": vector, "metadata": metadata or {}}])

    @abstractmethod
    def upsert_many(self, records: List[Dict[str, Any]]) -> int:
        """
        Insert or replace vectors.

        Args:
            records: {"id", "values", "metadata"} dictionaries

        Returns:
            Number of vectors written
        """
        pass

    @abstractmethod
    def search(
        self,
        vector: List[float],
        top_k: int = 5,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchResult]:
        """
        Find the most similar vectors.

        Args:
            vector: Query vector
            top_k: Maximum number of results
            filter: {"document_id": id | [ids], "model": name}

        Returns:
            Results sorted by score, highest first
        """
        pass

    def delete(self, vector_id: str) -> bool:
        """Remove one vector. Deleting a missing id is not an error."""
        return self.delete_many([str(vector_id)]) > 0

    @abstractmethod
    def delete_many(self, vector_ids: List[str]) -> int:
        pass

    @abstractmethod
    def fetch(self, vector_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Return {id: {"values": [...], "metadata": {...}}} for existing ids."""
        pass

    @abstractmethod
    def list_ids(self, cursor: Optional[str] = None, limit: int = 100) -> Tuple[List[str], Optional[str]]:
        """Return a page of ids and the cursor of the next page (None at the end)."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def clear(self) -> int:
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        pass

    def is_configured(self) -> bool:
        return True


class LocalVectorDatabase(BaseVectorDatabase):
    """
    Vectors stored in the relational embeddings table.

    Example:
        store = LocalVectorDatabase(database, default_model="text-embedding-3-small")
        store.upsert("12", vector, {"model": "text-embedding-3-small"})
        results = store.search(query_vector, top_k=5, filter={"document_id": [3, 4]})
    """

    backend = "local"

    def __init__(self, database, default_model: Optional[str] = None):
        """
        Initialize the local store.

        Args:
            database: Database instance
            default_model: Model recorded when metadata carries none
        """
        self.database = database
        self.default_model = default_model or get_settings().embedding.model
        logger.info(f"LocalVectorDatabase initialized (default model: {self.default_model})")

    def _resolve_chunk(self, session, vector_id: str, metadata: Dict[str, Any]) -> Chunk:
        """
        Find the chunk a vector belongs to, creating it from metadata if needed.

        Chunks are matched by (document_id, chunk_index) when the metadata has
        both, otherwise by id.
        """
        chunk = None
        document_id = metadata.get("document_id")
        chunk_index = metadata.get("chunk_index")

        if document_id not in (None, "") and chunk_index not in (None, ""):
            document_id = int(document_id)
            chunk_index = int(chunk_index)
            chunk = (
                session.query(Chunk)
                .filter(Chunk.document_id == document_id, Chunk.chunk_index == chunk_index)
                .one_or_none()
            )
            if chunk is None:
                if session.get(Document, document_id) is None:
                    session.add(Document(
                        id=document_id,
                        title=metadata.get("title") or "",
                        source_type=metadata.get("source_type") or metadata.get("type") or "text",
                        source_id=metadata.get("source_id") or f"imported-{document_id}",
                        status=DocumentStatus.COMPLETED,
                    ))
                    session.flush()
                chunk = Chunk(
                    document_id=document_id,
                    chunk_index=chunk_index,
                    content=metadata.get("content") or "",
                    meta=self._chunk_meta(metadata),
                )
                session.add(chunk)
                session.flush()
            elif metadata.get("content") and not chunk.content:
                chunk.content = metadata["content"]
            return chunk

        if str(vector_id).isdigit():
            chunk = session.get(Chunk, int(vector_id))
        if chunk is None:
            raise VectorStoreError(
                f"Cannot place vector {vector_id}: no chunk with that id and no "
                f"document_id/chunk_index in metadata"
            )
        return chunk

    @staticmethod
    def _chunk_meta(metadata: Dict[str, Any]) -> Dict[str, Any]:
        skip = {"content", "document_id", "chunk_index", "model"}
        return {k: v for k, v in metadata.items() if k not in skip}

    def upsert_many(self, records: List[Dict[str, Any]]) -> int:
        if not records:
            return 0

        written = 0
        with self.database.session() as session:
            for record in records:
                metadata = dict(record.get("metadata") or {})
                chunk = self._resolve_chunk(session, str(record["id"]), metadata)
                model = metadata.get("model") or self.default_model
                blob = pack_vector(record["values"])

                embedding = (
                    session.query(Embedding)
                    .filter(Embedding.chunk_id == chunk.id, Embedding.model == model)
                    .one_or_none()
                )
                if embedding is None:
                    session.add(Embedding(chunk_id=chunk.id, vector=blob, model=model))
                else:
                    embedding.vector = blob
                written += 1

        logger.debug(f"Upserted {written} vectors into local store")
        return written

    def search(self, vector, top_k=5, filter=None) -> List[SearchResult]:
        """
        Exact cosine search.

        Vectors whose dimension differs from the query (left over from another
        embedding model) are skipped.
        """
        if top_k <= 0:
            return []

        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        filter = filter or {}

        with self.database.session() as session:
            rows = session.query(Embedding, Chunk, Document).join(
                Chunk, Embedding.chunk_id == Chunk.id
            ).join(Document, Chunk.document_id == Document.id)

            if filter.get("document_id") is not None:
                rows = rows.filter(Chunk.document_id.in_(_document_ids(filter["document_id"])))
            if filter.get("model"):
                rows = rows.filter(Embedding.model == filter["model"])
            rows = rows.order_by(Embedding.id).all()

            candidates = []
            matrix = []
            for embedding, chunk, document in rows:
                stored = unpack_vector(embedding.vector)
                if stored.shape != query.shape:
                    continue
                matrix.append(stored)
                candidates.append((embedding, chunk, document))

            if not candidates:
                return []

            matrix = np.vstack(matrix)
            norms = np.linalg.norm(matrix, axis=1) * query_norm
            dots = matrix @ query
            scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

            # Stable sort keeps insertion order (embedding id) for equal scores
            order = np.argsort(-scores, kind="stable")[:top_k]

            results = []
            for rank, index in enumerate(order, 1):
                embedding, chunk, document = candidates[index]
                results.append(SearchResult(
                    id=str(chunk.id),
                    score=float(scores[index]),
                    metadata=self._result_metadata(embedding, chunk, document),
                    rank=rank,
                ))

        logger.debug(f"Local search returned {len(results)} results from {len(candidates)} candidates")
        return results

    @staticmethod
    def _result_metadata(embedding: Embedding, chunk: Chunk, document: Document) -> Dict[str, Any]:
        metadata = dict(chunk.meta or {})
        metadata.update({
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "content": chunk.content,
            "title": document.title,
            "source_type": document.source_type,
            "source_id": document.source_id,
            "model": embedding.model,
            "last_modified": document.updated_at.isoformat() if document.updated_at else None,
        })
        if document.source_type == "url" and document.source_id:
            metadata.setdefault("url", document.source_id)
        return metadata

    def delete_many(self, vector_ids: List[str]) -> int:
        chunk_ids = [int(v) for v in vector_ids if str(v).isdigit()]
        if not chunk_ids:
            return 0
        with self.database.session() as session:
            removed = (
                session.query(Embedding)
                .filter(Embedding.chunk_id.in_(chunk_ids))
                .delete(synchronize_session=False)
            )
        logger.debug(f"Deleted {removed} local vectors for {len(chunk_ids)} ids")
        return removed

    def fetch(self, vector_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        chunk_ids = [int(v) for v in vector_ids if str(v).isdigit()]
        if not chunk_ids:
            return {}

        found: Dict[str, Dict[str, Any]] = {}
        with self.database.session() as session:
            rows = (
                session.query(Embedding, Chunk, Document)
                .join(Chunk, Embedding.chunk_id == Chunk.id)
                .join(Document, Chunk.document_id == Document.id)
                .filter(Embedding.chunk_id.in_(chunk_ids))
                .order_by(Embedding.id)
                .all()
            )
            for embedding, chunk, document in rows:
                key = str(chunk.id)
                # Prefer the vector of the default model when several exist
                if key in found and embedding.model != self.default_model:
                    continue
                found[key] = {
                    "values": unpack_vector(embedding.vector).tolist(),
                    "metadata": self._result_metadata(embedding, chunk, document),
                }
        return found

    def list_ids(self, cursor=None, limit=100) -> Tuple[List[str], Optional[str]]:
        with self.database.session() as session:
            query = session.query(Embedding.chunk_id).distinct()
            if cursor:
                query = query.filter(Embedding.chunk_id > int(cursor))
            ids = [row[0] for row in query.order_by(Embedding.chunk_id).limit(limit + 1).all()]

        has_more = len(ids) > limit
        ids = ids[:limit]
        next_cursor = str(ids[-1]) if has_more and ids else None
        return [str(i) for i in ids], next_cursor

    def count(self) -> int:
        with self.database.session() as session:
            return session.query(func.count(Embedding.id)).scalar() or 0

    def clear(self) -> int:
        with self.database.session() as session:
            removed = session.query(Embedding).delete(synchronize_session=False)
        logger.info(f"Cleared {removed} local vectors")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self.database.session() as session:
            total_embeddings = session.query(func.count(Embedding.id)).scalar() or 0
            total_chunks = session.query(func.count(Chunk.id)).scalar() or 0
            total_documents = session.query(func.count(Document.id)).scalar() or 0
            average_chunk_size = session.query(func.avg(func.length(Chunk.content))).scalar() or 0
            models = dict(
                session.query(Embedding.model, func.count(Embedding.id)).group_by(Embedding.model).all()
            )

        return {
            "backend": self.backend,
            "total_embeddings": total_embeddings,
            "total_chunks": total_chunks,
            "total_documents": total_documents,
            "average_chunk_size": round(float(average_chunk_size), 1),
            "models": models,
        }


class PineconeVectorDatabase(BaseVectorDatabase):
    """
    Pinecone index accessed over its data-plane REST API.

    Metadata is reduced to a whitelist of string values before upload;
    chunk content is truncated, so callers hydrate full text from the
    chunks table.
    """

    backend = "pinecone"

    METADATA_FIELDS = (
        "content", "document_id", "chunk_index", "title", "source_type", "source_id",
        "source", "url", "mime_type", "extension", "last_modified", "total_chunks",
        "has_previous", "has_next", "has_overlap_prev", "has_overlap_next",
        "size", "original_size", "model", "migration_source", "migration_timestamp",
    )
    MAX_METADATA_LENGTH = 1000
    DELETE_BATCH = 1000
    _CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

    def __init__(
        self,
        api_key: Optional[str] = None,
        host: Optional[str] = None,
        namespace: Optional[str] = None,
        config: Optional[VectorStoreConfig] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the Pinecone client.

        Args:
            api_key: Pinecone API key (default from config)
            host: Index host, e.g. my-index-abc123.svc.us-east-1.pinecone.io
            namespace: Index namespace ("" is the default namespace)
            config: Optional VectorStoreConfig
            http_client: Optional httpx.Client (tests inject a mock transport)
        """
        self.config = config or get_settings().vector_store
        self.api_key = api_key or self.config.pinecone_api_key
        self.host = host or self.config.pinecone_host
        self.namespace = self.config.pinecone_namespace if namespace is None else namespace
        self._http_client = http_client

        logger.info(f"PineconeVectorDatabase initialized: host={self.host}, namespace='{self.namespace}'")

    def is_configured(self) -> bool:
        return bool(self.api_key and self.host)

    def _base_url(self) -> str:
        host = (self.host or "").rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return host

    def _client(self) -> httpx.Client:
        if not self.is_configured():
            raise VectorStoreError("Pinecone is not configured. Set PINECONE_API_KEY and PINECONE_HOST.")
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self.config.pinecone_timeout)
        return self._http_client

    def _request(self, method: str, path: str, allow_404: bool = False, **kwargs) -> Dict[str, Any]:
        client = self._client()
        headers = {"Api-Key": self.api_key, "Content-Type": "application/json", "Accept": "application/json"}
        try:
            response = client.request(
                method,
                f"{self._base_url()}{path}",
                headers=headers,
                timeout=self.config.pinecone_timeout,
                **kwargs,
            )
        except httpx.HTTPError as e:
            logger.error(f"Pinecone {path} request failed: {e}")
            raise VectorStoreError(f"Pinecone request to {path} failed: {e}") from e

        if response.status_code == 404 and allow_404:
            return {}
        if response.status_code >= 400:
            logger.error(f"Pinecone {path} returned HTTP {response.status_code}: {response.text[:200]}")
            raise VectorStoreError(
                f"Pinecone {path} failed with HTTP {response.status_code}: {response.text[:200]}"
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise VectorStoreError(f"Pinecone {path} returned invalid JSON") from e

    @classmethod
    def clean_metadata(cls, metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
        """
        Reduce metadata to whitelisted, non-empty string values.

        Lists and dicts are JSON-encoded; long values are cut to 1000
        characters plus "..."; control characters are removed.
        """
        cleaned = {}
        for key, value in (metadata or {}).items():
            if value is None or key not in cls.METADATA_FIELDS:
                continue
            if isinstance(value, (list, dict)):
                value = json.dumps(value)
            value = str(value)
            if len(value) > cls.MAX_METADATA_LENGTH:
                value = value[:cls.MAX_METADATA_LENGTH] + "..."
            value = cls._CONTROL_CHARS.sub("", value)
            if value.strip():
                cleaned[key] = value
        return cleaned

    @staticmethod
    def _restore_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        restored = dict(metadata or {})
        for key in ("document_id", "chunk_index", "total_chunks"):
            value = restored.get(key)
            if isinstance(value, str) and value.isdigit():
                restored[key] = int(value)
            elif isinstance(value, float) and value.is_integer():
                restored[key] = int(value)
        return restored

    def upsert_many(self, records: List[Dict[str, Any]]) -> int:
        if not records:
            return 0

        vectors = []
        for record in records:
            if record.get("id") in (None, ""):
                raise VectorStoreError("Vector is missing required 'id' field")
            if not record.get("values"):
                raise VectorStoreError(f"Vector {record['id']} has no values")
            vectors.append({
                "id": str(record["id"]),
                "values": [float(v) for v in record["values"]],
                "metadata": self.clean_metadata(record.get("metadata")),
            })

        written = 0
        batch_size = max(1, self.config.pinecone_upsert_batch)
        for start in range(0, len(vectors), batch_size):
            batch = vectors[start:start + batch_size]
            data = self._request("POST", "/vectors/upsert", json={"vectors": batch, "namespace": self.namespace})
            written += int(data.get("upsertedCount", len(batch)))

        logger.debug(f"Upserted {written} vectors into Pinecone")
        return written

    def _build_filter(self, filter: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not filter:
            return None
        conditions = {}
        if filter.get("document_id") is not None:
            conditions["document_id"] = {"$in": [str(i) for i in _document_ids(filter["document_id"])]}
        if filter.get("model"):
            conditions["model"] = {"$eq": filter["model"]}
        return conditions or None

    def search(self, vector, top_k=5, filter=None) -> List[SearchResult]:
        if top_k <= 0:
            return []

        body = {
            "vector": [float(v) for v in vector],
            "topK": int(top_k),
            "includeMetadata": True,
            "includeValues": False,
            "namespace": self.namespace,
        }
        pinecone_filter = self._build_filter(filter)
        if pinecone_filter:
            body["filter"] = pinecone_filter

        data = self._request("POST", "/query", json=body)
        matches = sorted(
            enumerate(data.get("matches", [])),
            key=lambda item: (-float(item[1].get("score", 0.0)), item[0]),
        )

        results = [
            SearchResult(
                id=str(match["id"]),
                score=float(match.get("score", 0.0)),
                metadata=self._restore_metadata(match.get("metadata")),
                rank=rank,
            )
            for rank, (_, match) in enumerate(matches[:top_k], 1)
        ]
        logger.debug(f"Pinecone search returned {len(results)} results")
        return results

    def delete_many(self, vector_ids: List[str]) -> int:
        ids = [str(v) for v in vector_ids]
        for start in range(0, len(ids), self.DELETE_BATCH):
            self._request(
                "POST",
                "/vectors/delete",
                allow_404=True,
                json={"ids": ids[start:start + self.DELETE_BATCH], "namespace": self.namespace},
            )
        return len(ids)

    def fetch(self, vector_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        if not vector_ids:
            return {}
        params = [("ids", str(v)) for v in vector_ids]
        params.append(("namespace", self.namespace))
        data = self._request("GET", "/vectors/fetch", params=params)
        return {
            vector_id: {
                "values": item.get("values", []),
                "metadata": self._restore_metadata(item.get("metadata")),
            }
            for vector_id, item in (data.get("vectors") or {}).items()
        }

    def list_ids(self, cursor=None, limit=100) -> Tuple[List[str], Optional[str]]:
        params = {"limit": int(limit), "namespace": self.namespace}
        if cursor:
            params["paginationToken"] = cursor
        data = self._request("GET", "/vectors/list", params=params)
        ids = [item["id"] for item in data.get("vectors", [])]
        next_cursor = (data.get("pagination") or {}).get("next")
        return ids, next_cursor or None

    def describe_index_stats(self) -> Dict[str, Any]:
        return self._request("POST", "/describe_index_stats", json={})

    def count(self) -> int:
        stats = self.describe_index_stats()
        namespaces = stats.get("namespaces") or {}
        if self.namespace in namespaces:
            return int(namespaces[self.namespace].get("vectorCount", 0))
        if self.namespace:
            return 0
        return int(stats.get("totalVectorCount", 0))

    def clear(self) -> int:
        removed = self.count()
        self._request(
            "POST",
            "/vectors/delete",
            allow_404=True,
            json={"deleteAll": True, "namespace": self.namespace},
        )
        logger.info(f"Cleared {removed} Pinecone vectors from namespace '{self.namespace}'")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        stats = self.describe_index_stats()
        return {
            "backend": self.backend,
            "total_embeddings": self.count(),
            "total_vectors": int(stats.get("totalVectorCount", 0)),
            "dimension": stats.get("dimension"),
            "namespaces": stats.get("namespaces", {}),
        }

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None


def create_vector_database(
    settings: Optional[Settings] = None,
    database=None,
    http_client: Optional[httpx.Client] = None,
) -> BaseVectorDatabase:
    """
    Build the vector database selected by VECTOR_STORE_BACKEND.

    Args:
        settings: Settings instance (default: get_settings())
        database: Database instance (required for the local backend)
        http_client: Optional httpx.Client for Pinecone

    Returns:
        LocalVectorDatabase or PineconeVectorDatabase
    """
    settings = settings or get_settings()
    backend = settings.vector_store.backend

    if backend == "local":
        if database is None:
            raise ValueError("The local vector backend needs a Database instance")
        return LocalVectorDatabase(database, default_model=settings.embedding.model)
    elif backend == "pinecone":
        return PineconeVectorDatabase(config=settings.vector_store, http_client=http_client)
    else:
        raise ValueError(f"Unknown vector store backend: {backend}")
