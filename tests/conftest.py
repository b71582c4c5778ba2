"""
Shared fixtures for the BotKit test suite.

- settings: test configuration (fake provider, in-memory stores, no sleeps)
- database: in-memory SQLite with every table created
- state / cache: in-memory state repository and cache manager
- fake_provider: deterministic chat + embedding provider
- fake_index / pinecone_db: Pinecone data-plane API served by httpx.MockTransport
- kit: fully wired BotKit on top of the fixtures above
"""

import hashlib
import json
import re
from typing import Any, Callable, Dict, List, Optional

import httpx
import numpy as np
import pytest

from config.settings import Settings
from botkit.agent import BotKit
from botkit.cache import UnifiedCacheManager
from botkit.database import Database
from botkit.embeddings import EmbeddingsGenerator
from botkit.llm_client import BaseLLMProvider, LLMClient, LLMResponse, ProviderRegistry
from botkit.state import InMemoryStateRepository
from botkit.vector_database import LocalVectorDatabase, PineconeVectorDatabase


class FakeProvider(BaseLLMProvider):
    """
    Deterministic provider for tests.

    Embeddings put known topic words on fixed axes and hash every other word
    into low-weight buckets, so related sentences score high and identical
    texts score exactly 1.0. Completions quote the last line of the prompt
    context unless a fixed reply is set.
    """

    name = "fake"
    MODEL_PREFIXES = ("fake-",)

    AXES = (
        ("sky",),
        ("blue", "green", "red", "color", "colour"),
        ("grass", "lawn"),
        ("refund", "refunds", "return", "returns"),
        ("ship", "shipping", "delivery"),
    )
    HASH_BUCKETS = 40
    TAIL_WEIGHT = 0.05

    def __init__(self, reply: Optional[str] = None, embedding_model: str = "fake-embed", api_key: str = "test-key"):
        super().__init__(api_key=api_key, model="fake-chat", embedding_model=embedding_model)
        self.reply = reply
        self.complete_calls: List[List[Dict[str, str]]] = []
        self.embed_calls: List[List[str]] = []
        self.embed_failures = 0
        self.complete_error: Optional[Exception] = None

    @classmethod
    def vector_for(cls, text: str) -> List[float]:
        vector = [0.0] * (len(cls.AXES) + cls.HASH_BUCKETS)
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            for axis, words in enumerate(cls.AXES):
                if token in words:
                    vector[axis] += 1.0
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % cls.HASH_BUCKETS
            vector[len(cls.AXES) + bucket] += cls.TAIL_WEIGHT
        if not any(vector):
            vector[-1] = 1.0
        return vector

    def complete(self, messages, model=None, max_tokens=None, temperature=None) -> LLMResponse:
        self.complete_calls.append(messages)
        if self.complete_error is not None:
            raise self.complete_error
        if self.reply is not None:
            content = self.reply
        else:
            system = messages[0]["content"] if messages and messages[0]["role"] == "system" else ""
            context = system.split("Context:\n", 1)[-1].strip()
            content = f"According to our docs: {context.splitlines()[-1] if context else 'nothing found'}"
        return LLMResponse(
            content=content,
            model=model or self.default_model,
            usage={"prompt_tokens": 40, "completion_tokens": 10},
            finish_reason="stop",
            provider=self.name,
        )

    def stream(self, messages, model=None, max_tokens=None, temperature=None):
        content = self.complete(messages, model, max_tokens, temperature).content
        for word in content.split(" "):
            yield word + " "

    def embed(self, texts, model=None) -> List[List[float]]:
        self.embed_calls.append(list(texts))
        if self.embed_failures > 0:
            self.embed_failures -= 1
            raise RuntimeError("embedding service unavailable")
        return [self.vector_for(text) for text in texts]


class FakePineconeIndex:
    """
    In-memory stand-in for a Pinecone index's REST API.

    `fail_on(request) -> bool` makes matching requests return HTTP 503.
    """

    def __init__(self):
        self.vectors: Dict[str, Dict[str, Any]] = {}
        self.requests: List[tuple] = []
        self.fail_on: Optional[Callable[[httpx.Request], bool]] = None

    @staticmethod
    def _matches(metadata: Dict[str, Any], conditions: Optional[Dict[str, Any]]) -> bool:
        for key, condition in (conditions or {}).items():
            value = metadata.get(key)
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$eq" in condition and value != condition["$eq"]:
                return False
        return True

    @staticmethod
    def _sort_key(vector_id: str):
        return (0, int(vector_id), "") if vector_id.isdigit() else (1, 0, vector_id)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if self.fail_on is not None and self.fail_on(request):
            return httpx.Response(503, json={"message": "service unavailable"})

        body = json.loads(request.content) if request.content else {}

        if path == "/vectors/upsert":
            for vector in body["vectors"]:
                self.vectors[vector["id"]] = {
                    "id": vector["id"],
                    "values": vector["values"],
                    "metadata": vector.get("metadata", {}),
                }
            return httpx.Response(200, json={"upsertedCount": len(body["vectors"])})

        if path == "/query":
            query = np.array(body["vector"], dtype=float)
            matches = []
            for vector_id, item in self.vectors.items():
                if not self._matches(item["metadata"], body.get("filter")):
                    continue
                values = np.array(item["values"], dtype=float)
                norm = np.linalg.norm(query) * np.linalg.norm(values)
                score = float(np.dot(query, values) / norm) if norm else 0.0
                matches.append({"id": vector_id, "score": score, "metadata": item["metadata"]})
            matches.sort(key=lambda m: -m["score"])
            return httpx.Response(200, json={"matches": matches[:body["topK"]]})

        if path == "/vectors/delete":
            if body.get("deleteAll"):
                self.vectors.clear()
            for vector_id in body.get("ids", []):
                self.vectors.pop(vector_id, None)
            return httpx.Response(200, json={})

        if path == "/vectors/fetch":
            ids = request.url.params.get_list("ids")
            return httpx.Response(200, json={
                "vectors": {vector_id: self.vectors[vector_id] for vector_id in ids if vector_id in self.vectors}
            })

        if path == "/vectors/list":
            limit = int(request.url.params.get("limit", 100))
            offset = int(request.url.params.get("paginationToken") or 0)
            ids = sorted(self.vectors, key=self._sort_key)
            page = ids[offset:offset + limit]
            payload = {"vectors": [{"id": vector_id} for vector_id in page]}
            if offset + limit < len(ids):
                payload["pagination"] = {"next": str(offset + limit)}
            return httpx.Response(200, json=payload)

        if path == "/describe_index_stats":
            dimension = len(next(iter(self.vectors.values()))["values"]) if self.vectors else 0
            return httpx.Response(200, json={
                "namespaces": {"": {"vectorCount": len(self.vectors)}} if self.vectors else {},
                "dimension": dimension,
                "totalVectorCount": len(self.vectors),
            })

        return httpx.Response(404, json={"message": f"unknown path {path}"})


@pytest.fixture
def settings(tmp_path):
    """Settings wired to the fake provider and in-memory stores."""
    test_settings = Settings()
    test_settings.database.url = "sqlite://"
    test_settings.state.backend = "memory"
    test_settings.llm.provider = "fake"
    test_settings.llm.fallback_order = ["fake"]
    test_settings.llm.max_retries = 1
    test_settings.llm.retry_base_delay = 0
    test_settings.embedding.provider = "fake"
    test_settings.embedding.model = "fake-embed"
    test_settings.embedding.retry_base_delay = 0
    test_settings.vector_store.backend = "local"
    test_settings.vector_store.pinecone_api_key = None
    test_settings.vector_store.pinecone_host = None
    test_settings.loader.allowed_dirs = [str(tmp_path)]
    test_settings.chat.site_name = "Test Shop"
    return test_settings


@pytest.fixture
def database(settings):
    db = Database("sqlite://", config=settings.database)
    db.create_all()
    return db


@pytest.fixture
def state():
    return InMemoryStateRepository()


@pytest.fixture
def cache(state, settings):
    return UnifiedCacheManager(state, settings.cache)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    fake_registry = ProviderRegistry()
    fake_registry.register(fake_provider)
    return fake_registry


@pytest.fixture
def llm_client(settings, registry, cache):
    return LLMClient(settings.llm, registry=registry, cache=cache)


@pytest.fixture
def embeddings(llm_client, settings, cache):
    return EmbeddingsGenerator(llm_client, settings.embedding, cache=cache, sleep=lambda seconds: None)


@pytest.fixture
def local_db(database):
    return LocalVectorDatabase(database, default_model="fake-embed")


@pytest.fixture
def fake_index():
    return FakePineconeIndex()


@pytest.fixture
def pinecone_db(fake_index, settings):
    client = httpx.Client(transport=httpx.MockTransport(fake_index.handle))
    return PineconeVectorDatabase(
        api_key="test-key",
        host="test-index.svc.pinecone.io",
        namespace="",
        config=settings.vector_store,
        http_client=client,
    )


@pytest.fixture
def kit(settings, database, state, registry):
    botkit = BotKit(settings=settings, database=database, state=state, registry=registry)
    yield botkit
    botkit.close()
