"""
Tests for Migration Module

Pinecone is the in-memory fake index behind httpx.MockTransport; the local
side is in-memory SQLite.

Run with: pytest tests/test_migration.py -v
"""

from unittest.mock import patch

import pytest

from config.settings import MigrationConfig
from botkit.database import Chunk, Document
from botkit.events import MIGRATION_COMPLETED, EventBus
from botkit.migration import (
    COMPLETED,
    FAILED,
    LOCK_KEY,
    NOT_STARTED,
    PROGRESS_KEY,
    MigrationManager,
)
from conftest import FakeProvider


def remote_records(count, per_document=10):
    records = []
    for i in range(1, count + 1):
        document_id = (i - 1) // per_document + 1
        records.append({
            "id": str(i),
            "values": [float(i), 1.0, 0.0],
            "metadata": {
                "document_id": document_id,
                "chunk_index": (i - 1) % per_document,
                "content": f"chunk {i}",
                "source_type": "text",
                "source_id": f"doc-{document_id}",
                "model": "fake-embed",
            },
        })
    return records


def local_records(texts, document_id, source_type="text"):
    return [
        {
            "id": f"{document_id}-{index}",
            "values": FakeProvider.vector_for(text),
            "metadata": {
                "document_id": document_id,
                "chunk_index": index,
                "content": text,
                "source_type": source_type,
                "source_id": f"{source_type}-{document_id}",
                "model": "fake-embed",
            },
        }
        for index, text in enumerate(texts)
    ]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def manager(database, local_db, pinecone_db, state, embeddings, cache, bus):
    return MigrationManager(
        database,
        local_db,
        pinecone_db,
        state,
        embeddings=embeddings,
        config=MigrationConfig(),
        bus=bus,
        cache=cache,
    )


class FailNthList:
    """fail_on hook that fails the n-th /vectors/list request."""

    def __init__(self, n):
        self.n = n
        self.seen = 0

    def __call__(self, request):
        if request.url.path != "/vectors/list":
            return False
        self.seen += 1
        return self.seen == self.n


class TestToLocal:
    """Tests for Pinecone → local migrations."""

    def test_interrupted_run_resumes(self, manager, pinecone_db, fake_index, local_db, state):
        """Test a run that fails mid-way continues from its cursor without duplicates."""
        pinecone_db.upsert_many(remote_records(100))
        fake_index.fail_on = FailNthList(2)

        first = manager.start_migration({"direction": "to_local", "batch_size": 40})

        assert first["status"] == FAILED
        assert first["success"] is False
        assert first["migrated_count"] == 40
        assert state.get(PROGRESS_KEY)["cursor"] == "40"
        assert local_db.count() == 40
        assert not state.has(LOCK_KEY)

        fake_index.fail_on = None
        second = manager.start_migration({"direction": "to_local", "batch_size": 40})

        assert second["status"] == COMPLETED
        assert second["success"] is True
        assert second["migration_id"] == first["migration_id"]
        assert second["migrated_count"] == 100
        assert second["processed"] == 100
        assert second["total"] == 100
        assert local_db.count() == 100
        assert state.get(PROGRESS_KEY)["resumed"] == 1
        assert fake_index.requests.count(("GET", "/vectors/list")) == 4

    def test_fresh_rerun_is_idempotent(self, manager, pinecone_db, local_db):
        pinecone_db.upsert_many(remote_records(30))

        manager.start_migration({"direction": "to_local", "batch_size": 20})
        again = manager.start_migration({"direction": "to_local", "batch_size": 20, "resume": False})

        assert again["migrated_count"] == 30
        assert local_db.count() == 30
        assert local_db.get_stats()["total_documents"] == 3

    def test_migrated_vectors_are_searchable(self, manager, pinecone_db, local_db):
        pinecone_db.upsert_many(remote_records(10))
        manager.start_migration({"direction": "to_local"})

        top = local_db.search([7.0, 1.0, 0.0], top_k=1)[0]
        assert top.metadata["content"] == "chunk 7"
        assert top.metadata["source_id"] == "doc-1"

    def test_selected_scope(self, manager, pinecone_db, local_db):
        pinecone_db.upsert_many(remote_records(30))

        result = manager.start_migration({"direction": "to_local", "scope": "selected", "document_ids": [2]})

        assert result["processed"] == 30
        assert result["migrated_count"] == 10
        assert {r.metadata["document_id"] for r in local_db.search([1.0, 1.0, 0.0], top_k=50)} == {2}


class TestToPinecone:
    """Tests for local → Pinecone migrations."""

    def test_all_chunks_uploaded(self, manager, local_db, fake_index, bus):
        completed = []
        bus.subscribe(MIGRATION_COMPLETED, completed.append)
        local_db.upsert_many(local_records([f"Shipping note {i}" for i in range(25)], document_id=1))

        result = manager.start_migration({"direction": "to_pinecone", "batch_size": 10})

        assert result["success"] is True
        assert result["migrated_count"] == 25
        assert len(fake_index.vectors) == 25
        assert fake_index.vectors["1"]["metadata"]["content"] == "Shipping note 0"
        assert completed[0]["migrated_count"] == 25

    def test_by_type_scope(self, manager, local_db, fake_index):
        local_db.upsert_many(local_records(["A post about the sky"], document_id=1, source_type="post"))
        local_db.upsert_many(local_records(["Some plain text"], document_id=2, source_type="text"))

        result = manager.start_migration({"direction": "to_pinecone", "scope": "by_type", "content_types": ["post"]})

        assert result["total"] == 1
        assert [v["metadata"]["source_type"] for v in fake_index.vectors.values()] == ["post"]

    def test_missing_embedding_reported(self, manager, local_db, database):
        """Test chunks without vectors become item errors, not a failed run."""
        local_db.upsert_many(local_records(["has a vector"], document_id=1))
        with database.session() as session:
            session.add(Chunk(document_id=1, chunk_index=1, content="no vector yet", meta={}))

        result = manager.start_migration({"direction": "to_pinecone"})

        assert result["status"] == COMPLETED
        assert result["success"] is False
        assert result["migrated_count"] == 1
        assert result["error_count"] == 1
        assert result["errors"][0]["message"] == "No local embedding for chunk"


class TestValidation:
    """Tests for option validation and guards."""

    @pytest.mark.parametrize("options,message", [
        ({"direction": "sideways"}, "Invalid direction"),
        ({"direction": "to_local", "scope": "everything"}, "Invalid scope"),
        ({"direction": "to_local", "scope": "by_type"}, "needs content_types"),
        ({"direction": "to_local", "scope": "by_date", "date_range": {"start": "2026-01-01"}}, "needs date_range"),
        ({"direction": "to_local", "scope": "by_date", "date_range": {"start": "soon", "end": "later"}}, "ISO-8601"),
        ({"direction": "to_local", "scope": "selected"}, "needs document_ids"),
    ])
    def test_invalid_options(self, manager, options, message):
        result = manager.start_migration(options)
        assert result["success"] is False
        assert result["status"] == NOT_STARTED
        assert message in result["message"]

    def test_requires_pinecone(self, database, local_db, state):
        manager = MigrationManager(database, local_db, None, state, config=MigrationConfig())
        result = manager.start_migration({"direction": "to_pinecone"})
        assert result["message"] == "Pinecone is not configured"

    def test_single_run_at_a_time(self, manager, state):
        state.add(LOCK_KEY, "someone-else", ttl=3600)
        result = manager.start_migration({"direction": "to_pinecone"})

        assert result["success"] is False
        assert result["message"] == "A migration is already in progress"
        assert state.get(LOCK_KEY) == "someone-else"


class TestStatusAndClear:
    def test_status(self, manager, pinecone_db, local_db):
        status = manager.get_migration_status()
        assert status["local_database"]["status"] == "empty"
        assert status["pinecone_database"]["status"] == "empty"
        assert status["progress"] == {"status": NOT_STARTED}

        pinecone_db.upsert_many(remote_records(5))
        manager.start_migration({"direction": "to_local"})
        status = manager.get_migration_status()

        assert status["local_database"]["chunk_count"] == 5
        assert status["pinecone_database"]["vector_count"] == 5
        assert status["migration_available"] is True
        assert status["migration_in_progress"] is False
        assert status["last_migration"]
        assert status["progress"]["status"] == COMPLETED

    def test_unreachable_pinecone(self, manager, fake_index):
        fake_index.fail_on = lambda request: True
        assert manager.get_migration_status()["pinecone_database"]["status"] == "unreachable"

    def test_content_types(self, manager, local_db):
        assert set(manager.get_available_content_types()) == {"post", "page"}

        local_db.upsert_many(local_records(["x"], document_id=1, source_type="product"))
        assert manager.get_available_content_types() == {"product": {"name": "Product", "count": 1}}

    def test_clear_requires_confirm(self, manager, local_db):
        local_db.upsert_many(local_records(["keep me"], document_id=1))
        assert manager.clear_database("local")["success"] is False
        assert local_db.count() == 1

    def test_clear_local(self, manager, local_db, database):
        local_db.upsert_many(local_records(["one", "two"], document_id=1))
        result = manager.clear_database("local", confirm=True)

        assert result == {"success": True, "message": "Cleared 2 vectors from local", "cleared": 2}
        with database.session() as session:
            assert session.query(Document).count() == 0

    def test_clear_pinecone(self, manager, pinecone_db, fake_index):
        pinecone_db.upsert_many(remote_records(3))
        assert manager.clear_database("pinecone", confirm=True)["cleared"] == 3
        assert fake_index.vectors == {}

    def test_clear_invalid_target(self, manager):
        assert manager.clear_database("mongo", confirm=True)["message"] == "Invalid database: mongo"


class TestReembed:
    """Tests for reembed_chunks."""

    def test_switches_model(self, manager, local_db):
        local_db.upsert_many(local_records(["The sky is blue.", "Refunds take five days.", "Ship fast."], document_id=1))

        result = manager.reembed_chunks(model="fake-embed-v2", batch_size=2)

        assert result["success"] is True
        assert result["migrated_count"] == 3
        assert local_db.get_stats()["models"] == {"fake-embed-v2": 3}
        top = local_db.search(FakeProvider.vector_for("sky"), top_k=1, filter={"model": "fake-embed-v2"})[0]
        assert top.metadata["content"] == "The sky is blue."

    def test_keep_previous(self, manager, local_db):
        local_db.upsert_many(local_records(["The sky is blue."], document_id=1))
        manager.reembed_chunks(model="fake-embed-v2", drop_previous=False)
        assert local_db.get_stats()["models"] == {"fake-embed": 1, "fake-embed-v2": 1}

    def test_resume_after_provider_outage(self, manager, local_db, fake_provider):
        local_db.upsert_many(local_records([f"Refund note {i}" for i in range(4)], document_id=1))
        fake_provider.embed_failures = 100

        failed = manager.reembed_chunks(model="fake-embed-v2", batch_size=2)
        assert failed["status"] == FAILED

        fake_provider.embed_failures = 0
        resumed = manager.reembed_chunks(model="fake-embed-v2", batch_size=2)
        assert resumed["status"] == COMPLETED
        assert resumed["migration_id"] == failed["migration_id"]
        assert resumed["migrated_count"] == 4

    def test_fallback_vectors_survive(self, manager, local_db, embeddings):
        """Test chunks embedded by a fallback model keep their new vectors."""
        local_db.upsert_many(local_records(["The sky is blue.", "Refunds take five days."], document_id=1))

        def served_by_backup(texts):
            return [(FakeProvider.vector_for(text), "backup-embed") for text in texts]

        with patch.object(embeddings, "generate_with_model", side_effect=served_by_backup):
            result = manager.reembed_chunks(batch_size=2)

        assert result["success"] is True
        assert local_db.get_stats()["models"] == {"backup-embed": 2}

    def test_needs_generator(self, database, local_db, state):
        manager = MigrationManager(database, local_db, None, state, config=MigrationConfig())
        assert manager.reembed_chunks()["success"] is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
