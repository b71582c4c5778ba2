"""
Tests for BotKit Agent Module

Tests for BotKit - the public API.

Run with: pytest tests/test_agent.py -v
"""

from unittest.mock import patch

import httpx
import pytest

import botkit
from botkit.agent import BotKit, create_botkit
from botkit.state import InMemoryStateRepository
from botkit.vector_database import LocalVectorDatabase, PineconeVectorDatabase

SKY_TEXT = "The sky is blue. Grass is green."


class TestBotKitWiring:
    """Tests for construction from settings."""

    def test_local_backend(self, kit):
        assert isinstance(kit.vector_db, LocalVectorDatabase)
        assert kit.remote_db is None
        assert kit.engine.vector_db is kit.vector_db
        assert kit.retriever.vector_db is kit.vector_db

    def test_pinecone_backend(self, settings, database, state, registry):
        settings.vector_store.backend = "pinecone"
        settings.vector_store.pinecone_api_key = "key"
        settings.vector_store.pinecone_host = "idx.svc.pinecone.io"

        kit = BotKit(settings=settings, database=database, state=state, registry=registry)
        try:
            assert isinstance(kit.vector_db, PineconeVectorDatabase)
            assert kit.migrations.remote_db is kit.vector_db
        finally:
            kit.close()

    def test_pinecone_backend_needs_credentials(self, settings, database, state, registry):
        settings.vector_store.backend = "pinecone"
        with pytest.raises(ValueError, match="PINECONE_API_KEY"):
            BotKit(settings=settings, database=database, state=state, registry=registry)

    @patch('botkit.agent.create_state_repository')
    def test_state_from_settings(self, mock_create_state, settings, database, registry):
        """Test the state backend is chosen by settings when none is injected."""
        mock_create_state.return_value = InMemoryStateRepository()

        kit = BotKit(settings=settings, database=database, registry=registry)
        kit.close()

        mock_create_state.assert_called_once_with(database, settings.state)
        assert kit.state is mock_create_state.return_value

    def test_create_botkit(self, settings, database, state, registry):
        kit = create_botkit(settings, database=database, state=state, registry=registry)
        try:
            assert isinstance(kit, BotKit)
            assert kit.settings is settings
        finally:
            kit.close()

    def test_package_exports(self):
        assert botkit.BotKit is BotKit
        assert "MigrationManager" in botkit.__all__


class TestBotKitOperations:
    """Tests for the public operations."""

    def test_chat_returns_contract(self, kit):
        """Test chat returns the response contract."""
        document = kit.ingest_text(SKY_TEXT, title="Sky facts")
        bot_id = kit.create_chatbot("Helper", messages={"greeting": "Welcome!"})
        kit.assign_document(bot_id, document["document_id"])

        result = kit.chat("what color is the sky", "session-1", bot_id=bot_id, guest_ip="198.51.100.4")

        assert "response" in result
        assert "sources" in result
        assert "context" in result
        assert "metadata" in result
        assert result["sources"][0]["title"] == "Sky facts"
        assert kit.chat("hello", "session-1", bot_id=bot_id)["response"] == "Welcome!"

    def test_search(self, kit):
        kit.ingest_text(SKY_TEXT, title="Sky facts")

        results = kit.search("what color is the sky", top_k=1)
        assert len(results) == 1
        assert results[0]["content"] == SKY_TEXT
        assert results[0]["source"]["title"] == "Sky facts"

    def test_get_history(self, kit):
        assert kit.get_history("nobody") == []
        kit.ingest_text(SKY_TEXT)
        kit.chat("what color is the sky", "session-2")
        assert [m["role"] for m in kit.get_history("session-2")] == ["user", "assistant"]

    def test_ingest_failure_is_a_result(self, kit, tmp_path):
        result = kit.ingest_file(str(tmp_path / "missing.pdf"))

        assert result["success"] is False
        assert result["document_id"] is not None
        assert "Document not found" in result["error"]

    def test_ingest_url(self, settings, database, state, registry):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>Refunds take five days.</p>")

        kit = BotKit(
            settings=settings,
            database=database,
            state=state,
            registry=registry,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        try:
            result = kit.ingest_url("https://shop.test/refunds")
            assert result["success"] is True
            assert kit.engine.get_document(result["document_id"])["title"] == "https://shop.test/refunds"
            assert kit.search("refunds")[0]["content"] == "Refunds take five days."
        finally:
            kit.close()

    def test_migration_without_pinecone(self, kit):
        assert kit.start_migration({"direction": "to_pinecone"})["message"] == "Pinecone is not configured"

    def test_health_check(self, kit):
        report = kit.health_check()
        assert report["status"] == "healthy"

    def test_get_stats(self, kit):
        kit.ingest_text(SKY_TEXT)
        kit.chat("what color is the sky", "session-3")

        stats = kit.get_stats()
        assert stats["knowledge_base"]["total_chunks"] == 1
        assert stats["embedding"] == {"provider": "fake", "model": "fake-embed"}
        assert stats["llm"]["configured"] == ["fake"]
        assert stats["analytics"]["total_responses"] == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
