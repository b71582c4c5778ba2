"""
Tests for Conversation Store Module

Run with: pytest tests/test_conversation.py -v
"""

import threading
from datetime import timedelta

import pytest

from config.settings import ChatConfig
from botkit.conversation import (
    ChatMessage,
    ConversationInfo,
    ConversationStore,
    extract_search_terms,
    hash_guest_ip,
)
from botkit.database import Chatbot, Message


@pytest.fixture
def store(database):
    return ConversationStore(database, ChatConfig(max_messages=4, guest_hash_salt="pepper"))


@pytest.fixture
def chatbot_id(database):
    with database.session() as session:
        bot = Chatbot(name="Support")
        session.add(bot)
        session.flush()
        return bot.id


class TestChatMessage:
    """Tests for the ChatMessage dataclass."""

    def test_to_llm(self):
        message = ChatMessage(role="user", content="Do you ship abroad?")
        assert message.to_llm() == {"role": "user", "content": "Do you ship abroad?"}

    def test_to_dict(self):
        message = ChatMessage(role="assistant", content="Yes.", metadata={"tokens": 12})
        assert message.to_dict() == {
            "role": "assistant",
            "content": "Yes.",
            "created_at": None,
            "metadata": {"tokens": 12},
        }


class TestIdentity:
    def test_hash_guest_ip(self):
        hashed = hash_guest_ip("203.0.113.9", "pepper")
        assert len(hashed) == 64
        assert hashed == hash_guest_ip("203.0.113.9", "pepper")
        assert hashed != hash_guest_ip("203.0.113.9", "salt")
        assert "203.0.113.9" not in hashed

    @pytest.mark.parametrize("info,expected", [
        (ConversationInfo(id=1, session_id="s", user_id="17", guest_ip_hash="abc"), "user:17"),
        (ConversationInfo(id=1, session_id="s", guest_ip_hash="abc"), "guest:abc"),
        (ConversationInfo(id=1, session_id="s"), "session:s"),
    ])
    def test_identity(self, info, expected):
        assert info.identity == expected


class TestConversationStore:
    """Tests for ConversationStore."""

    def test_get_or_create(self, store, chatbot_id):
        """Test the same session id maps to one conversation."""
        first = store.get_or_create_conversation("sess-1", chatbot_id=chatbot_id, user_id=17)
        again = store.get_or_create_conversation("sess-1")

        assert first.id == again.id
        assert again.chatbot_id == chatbot_id
        assert again.user_id == "17"
        assert store.get_conversation("sess-1").id == first.id
        assert store.get_conversation("unknown") is None

    def test_guest_ip_is_hashed(self, store):
        info = store.get_or_create_conversation("sess-g", guest_ip="203.0.113.9")
        assert info.guest_ip_hash == hash_guest_ip("203.0.113.9", "pepper")
        assert info.identity.startswith("guest:")

    def test_late_user_binding(self, store):
        store.get_or_create_conversation("sess-2")
        info = store.get_or_create_conversation("sess-2", user_id="42")
        assert info.user_id == "42"

    def test_history_order(self, store):
        """Test messages come back oldest first in insertion order."""
        info = store.get_or_create_conversation("sess-3")
        store.add_message(info.id, "user", "Hi")
        store.add_message(info.id, "assistant", "Hello! How can I help?")
        store.add_message(info.id, "user", "What is your refund policy?")

        history = store.get_history(info.id)
        assert [m.content for m in history] == ["Hi", "Hello! How can I help?", "What is your refund policy?"]
        assert all(a.created_at < b.created_at for a, b in zip(history, history[1:]))

    def test_history_trimmed_to_last_messages(self, store):
        info = store.get_or_create_conversation("sess-4")
        for i in range(6):
            store.add_message(info.id, "user" if i % 2 == 0 else "assistant", f"message {i}")

        assert [m.content for m in store.get_history(info.id)] == [f"message {i}" for i in range(2, 6)]
        assert len(store.get_history(info.id, max_messages=0)) == 6
        assert store.get_messages_for_llm(info.id, max_messages=1) == [{"role": "assistant", "content": "message 5"}]

    def test_message_metadata(self, store):
        info = store.get_or_create_conversation("sess-5")
        store.add_message(info.id, "assistant", "Answer", {"model": "gpt-4o-mini", "tokens": 50})
        assert store.get_history(info.id)[0].metadata == {"model": "gpt-4o-mini", "tokens": 50}

    def test_invalid_role(self, store):
        info = store.get_or_create_conversation("sess-6")
        with pytest.raises(ValueError, match="Invalid message role"):
            store.add_message(info.id, "system", "You are a bot")

    def test_unknown_conversation(self, store):
        with pytest.raises(ValueError, match="Conversation not found"):
            store.add_message(999, "user", "hello?")

    def test_concurrent_writes_keep_strict_order(self, store, database):
        info = store.get_or_create_conversation("sess-7")

        def writer(n):
            for i in range(5):
                store.add_message(info.id, "user", f"w{n}-{i}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        with database.session() as session:
            stamps = [
                row.created_at
                for row in session.query(Message).filter(Message.conversation_id == info.id).order_by(Message.id)
            ]
        assert len(stamps) == 20
        assert len(set(stamps)) == 20
        assert stamps == sorted(stamps)

    def test_favorite_archive_and_listing(self, store):
        kept = store.get_or_create_conversation("sess-8", user_id="9")
        old = store.get_or_create_conversation("sess-9", user_id="9")
        store.get_or_create_conversation("sess-10", user_id="other")

        store.set_favorite(kept.id)
        store.archive(old.id)

        listed = store.list_conversations(user_id="9")
        assert [c.session_id for c in listed] == ["sess-8"]
        assert listed[0].is_favorite is True
        assert len(store.list_conversations(user_id="9", include_archived=True)) == 2

    def test_delete_conversation(self, store, database):
        info = store.get_or_create_conversation("sess-11")
        store.add_message(info.id, "user", "bye")

        assert store.delete_conversation(info.id) is True
        assert store.delete_conversation(info.id) is False
        with database.session() as session:
            assert session.query(Message).filter(Message.conversation_id == info.id).count() == 0


@pytest.fixture
def searchable(database, cache):
    return ConversationStore(database, ChatConfig(guest_hash_salt="pepper"), cache=cache)


def backdate(database, message_id, days):
    with database.session() as session:
        message = session.get(Message, message_id)
        message.created_at = message.created_at - timedelta(days=days)


class TestMessageSearch:
    """Tests for ConversationStore.search_messages."""

    def test_extract_search_terms(self):
        assert extract_search_terms('Ship +Abroad "next day" a ship') == ["next day", "ship", "abroad"]
        assert extract_search_terms("a") == []

    def test_ranked_by_matches_then_recency(self, searchable, database, chatbot_id):
        """Test more term hits rank first and recency breaks equal hits."""
        recent = searchable.get_or_create_conversation("recent", chatbot_id=chatbot_id)
        older = searchable.get_or_create_conversation("older", chatbot_id=chatbot_id)
        plain = searchable.add_message(recent.id, "user", "Do you ship abroad?")
        many = searchable.add_message(recent.id, "assistant", "We ship abroad and ship fast.")
        searchable.add_message(recent.id, "user", "Refunds take five days.")
        stale = searchable.add_message(older.id, "user", "Do you ship abroad?")
        backdate(database, stale, 90)

        results = searchable.search_messages("SHIP abroad")

        assert [r["message_id"] for r in results] == [many, plain, stale]
        assert results[0]["relevance_score"] > results[1]["relevance_score"] > results[2]["relevance_score"]
        assert results[1]["chatbot_id"] == chatbot_id
        assert results[1]["role"] == "user"
        assert results[1]["relevance_score"] == pytest.approx(2.2, abs=0.01)

    def test_limit_and_chatbot_filter(self, searchable, database, chatbot_id):
        with database.session() as session:
            other = Chatbot(name="Sales")
            session.add(other)
            session.flush()
            other_id = other.id
        mine = searchable.get_or_create_conversation("mine", chatbot_id=chatbot_id)
        theirs = searchable.get_or_create_conversation("theirs", chatbot_id=other_id)
        for i in range(3):
            searchable.add_message(mine.id, "user", f"refund question {i}")
        searchable.add_message(theirs.id, "user", "refund for a sale")

        assert {r["chatbot_id"] for r in searchable.search_messages("refund", chatbot_id=other_id)} == {other_id}
        assert len(searchable.search_messages("refund")) == 4
        assert len(searchable.search_messages("refund", limit=2)) == 2

    def test_results_cached_until_next_write(self, searchable, database, cache):
        """Test repeated searches hit the cache and a new message drops it."""
        info = searchable.get_or_create_conversation("cached")
        searchable.add_message(info.id, "user", "Where is my parcel?")
        first = searchable.search_messages("parcel")

        with database.session() as session:
            session.query(Message).delete()
        hits = cache.get_stats()["hits"]

        assert searchable.search_messages("parcel") == first
        assert cache.get_stats()["hits"] == hits + 1

        searchable.add_message(info.id, "user", "Any news?")
        assert searchable.search_messages("parcel") == []

    def test_wildcards_matched_literally(self, searchable):
        info = searchable.get_or_create_conversation("wild")
        searchable.add_message(info.id, "user", "Is there a 100% refund?")
        searchable.add_message(info.id, "user", "I ordered 1000 mugs")

        assert [r["content"] for r in searchable.search_messages("0%")] == ["Is there a 100% refund?"]

    def test_blank_query(self, searchable):
        assert searchable.search_messages("  ") == []
        assert searchable.search_messages("x") == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
