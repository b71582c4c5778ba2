"""
Tests for Structured Content Module

Run with: pytest tests/test_content.py -v
"""

import pytest

from botkit.content import (
    CONTENT_BUILDERS,
    ContentEvent,
    ContentSyncHandler,
    build_course_content,
    build_post_content,
    build_product_content,
    content_hash,
    html_to_text,
)
from botkit.database import DocumentStatus

POST = {
    "id": 12,
    "title": "Shipping FAQ",
    "content": "<h2>Delivery</h2><p>Shipping is free on orders over $50.</p><script>track()</script>",
    "excerpt": "All about <b>delivery</b>.",
    "categories": [{"name": "Help"}, "Orders"],
    "tags": ["shipping"],
}


class TestHtmlToText:
    def test_blocks_become_paragraphs(self):
        text = html_to_text("<div><p>One</p><p>Two<br>lines</p></div><style>p{}</style>")
        assert text == "One\n\nTwo\nlines"

    def test_plain_text_untouched(self):
        assert html_to_text("  just text  ") == "just text"
        assert html_to_text("") == ""

    def test_entities_decoded(self):
        assert html_to_text("<p>Fish &amp; chips</p>") == "Fish & chips"


class TestBuilders:
    """Tests for the per-type text builders."""

    def test_post(self):
        text = build_post_content(POST)

        assert text.startswith("Title: Shipping FAQ")
        assert "Delivery\n\nShipping is free on orders over $50." in text
        assert "Summary: All about delivery." in text
        assert "Categories: Help, Orders" in text
        assert "Tags: shipping" in text
        assert "track()" not in text

    def test_empty_post(self):
        assert build_post_content({"title": "  ", "content": ""}) == ""

    def test_product(self):
        """Test product fields, attributes and variations are all rendered."""
        text = build_product_content({
            "name": "Rain Jacket",
            "sku": "RJ-01",
            "price": "89.00",
            "description": "<p>Waterproof shell.</p>",
            "short_description": "Light and packable.",
            "categories": ["Outerwear"],
            "attributes": {"Size": ["S", "M", "L"], "Color": "Blue"},
            "variations": [{"attributes": {"size": "S", "color": "Blue"}, "price": "89.00"}],
        })

        assert text.startswith("Product Name: Rain Jacket\n\nSKU: RJ-01\n\nPrice: 89.00")
        assert "Description: Waterproof shell." in text
        assert "Short Description: Light and packable." in text
        assert "Attributes:\n- Size: S, M, L\n- Color: Blue" in text
        assert "Variations:\n- S / Blue - 89.00" in text

    def test_product_attribute_list(self):
        text = build_product_content({
            "name": "Mug",
            "attributes": [{"name": "Material", "options": ["Ceramic"]}],
        })
        assert "- Material: Ceramic" in text

    def test_course(self):
        text = build_course_content({
            "title": "Intro to Baking",
            "content": "<p>Learn bread.</p>",
            "level": "Beginner",
            "lessons": [{
                "title": "Flour",
                "content": "Types of flour.",
                "topics": [{"title": "Gluten", "content": "Protein network."}],
                "quizzes": [{"title": "Flour quiz"}],
            }],
        })

        assert text.split("\n\n")[:4] == [
            "Course: Intro to Baking",
            "Description: Learn bread.",
            "Level: Beginner",
            "Points: 0",
        ]
        assert "Lesson: Flour\n\nTypes of flour.\n\nTopic: Gluten\n\nProtein network.\n\nQuiz: Flour quiz" in text

    def test_builder_registry(self):
        assert CONTENT_BUILDERS["page"] is build_post_content
        assert set(CONTENT_BUILDERS) == {"post", "page", "product", "course"}

    def test_content_hash_ignores_key_order(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})
        assert content_hash({"a": 1}) != content_hash({"a": 2})


class TestContentEvent:
    def test_from_dict(self):
        event = ContentEvent.from_dict({"source_type": "post", "source_id": 12, "payload": POST})
        assert event.source_id == "12"
        assert event.action == "update"
        assert event.payload["title"] == "Shipping FAQ"


class TestContentSyncHandler:
    """Tests for ContentSyncHandler against a wired BotKit."""

    @pytest.fixture
    def handler(self, kit):
        return ContentSyncHandler(kit.engine)

    def test_update_enqueues_and_processes(self, kit, handler):
        document_id = handler.handle(ContentEvent("post", "12", payload=POST))

        assert kit.engine.get_document(document_id)["status"] == DocumentStatus.PENDING
        assert kit.engine.get_document(document_id)["title"] == "Shipping FAQ"
        kit.process_queue()
        assert kit.engine.get_document(document_id)["status"] == DocumentStatus.COMPLETED
        assert "Shipping is free" in kit.search("shipping delivery")[0]["content"]

    def test_unchanged_update_skipped(self, kit, handler):
        """Test an identical snapshot is not queued again."""
        document_id = handler.handle(ContentEvent("post", "12", payload=POST))
        kit.process_queue()

        assert handler.handle(ContentEvent("post", "12", payload=dict(POST))) is None
        assert kit.engine.get_document(document_id)["status"] == DocumentStatus.COMPLETED

        changed = dict(POST, title="Shipping FAQ (updated)")
        assert handler.handle(ContentEvent("post", "12", payload=changed)) == document_id
        assert kit.engine.get_document(document_id)["status"] == DocumentStatus.PENDING

    def test_trash_untrash_delete(self, kit, handler):
        document_id = handler.handle(ContentEvent("product", "7", payload={"name": "Rain Jacket", "description": "Waterproof."}))
        kit.process_queue()
        assert kit.local_db.count() > 0

        assert handler.handle(ContentEvent("product", "7", action="trash")) == document_id
        assert kit.engine.get_document(document_id)["status"] == DocumentStatus.TRASHED
        assert kit.local_db.count() == 0

        handler.handle(ContentEvent("product", "7", action="untrash"))
        kit.process_queue()
        assert kit.engine.get_document(document_id)["status"] == DocumentStatus.COMPLETED

        handler.handle(ContentEvent("product", "7", action="delete"))
        assert kit.engine.get_document(document_id) is None

    def test_events_for_unknown_documents(self, handler):
        assert handler.handle(ContentEvent("post", "404", action="delete")) is None
        assert handler.handle(ContentEvent("post", "404", action="trash")) is None

    def test_unknown_action(self, handler):
        with pytest.raises(ValueError, match="Unknown content action"):
            handler.handle(ContentEvent("post", "1", action="publish"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
