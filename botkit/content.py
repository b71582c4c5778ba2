"""
Structured Content Module

Turns CMS entities (posts, products, courses) into plain text for ingestion
and maps content-change events from the integration layer onto the engine.

The integration layer publishes `content.changed` events with a payload
snapshot of the entity; ContentSyncHandler decides whether the change needs
(re)processing, removal, trashing or restoring.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Any, Dict, Iterable, List, Mapping, Optional

from botkit.events import CONTENT_CHANGED, EventBus

# Configure logging
logger = logging.getLogger(__name__)


class HTMLTextExtractor(HTMLParser):
    """Extracts readable text from HTML, keeping block structure as paragraphs."""

    BLOCK_TAGS = {
        "p", "div", "section", "article", "header", "footer", "main",
        "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote", "pre",
        "tr", "table", "ul", "ol", "hr",
    }
    SKIP_TAGS = {"script", "style", "noscript", "template", "svg", "head"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.text_parts: List[str] = []
        self.current_text = ""
        self._skip_depth = 0

    def _flush(self) -> None:
        if self.current_text.strip():
            self.text_parts.append(self.current_text.strip())
        self.current_text = ""

    def handle_starttag(self, tag: str, attrs: list):
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self._flush()
        elif tag == "br":
            self.current_text += "\n"

    def handle_endtag(self, tag: str):
        if tag in self.SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in self.BLOCK_TAGS:
            self._flush()

    def handle_data(self, data: str):
        if not self._skip_depth:
            self.current_text += data

    def get_text(self) -> str:
        self._flush()
        return "\n\n".join(filter(None, self.text_parts))


def html_to_text(html_content: str) -> str:
    """
    Convert HTML into plain text.

    Args:
        html_content: HTML markup (plain text passes through untouched)

    Returns:
        Cleaned text with paragraphs separated by blank lines
    """
    if not html_content:
        return ""

    if not re.search(r"<[^>]+>", html_content):
        return html_content.strip()

    extractor = HTMLTextExtractor()
    extractor.feed(html_content)
    extractor.close()
    text = extractor.get_text()

    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _names(values: Optional[Iterable[Any]]) -> List[str]:
    """Accept ["a", "b"] or [{"name": "a"}, ...] and return plain names."""
    names = []
    for value in values or []:
        if isinstance(value, Mapping):
            value = value.get("name", "")
        if value:
            names.append(str(value))
    return names


def _has_text(entity: Mapping[str, Any], keys: Iterable[str]) -> bool:
    return any(str(entity.get(key) or "").strip() for key in keys)


def build_post_content(post: Mapping[str, Any]) -> str:
    """Title, body, excerpt and taxonomy of a post or page."""
    if not _has_text(post, ("title", "content", "excerpt")):
        return ""

    content = []
    if post.get("title"):
        content.append(f"Title: {post['title']}")
    body = html_to_text(post.get("content") or "")
    if body:
        content.append(body)
    if post.get("excerpt"):
        content.append(f"Summary: {html_to_text(post['excerpt'])}")
    categories = _names(post.get("categories"))
    if categories:
        content.append(f"Categories: {', '.join(categories)}")
    tags = _names(post.get("tags"))
    if tags:
        content.append(f"Tags: {', '.join(tags)}")
    return "\n\n".join(content)


def build_product_content(product: Mapping[str, Any]) -> str:
    """
    Product name, SKU, price, descriptions, categories, attributes and variations.

    Attributes may be a mapping {label: [options]} or a list of
    {"name": label, "options": [...]}; variations are
    {"attributes": {label: value}, "price": ...}.
    """
    if not _has_text(product, ("name", "description", "short_description")):
        return ""

    content = [
        f"Product Name: {product.get('name', '')}",
        f"SKU: {product.get('sku', '')}",
        f"Price: {product.get('price', '')}",
    ]

    if product.get("description"):
        content.append(f"Description: {html_to_text(product['description'])}")
    if product.get("short_description"):
        content.append(f"Short Description: {html_to_text(product['short_description'])}")

    categories = _names(product.get("categories"))
    if categories:
        content.append(f"Categories: {', '.join(categories)}")

    attributes = product.get("attributes") or {}
    if isinstance(attributes, Mapping):
        attributes = [{"name": key, "options": value} for key, value in attributes.items()]
    if attributes:
        lines = ["Attributes:"]
        for attribute in attributes:
            options = attribute.get("options") or []
            if isinstance(options, str):
                options = [options]
            lines.append(f"- {attribute.get('name', '')}: {', '.join(str(o) for o in options)}")
        content.append("\n".join(lines))

    variations = product.get("variations") or []
    if variations:
        lines = ["Variations:"]
        for variation in variations:
            labels = [str(v) for v in (variation.get("attributes") or {}).values()]
            lines.append(f"- {' / '.join(labels)} - {variation.get('price', '')}")
        content.append("\n".join(lines))

    return "\n\n".join(content)


def build_course_content(course: Mapping[str, Any]) -> str:
    """Course description, level, points and the lesson/topic/quiz outline."""
    if not _has_text(course, ("title", "content")) and not course.get("lessons"):
        return ""

    content = [
        f"Course: {course.get('title', '')}",
        f"Description: {html_to_text(course.get('content') or '')}",
        f"Level: {course.get('level') or 'Not specified'}",
        f"Points: {course.get('points') or 0}",
    ]

    for lesson in course.get("lessons") or []:
        content.append(f"Lesson: {lesson.get('title', '')}")
        if lesson.get("content"):
            content.append(html_to_text(lesson["content"]))
        for topic in lesson.get("topics") or []:
            content.append(f"Topic: {topic.get('title', '')}")
            if topic.get("content"):
                content.append(html_to_text(topic["content"]))
        for quiz in lesson.get("quizzes") or []:
            content.append(f"Quiz: {quiz.get('title', '')}")
            if quiz.get("content"):
                content.append(html_to_text(quiz["content"]))

    return "\n\n".join(content)


CONTENT_BUILDERS = {
    "post": build_post_content,
    "page": build_post_content,
    "product": build_product_content,
    "course": build_course_content,
}


def content_hash(payload: Mapping[str, Any]) -> str:
    """Stable fingerprint of an entity snapshot."""
    return hashlib.md5(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()


@dataclass
class ContentEvent:
    """
    A change to a CMS entity.

    Attributes:
        source_type: post, page, product or course
        source_id: Entity id in the CMS
        action: update, delete, trash or untrash
        title: Display title
        payload: Snapshot of the entity fields used by the builders
    """
    source_type: str
    source_id: str
    action: str = "update"
    title: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContentEvent":
        return cls(
            source_type=data["source_type"],
            source_id=str(data["source_id"]),
            action=data.get("action", "update"),
            title=data.get("title", ""),
            payload=dict(data.get("payload") or {}),
        )


class ContentSyncHandler:
    """
    Applies content-change events to the RAG engine.

    - update: enqueue for (re)processing, skipped when the snapshot hash is unchanged
    - delete: remove the document with its chunks and vectors
    - trash: hide the document and drop its vectors
    - untrash: queue the document again
    """

    ACTIONS = ("update", "delete", "trash", "untrash")

    def __init__(self, engine, bus: Optional[EventBus] = None):
        self.engine = engine
        if bus is not None:
            bus.subscribe(CONTENT_CHANGED, self.handle_payload)

    def handle_payload(self, payload: Dict[str, Any]) -> Optional[int]:
        return self.handle(ContentEvent.from_dict(payload))

    def handle(self, event: ContentEvent) -> Optional[int]:
        """
        Apply a single event.

        Returns:
            Affected document id, or None when nothing changed
        """
        if event.action not in self.ACTIONS:
            raise ValueError(f"Unknown content action: {event.action}")

        document_id = self.engine.find_document_id(event.source_type, event.source_id)

        if event.action == "delete":
            if document_id is not None:
                self.engine.delete_document(document_id)
            return document_id

        if event.action == "trash":
            if document_id is not None:
                self.engine.trash_document(document_id)
            return document_id

        if event.action == "untrash":
            if document_id is not None:
                self.engine.restore_document(document_id)
            return document_id

        fingerprint = content_hash(event.payload)
        if document_id is not None and self.engine.get_document_meta(document_id, "content_hash") == fingerprint:
            logger.debug(f"Skipping unchanged {event.source_type} {event.source_id}")
            return None

        document_id = self.engine.enqueue_content(
            source_type=event.source_type,
            source_id=event.source_id,
            action=event.action,
            title=event.title or event.payload.get("title") or event.payload.get("name") or "",
            payload=event.payload,
        )
        self.engine.set_document_meta(document_id, "content_hash", fingerprint)
        return document_id
